"""Helpers for validating and normalizing wallet addresses."""

from __future__ import annotations

import re

EVM_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
BASE58_ADDRESS_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def normalize_address(value: str) -> str:
    """Validate a Solana (base58) or EVM (hex) address.

    Base58 is case-sensitive and is returned as-is; EVM addresses are lowercased.
    """
    if value is None:
        raise ValueError("Address cannot be null")
    address = value.strip()
    if EVM_ADDRESS_PATTERN.fullmatch(address):
        return address.lower()
    if BASE58_ADDRESS_PATTERN.fullmatch(address):
        return address
    raise ValueError(f"Invalid wallet address format: {value}")


__all__ = ["normalize_address"]
