"""Transfer client contract and the HTTP relay implementation.

Signing and submission happen in an external relay service; this module only
asks it to move ``amount`` of ``token`` between two addresses and returns the
transaction signature.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import requests

LOGGER = logging.getLogger(__name__)


class TransferError(RuntimeError):
    """The transfer was rejected or could not be submitted."""


class TransferClient(Protocol):
    def submit(self, from_address: str, to_address: str, token: str, amount: Decimal, decimals: int) -> Any:
        """Return the transaction signature (or an awaitable resolving to it)."""


class HttpTransferClient:
    """Submit transfers through a relay service's ``POST /transfers`` endpoint."""

    def __init__(
        self,
        base_url: str,
        rpc_endpoint: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("WASHMAP_TRANSFER_URL is required to submit transfers")
        self._url = base_url.rstrip("/") + "/transfers"
        self._rpc_endpoint = rpc_endpoint
        self._timeout = timeout
        self._session = session or requests.Session()

    def submit(self, from_address: str, to_address: str, token: str, amount: Decimal, decimals: int) -> str:
        payload: Dict[str, Any] = {
            "from": from_address,
            "to": to_address,
            "token": token,
            "amount": str(amount),
            "decimals": decimals,
        }
        if self._rpc_endpoint:
            payload["endpoint"] = self._rpc_endpoint

        try:
            LOGGER.info("Submitting transfer of %s %s from %s to %s", amount, token, from_address, to_address)
            response = self._session.post(self._url, json=payload, timeout=self._timeout)
            body = response.json() if response.content else {}
        except requests.RequestException as exc:
            LOGGER.warning("Network error calling transfer relay: %s", exc)
            raise TransferError(f"Transfer relay unreachable: {exc}") from exc
        except ValueError as exc:
            raise TransferError("Transfer relay returned a non-JSON response") from exc

        if response.status_code >= 400 or body.get("error"):
            detail = body.get("error") or f"HTTP {response.status_code}"
            raise TransferError(str(detail))

        signature = body.get("signature")
        if not signature:
            raise TransferError("Transfer relay response did not include a signature")
        return str(signature)


__all__ = ["TransferError", "TransferClient", "HttpTransferClient"]
