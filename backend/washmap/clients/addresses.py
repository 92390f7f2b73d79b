"""Source of fresh wallet addresses for intermediate and leaf nodes."""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import requests

from washmap.utils.addresses import normalize_address

LOGGER = logging.getLogger(__name__)


class AddressProvider(Protocol):
    def allocate(self, count: int) -> List[str]:
        ...


class KeyServiceAddressProvider:
    """Ask the key service to create ``count`` new wallets and return their addresses."""

    def __init__(self, base_url: Optional[str], timeout: float = 30.0, session: Optional[requests.Session] = None) -> None:
        self._url = base_url.rstrip("/") + "/addresses" if base_url else None
        self._timeout = timeout
        self._session = session or requests.Session()

    def allocate(self, count: int) -> List[str]:
        if count <= 0:
            return []
        if self._url is None:
            raise RuntimeError("WASHMAP_KEY_SERVICE_URL is required to allocate addresses")
        try:
            response = self._session.post(self._url, json={"count": count}, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            LOGGER.exception("Network error calling key service: %s", exc)
            raise RuntimeError("Failed to allocate addresses from the key service") from exc

        addresses = payload.get("addresses") if isinstance(payload, dict) else None
        if not isinstance(addresses, list):
            raise RuntimeError("Unexpected key service response format")

        LOGGER.info("Allocated %d addresses from the key service", len(addresses))
        return [normalize_address(address) for address in addresses]


__all__ = ["AddressProvider", "KeyServiceAddressProvider"]
