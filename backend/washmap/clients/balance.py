"""Balance lookups used by the campaign precondition gate."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import requests

LOGGER = logging.getLogger(__name__)

NATIVE_TOKEN = "sol"
NATIVE_DECIMALS = 9


class BalanceQueryError(RuntimeError):
    """The balance could not be read."""


class BalanceClient(Protocol):
    def balance_of(self, address: str, token: str) -> Any:
        """Return the balance in whole token units (or an awaitable resolving to it)."""


class RpcBalanceClient:
    """Read balances from a Solana JSON-RPC endpoint."""

    def __init__(self, rpc_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None) -> None:
        if not rpc_url:
            raise ValueError("An RPC endpoint is required to query balances")
        self._url = rpc_url
        self._timeout = timeout
        self._session = session or requests.Session()

    def _call(self, method: str, params: List[Any]) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = self._session.post(self._url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            LOGGER.exception("Network error calling %s: %s", method, exc)
            raise BalanceQueryError(f"Failed to call {method}") from exc
        except ValueError as exc:
            raise BalanceQueryError(f"{method} returned a non-JSON response") from exc

        if body.get("error"):
            message = body["error"].get("message") if isinstance(body["error"], dict) else body["error"]
            raise BalanceQueryError(f"{method} failed: {message}")
        result = body.get("result")
        if not isinstance(result, dict):
            raise BalanceQueryError(f"Unexpected {method} response format")
        return result

    def balance_of(self, address: str, token: str) -> Decimal:
        if token.lower() == NATIVE_TOKEN:
            result = self._call("getBalance", [address, {"commitment": "finalized"}])
            lamports = int(result.get("value", 0))
            return Decimal(lamports).scaleb(-NATIVE_DECIMALS)

        result = self._call(
            "getTokenAccountsByOwner",
            [address, {"mint": token}, {"encoding": "jsonParsed", "commitment": "finalized"}],
        )
        total = Decimal("0")
        for account in result.get("value", []):
            try:
                amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]
                total += Decimal(amount["amount"]).scaleb(-int(amount["decimals"]))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed token account for %s: %s", address, exc)
        return total


__all__ = ["BalanceQueryError", "BalanceClient", "RpcBalanceClient", "NATIVE_TOKEN"]
