"""
Read-only token balance lookups against an EVM JSON-RPC node.

Balances are reported as decimal strings so that 18-decimal token amounts
never pass through a float.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from eth_utils import is_address, is_hex_address, keccak

from .config import DEFAULT_RPC_URL, DEFAULT_TOKEN_CONTRACT
from .errors import RpcError
from .money import format_token_amount

logger = logging.getLogger(__name__)

TOKEN_DECIMALS = 18
# ERC-20 balanceOf(address), 0x70a08231
BALANCE_OF_SELECTOR = "0x" + keccak(text="balanceOf(address)")[:4].hex()


@dataclass
class BalanceResult:
    balance: str = "0"
    balance_raw: str = "0"
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"balance": self.balance, "balance_raw": self.balance_raw, "error": self.error}


@dataclass
class BalanceCheck:
    sufficient: bool
    balance: str
    required: str

    def to_dict(self) -> dict:
        return {"sufficient": self.sufficient, "balance": self.balance, "required": self.required}


def _format_required(amount: float) -> str:
    value = float(amount)
    return str(int(value)) if value.is_integer() else str(value)


class OnChainReader:
    """Queries ERC-20 and native balances from a Base JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        token_contract: str = DEFAULT_TOKEN_CONTRACT,
        client: Optional[httpx.Client] = None,
        timeout_seconds: float = 10.0,
    ):
        self.rpc_url = rpc_url
        self.token_contract = token_contract
        self._owns_client = client is None
        self._http = client if client is not None else httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "OnChainReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def get_token_balance(self, address: str, token_contract: Optional[str]) -> BalanceResult:
        """
        Balance of ``address``, formatted with 18 decimals.

        With ``token_contract=None`` the native balance is read instead. Never
        raises; failures come back as a zero balance with ``error`` set.
        """
        if not is_address(address):
            return BalanceResult(error=f"Invalid address: {address}")

        if token_contract is None:
            method = "eth_getBalance"
            params: list[Any] = [address, "latest"]
        else:
            if not is_hex_address(token_contract):
                return BalanceResult(error=f"Invalid token contract: {token_contract}")
            padded = address.lower().removeprefix("0x").rjust(64, "0")
            method = "eth_call"
            params = [{"to": token_contract, "data": BALANCE_OF_SELECTOR + padded}, "latest"]

        try:
            result = self._rpc(method, params)
            raw = int(result, 16) if result not in (None, "", "0x") else 0
        except RpcError as e:
            logger.warning("%s for %s returned RPC error %s: %s", method, address, e.code, e)
            return BalanceResult(error=str(e))
        except (httpx.HTTPError, ValueError, TypeError) as e:
            logger.warning("%s for %s failed: %s", method, address, e)
            return BalanceResult(error=f"{type(e).__name__}: {e}")

        return BalanceResult(balance=format_token_amount(raw, TOKEN_DECIMALS), balance_raw=str(raw))

    def get_native_balance(self, address: str) -> BalanceResult:
        return self.get_token_balance(address, None)

    def get_wallet_balances(self, address: str) -> dict[str, BalanceResult]:
        return {
            "token": self.get_token_balance(address, self.token_contract),
            "native": self.get_native_balance(address),
        }

    def verify_balance(self, address: str, required_amount: float) -> BalanceCheck:
        """Whether the wallet holds at least ``required_amount`` of the configured token."""
        result = self.get_token_balance(address, self.token_contract)
        return BalanceCheck(
            sufficient=float(result.balance) >= float(required_amount),
            balance=result.balance,
            required=_format_required(required_amount),
        )

    def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        response = self._http.post(self.rpc_url, json=payload, headers={"Content-Type": "application/json"})
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError("Malformed JSON-RPC response")
        error = body.get("error")
        if error:
            if not isinstance(error, dict):
                raise RpcError(0, str(error))
            raise RpcError(int(error.get("code", 0)), str(error.get("message", "RPC error")))
        return body.get("result")
