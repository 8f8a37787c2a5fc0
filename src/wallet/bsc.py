"""BSC wallet reader: BSC-USD balance and gas price over plain JSON-RPC."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import httpx

logger = logging.getLogger(__name__)

BSC_USD_CONTRACT = "0x55d398326f99059fF775485246999027B3197955"

# ERC-20 selectors
BALANCE_OF = "0x70a08231"
DECIMALS = "0x313ce567"

DEFAULT_GAS_GWEI = 5.0


class WalletError(RuntimeError):
    pass


class BscWalletReader:
    def __init__(
        self,
        rpc_url: str,
        address: str,
        *,
        token_contract: str = BSC_USD_CONTRACT,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_url = rpc_url
        self.address = address
        self.token_contract = token_contract
        self._client = client or httpx.AsyncClient(timeout=timeout, headers={"Content-Type": "application/json"})
        self._decimals: int | None = None

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise WalletError(f"{method} failed: {e}") from e
        body = resp.json()
        if body.get("error"):
            raise WalletError(f"{method} error: {body['error']}")
        return body.get("result")

    async def _eth_call(self, data: str) -> int:
        result = await self._rpc_call("eth_call", [{"to": self.token_contract, "data": data}, "latest"])
        if not result or result == "0x":
            return 0
        return int(result, 16)

    async def get_token_decimals(self) -> int:
        if self._decimals is None:
            self._decimals = await self._eth_call(DECIMALS)
        return self._decimals

    async def get_available_balance(self) -> float:
        """BSC-USD balance of the trading wallet, in whole tokens."""
        if not self.address:
            raise WalletError("No wallet address configured")
        addr = self.address.lower().removeprefix("0x").rjust(64, "0")
        raw = await self._eth_call(BALANCE_OF + addr)
        decimals = await self.get_token_decimals()
        return float(Decimal(raw) / (Decimal(10) ** decimals))

    async def get_gas_price_gwei(self) -> float:
        try:
            wei = int(await self._rpc_call("eth_gasPrice"), 16)
        except (WalletError, TypeError, ValueError) as e:
            logger.warning(f"Gas price unavailable, assuming {DEFAULT_GAS_GWEI} gwei: {e}")
            return DEFAULT_GAS_GWEI
        gwei = wei / 1e9
        return gwei if gwei > 0 else DEFAULT_GAS_GWEI

    async def aclose(self) -> None:
        await self._client.aclose()
