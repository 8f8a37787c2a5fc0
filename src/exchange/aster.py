"""
Aster perpetual-futures gateway.

Signed REST over httpx (Binance-futures compatible `/fapi` endpoints) and the
all-market ticker stream over websockets.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any
from urllib.parse import urlencode

import httpx
import websockets

from src.domain.models import Direction, ExchangePosition, MarketSnapshot, OpenOrder, OrderSpec
from src.exchange.errors import ExchangeError
from src.ports.broker import PriceCallback

logger = logging.getLogger(__name__)


def _f(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _fmt(value: float) -> str:
    # Avoid scientific notation in signed query strings.
    return format(float(value), "f").rstrip("0").rstrip(".") or "0"


class AsterGateway:
    def __init__(
        self,
        rest_url: str,
        ws_url: str,
        api_key: str = "",
        api_secret: str = "",
        *,
        recv_window: int = 5000,
        timeout: float = 10.0,
        reconnect_delay: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.rest_url = rest_url.rstrip("/")
        self.ws_url = ws_url.rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.recv_window = int(recv_window)
        self.reconnect_delay = float(reconnect_delay)
        self._client = client or httpx.AsyncClient(base_url=self.rest_url, timeout=timeout)
        self._subscriptions: dict[str, PriceCallback] = {}
        self._stream_task: asyncio.Task | None = None

    # ----- REST plumbing -----

    def sign(self, query_string: str) -> str:
        return hmac.new(self.api_secret.encode(), query_string.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def _raise_for_error(resp: httpx.Response) -> Any:
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.status_code >= 400 or (isinstance(data, dict) and int(data.get("code", 0) or 0) < 0):
            code = int(data.get("code", 0) or 0) if isinstance(data, dict) else 0
            msg = data.get("msg", resp.text) if isinstance(data, dict) else resp.text
            raise ExchangeError(code, str(msg), status_code=resp.status_code)
        return data

    async def _public_get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise ExchangeError(0, f"GET {path} failed: {e}") from e
        return self._raise_for_error(resp)

    async def _server_time_ms(self) -> int:
        try:
            data = await self._public_get("/fapi/v1/time")
            return int(data["serverTime"])
        except (ExchangeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Server time unavailable, using local clock: {e}")
            return int(time.time() * 1000)

    async def _signed_request(self, method: str, path: str, params: dict[str, Any] | None = None) -> Any:
        all_params = {k: v for k, v in (params or {}).items() if v is not None}
        all_params["recvWindow"] = self.recv_window
        all_params["timestamp"] = await self._server_time_ms()
        # Parameter order is preserved; the signature covers the exact query string sent.
        query = urlencode(all_params)
        signed = f"{query}&signature={self.sign(query)}"
        headers = {"X-MBX-APIKEY": self.api_key}

        try:
            if method.upper() in ("GET", "DELETE"):
                resp = await self._client.request(method.upper(), f"{path}?{signed}", headers=headers)
            else:
                headers["Content-Type"] = "application/x-www-form-urlencoded"
                resp = await self._client.request(method.upper(), path, content=signed, headers=headers)
        except httpx.HTTPError as e:
            raise ExchangeError(0, f"{method} {path} failed: {e}") from e
        return self._raise_for_error(resp)

    # ----- market data -----

    async def get_market_snapshot(self, symbol: str) -> MarketSnapshot:
        ticker = await self._public_get("/fapi/v1/ticker/24hr", {"symbol": symbol})
        premium = await self._public_get("/fapi/v1/premiumIndex", {"symbol": symbol})
        funding = await self._public_get("/fapi/v1/fundingRate", {"symbol": symbol, "limit": 1})

        last = _f(ticker.get("lastPrice") or ticker.get("price"))
        if funding:
            funding_rate = _f(funding[-1].get("fundingRate"))
        else:
            funding_rate = _f(premium.get("lastFundingRate"))
        return MarketSnapshot(
            symbol=symbol,
            price=last,
            volume_24h=_f(ticker.get("volume")),
            open_interest=_f(ticker.get("openInterest")),
            funding_rate=funding_rate,
            index_price=_f(premium.get("indexPrice"), last),
            mark_price=_f(premium.get("markPrice"), last),
            price_change_pct_24h=_f(ticker.get("priceChangePercent")),
        )

    # ----- account / orders -----

    async def place_order(self, spec: OrderSpec) -> str:
        params: dict[str, Any] = {
            "symbol": spec.symbol,
            "side": spec.side,
            "type": spec.order_type,
            "quantity": _fmt(spec.quantity),
        }
        if spec.price is not None:
            params["price"] = _fmt(spec.price)
        if spec.stop_price is not None:
            params["stopPrice"] = _fmt(spec.stop_price)
        if spec.time_in_force:
            params["timeInForce"] = spec.time_in_force
        if spec.reduce_only:
            params["reduceOnly"] = "true"

        logger.info(f"Placing {spec.order_type} {spec.side} {spec.quantity} {spec.symbol}")
        data = await self._signed_request("POST", "/fapi/v1/order", params)
        return str(data.get("orderId", ""))

    async def list_positions(self) -> list[ExchangePosition]:
        rows = await self._signed_request("GET", "/fapi/v2/positionRisk")
        out: list[ExchangePosition] = []
        for r in rows or []:
            qty = _f(r.get("positionAmt"))
            if qty == 0:
                continue
            out.append(ExchangePosition(
                symbol=str(r.get("symbol", "")),
                quantity=qty,
                entry_price=_f(r.get("entryPrice")),
                mark_price=_f(r.get("markPrice")),
                leverage=_f(r.get("leverage"), 1.0),
                unrealized_profit=_f(r.get("unRealizedProfit")),
                notional=abs(_f(r.get("notional"))),
            ))
        return out

    async def list_open_orders(self, symbol: str) -> list[OpenOrder]:
        rows = await self._signed_request("GET", "/fapi/v1/openOrders", {"symbol": symbol})
        return [
            OpenOrder(
                order_id=str(r.get("orderId", "")),
                symbol=str(r.get("symbol", symbol)),
                side=str(r.get("side", "")),
                order_type=str(r.get("type", "")),
                quantity=_f(r.get("origQty")),
                price=_f(r.get("price")) or None,
                reduce_only=bool(r.get("reduceOnly", False)),
            )
            for r in rows or []
        ]

    async def close_position(self, symbol: str, direction: Direction, quantity: float | None = None) -> str:
        if quantity is None:
            held = [p for p in await self.list_positions() if p.symbol == symbol]
            if not held:
                raise ExchangeError(0, f"No open position for {symbol}")
            quantity = abs(held[0].quantity)
        logger.info(f"Closing {direction.value} {symbol} ({quantity})")
        return await self.place_order(OrderSpec(
            symbol=symbol,
            side=direction.exit_side,
            order_type="MARKET",
            quantity=abs(float(quantity)),
            reduce_only=True,
        ))

    async def get_account(self) -> dict[str, Any]:
        return await self._signed_request("GET", "/fapi/v2/account")

    async def get_available_margin(self) -> float:
        account = await self.get_account()
        return _f(account.get("availableBalance"))

    # ----- ticker stream -----

    def subscribe_price_ticks(self, symbol: str, callback: PriceCallback) -> None:
        self._subscriptions[symbol] = callback
        if self._stream_task is None or self._stream_task.done():
            self._stream_task = asyncio.create_task(self._stream(), name="aster-ticker-stream")

    def unsubscribe(self, symbol: str) -> None:
        self._subscriptions.pop(symbol, None)
        if not self._subscriptions and self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None

    def dispatch(self, message: str | bytes) -> int:
        """Route one `!ticker@arr` frame to subscribers. Returns the number of callbacks invoked."""
        data = json.loads(message)
        tickers = data if isinstance(data, list) else [data]
        delivered = 0
        for t in tickers:
            cb = self._subscriptions.get(t.get("s"))
            if cb is None:
                continue
            try:
                cb(_f(t.get("c")))
                delivered += 1
            except Exception as e:
                logger.error(f"Tick callback for {t.get('s')} failed: {e}")
        return delivered

    async def _stream(self) -> None:
        url = f"{self.ws_url}/ws/!ticker@arr"
        while self._subscriptions:
            try:
                async with websockets.connect(url) as ws:
                    logger.info(f"Ticker stream connected: {url}")
                    async for message in ws:
                        self.dispatch(message)
                        if not self._subscriptions:
                            return
                logger.warning("Ticker stream closed by server")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Ticker stream error: {e}")
            if self._subscriptions:
                logger.info(f"Reconnecting ticker stream in {self.reconnect_delay:.0f}s")
                await asyncio.sleep(self.reconnect_delay)

    async def aclose(self) -> None:
        self._subscriptions.clear()
        if self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None
        await self._client.aclose()
