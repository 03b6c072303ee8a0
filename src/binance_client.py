# binance_client.py
"""Minimal Binance spot REST client built on aiohttp.

Implements the market-data, account, order-submission, trade-history and
symbol-metadata ports used by the engine.  Signed endpoints use the usual
HMAC-SHA256 query signature with ``timestamp`` and ``recvWindow``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from cost_basis import Trade
from errors import ExchangeError, OrderRejectedError
from filters import SymbolFilters
from ports import Order, OrderSide
from utils import close_session, logger, to_decimal

DEFAULT_BASE_URL = "https://api.binance.com"
TRADES_PAGE_LIMIT = 1000
RECV_WINDOW_MS = 5000


class BinanceSpotClient:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self._secret = api_secret.encode()
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    # ------------------------------------------------------------------
    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session:
            await close_session(self._session)
        self._session = None

    def sign(self, params: Dict[str, Any]) -> str:
        query = urlencode(params)
        signature = hmac.new(self._secret, query.encode(), hashlib.sha256).hexdigest()
        return f"{query}&signature={signature}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        signed: bool = False,
    ) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers = {}
        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = RECV_WINDOW_MS
            query = self.sign(params)
            headers["X-MBX-APIKEY"] = self.api_key
        else:
            query = urlencode(params)
        url = f"{self.base_url}{path}" + (f"?{query}" if query else "")

        session = await self._get_session()
        async with session.request(method, url, headers=headers) as resp:
            text = await resp.text()
            if resp.status >= 400:
                raise self._error(resp.status, text, resp.headers, method, path)
            return json.loads(text) if text else None

    @staticmethod
    def _error(status: int, text: str, headers, method: str, path: str) -> ExchangeError:
        code = None
        msg = text or "<empty body>"
        try:
            body = json.loads(text)
            code = body.get("code")
            msg = body.get("msg", msg)
        except (ValueError, AttributeError):
            pass
        retry_after = headers.get("Retry-After") if headers is not None else None
        cls = ExchangeError
        if (
            method == "POST"
            and path == "/api/v3/order"
            and 400 <= status < 500
            and status not in (418, 429)
            and code not in (-1003, -1001, -1007)
        ):
            cls = OrderRejectedError
        return cls(
            f"{path} failed: {msg}",
            status_code=status,
            code=code,
            retry_after=float(retry_after) if retry_after else None,
        )

    # ------------------------------------------------------------------
    async def get_filters(self, symbol: str) -> SymbolFilters:
        data = await self._request("GET", "/api/v3/exchangeInfo", {"symbol": symbol})
        symbols = (data or {}).get("symbols") or []
        info = next((s for s in symbols if s.get("symbol") == symbol), None)
        if info is None:
            raise ExchangeError(f"symbol {symbol} not found in exchangeInfo")
        return SymbolFilters.from_exchange_info(info)

    async def get_price(self, symbol: str) -> Decimal:
        data = await self._request("GET", "/api/v3/ticker/price", {"symbol": symbol})
        return to_decimal(data.get("price"))

    async def get_balances(self, assets: Iterable[str]) -> Dict[str, Decimal]:
        data = await self._request("GET", "/api/v3/account", signed=True)
        free = {b.get("asset"): to_decimal(b.get("free")) for b in data.get("balances", [])}
        return {asset: free.get(asset, Decimal(0)) for asset in assets}

    async def get_open_orders(self, symbol: str) -> List[Order]:
        data = await self._request("GET", "/api/v3/openOrders", {"symbol": symbol}, signed=True)
        return [Order.from_binance(o) for o in data or []]

    async def get_order(self, symbol: str, order_id: int) -> Order:
        data = await self._request(
            "GET", "/api/v3/order", {"symbol": symbol, "orderId": order_id}, signed=True
        )
        return Order.from_binance(data)

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        price: Decimal,
        qty: Decimal,
        *,
        filters: SymbolFilters,
        client_order_id: Optional[str] = None,
    ) -> Order:
        params = {
            "symbol": symbol,
            "side": OrderSide(side).value,
            "type": "LIMIT",
            "timeInForce": "GTC",
            "price": filters.format_price(price),
            "quantity": filters.format_qty(qty),
            "newClientOrderId": client_order_id,
            "newOrderRespType": "RESULT",
        }
        data = await self._request("POST", "/api/v3/order", params, signed=True)
        order = Order.from_binance(data)
        logger.info(
            "order placed | symbol=%s side=%s price=%s qty=%s id=%s status=%s",
            symbol,
            order.side.value,
            params["price"],
            params["quantity"],
            order.order_id,
            order.status,
        )
        return order

    async def list_trades(
        self, symbol: str, cursor: Optional[int] = None
    ) -> Tuple[List[Trade], Optional[int]]:
        # Without fromId Binance returns the newest page; start from the first trade.
        from_id = 0 if cursor is None else cursor
        params = {"symbol": symbol, "limit": TRADES_PAGE_LIMIT, "fromId": from_id}
        data = await self._request("GET", "/api/v3/myTrades", params, signed=True) or []
        trades = [Trade.from_binance(t) for t in data]
        if len(data) < TRADES_PAGE_LIMIT:
            return trades, None
        return trades, int(data[-1]["id"]) + 1

    async def get_cost_basis(self, asset: str) -> Optional[Decimal]:
        """Average price reported by the wallet endpoint, when it exposes one."""
        data = await self._request("GET", "/sapi/v1/capital/config/getall", signed=True)
        if not isinstance(data, list):
            return None
        info = next((a for a in data if a.get("coin") == asset or a.get("asset") == asset), None)
        if not info:
            return None
        for key in ("avgPrice", "price", "costPrice"):
            value = to_decimal(info.get(key))
            if value > 0:
                return value
        return None
