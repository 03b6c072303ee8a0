"""Order model and the collaborator interfaces consumed by the engine.

The engine never talks HTTP itself; it calls into objects satisfying the
protocols below.  ``binance_client.BinanceSpotClient`` implements the
exchange-facing ones and ``notifier.TelegramNotifier`` the notification one.
Tests substitute ``SimpleNamespace`` stubs with the same coroutine names.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Protocol, Tuple

from utils import to_decimal

if TYPE_CHECKING:  # pragma: no cover
    from cost_basis import Trade
    from filters import SymbolFilters


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


# Status vocabulary consumed from the exchange.  Anything not listed here
# (NEW, PARTIALLY_FILLED, PENDING_CANCEL, ...) counts as still pending.
FILLED = "FILLED"
TERMINAL_NON_FILL = frozenset({"CANCELED", "REJECTED", "EXPIRED", "EXPIRED_IN_MATCH"})


@dataclass
class Order:
    order_id: int
    side: OrderSide
    price: Decimal
    orig_qty: Decimal
    executed_qty: Decimal = Decimal(0)
    cummulative_quote_qty: Decimal = Decimal(0)
    status: str = "NEW"
    client_order_id: Optional[str] = None

    @property
    def is_filled(self) -> bool:
        return self.status == FILLED

    @property
    def is_terminal_non_fill(self) -> bool:
        return self.status in TERMINAL_NON_FILL

    @property
    def avg_fill_price(self) -> Optional[Decimal]:
        """``cummulativeQuoteQty / executedQty`` or ``None`` when unknown."""
        if self.executed_qty > 0 and self.cummulative_quote_qty > 0:
            return self.cummulative_quote_qty / self.executed_qty
        return None

    @classmethod
    def from_binance(cls, raw: Dict) -> "Order":
        return cls(
            order_id=int(raw["orderId"]),
            side=OrderSide(str(raw.get("side", "BUY")).upper()),
            price=to_decimal(raw.get("price")),
            orig_qty=to_decimal(raw.get("origQty")),
            executed_qty=to_decimal(raw.get("executedQty")),
            cummulative_quote_qty=to_decimal(raw.get("cummulativeQuoteQty")),
            status=str(raw.get("status") or "NEW").upper(),
            client_order_id=raw.get("clientOrderId"),
        )


class MarketDataPort(Protocol):
    async def get_price(self, symbol: str) -> Decimal: ...


class AccountPort(Protocol):
    async def get_open_orders(self, symbol: str) -> List[Order]: ...

    async def get_order(self, symbol: str, order_id: int) -> Order: ...

    async def get_balances(self, assets: Iterable[str]) -> Dict[str, Decimal]: ...


class OrderSubmissionPort(Protocol):
    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        price: Decimal,
        qty: Decimal,
        *,
        filters: "SymbolFilters",
        client_order_id: Optional[str] = None,
    ) -> Order: ...


class TradeHistoryPort(Protocol):
    async def list_trades(
        self, symbol: str, cursor: Optional[int] = None
    ) -> Tuple[List["Trade"], Optional[int]]: ...

    async def get_cost_basis(self, asset: str) -> Optional[Decimal]: ...


class SymbolMetadataPort(Protocol):
    async def get_filters(self, symbol: str) -> "SymbolFilters": ...


class NotificationPort(Protocol):
    async def notify(self, message: str) -> None: ...


class ExchangePort(
    MarketDataPort, AccountPort, OrderSubmissionPort, TradeHistoryPort, SymbolMetadataPort, Protocol
):
    """Everything the runner needs from one exchange connection."""
