"""Average acquisition price of the inventory currently held.

Used when a node enters HOLDING without a usable fill price (for example after
a restart, or when the exchange omitted ``cummulativeQuoteQty``).  The
exchange's own cost-basis figure is trusted when present; otherwise the whole
trade history is replayed through a FIFO lot queue.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from backoff_utils import call_with_retries
from ports import TradeHistoryPort
from utils import fmt_decimal, logger, to_decimal

# Lots smaller than this are treated as fully consumed.
LOT_DUST = Decimal("0.00000001")


@dataclass(frozen=True)
class Trade:
    is_buy: bool
    qty: Decimal
    price: Decimal
    fee_asset: str = ""
    fee_amount: Decimal = Decimal(0)
    sequence_id: int = 0
    time: int = 0

    @classmethod
    def from_binance(cls, raw: Dict) -> "Trade":
        return cls(
            is_buy=bool(raw.get("isBuyer")),
            qty=to_decimal(raw.get("qty")),
            price=to_decimal(raw.get("price")),
            fee_asset=str(raw.get("commissionAsset") or ""),
            fee_amount=to_decimal(raw.get("commission")),
            sequence_id=int(raw.get("id", 0)),
            time=int(raw.get("time", 0)),
        )


@dataclass
class Lot:
    remaining_qty: Decimal
    unit_cost: Decimal


def build_lots(
    trades: Iterable[Trade],
    base_asset: str,
    quote_asset: str,
    dust: Decimal = LOT_DUST,
) -> List[Lot]:
    """Replay ``trades`` (oldest first) and return the lots still open.

    A buy opens a lot of its quantity net of any base-asset fee, costed at the
    gross quote spent plus any quote-asset fee.  A sell consumes the oldest
    lots first; its quantity is likewise reduced by a base-asset fee.
    """
    lots: List[Lot] = []
    for trade in trades:
        if trade.is_buy:
            net_qty = trade.qty
            cost = trade.qty * trade.price
            if trade.fee_asset == base_asset:
                net_qty = max(Decimal(0), net_qty - trade.fee_amount)
            elif trade.fee_asset == quote_asset:
                cost += trade.fee_amount
            if net_qty > 0:
                lots.append(Lot(net_qty, cost / net_qty))
            continue

        sell_qty = trade.qty
        if trade.fee_asset == base_asset:
            sell_qty = max(Decimal(0), sell_qty - trade.fee_amount)
        while sell_qty > 0 and lots:
            lot = lots[0]
            take = min(lot.remaining_qty, sell_qty)
            lot.remaining_qty -= take
            sell_qty -= take
            if lot.remaining_qty <= dust:
                lots.pop(0)
    return lots


def fifo_average_price(
    trades: Iterable[Trade], base_asset: str, quote_asset: str
) -> Optional[Decimal]:
    """Average unit cost of the remaining inventory, ``None`` when there is none."""
    lots = build_lots(trades, base_asset, quote_asset)
    remaining = sum((lot.remaining_qty for lot in lots), Decimal(0))
    if remaining <= 0:
        return None
    cost = sum((lot.remaining_qty * lot.unit_cost for lot in lots), Decimal(0))
    return cost / remaining


class CostBasisResolver:
    """Two-tier cost-basis lookup for the base asset of ``symbol``."""

    def __init__(
        self,
        client: TradeHistoryPort,
        symbol: str,
        base_asset: str,
        quote_asset: str,
        *,
        limiter,
        max_pages: int = 50,
    ):
        self.client = client
        self.symbol = symbol
        self.base_asset = base_asset
        self.quote_asset = quote_asset
        self.max_pages = max_pages
        self._limiter = limiter

    async def resolve_average_price(self, asset: Optional[str] = None) -> Optional[Decimal]:
        asset = asset or self.base_asset
        avg = await self._exchange_cost_basis(asset)
        if avg is not None:
            logger.info("cost basis from exchange | asset=%s avg=%s", asset, fmt_decimal(avg))
            return avg

        trades = await self.fetch_all_trades()
        if not trades:
            logger.info("cost basis unknown | asset=%s reason=no trade history", asset)
            return None
        avg = fifo_average_price(trades, self.base_asset, self.quote_asset)
        if avg is None or avg <= 0:
            logger.info(
                "cost basis unknown | asset=%s reason=no remaining inventory trades=%d",
                asset,
                len(trades),
            )
            return None
        logger.info(
            "cost basis from FIFO | asset=%s avg=%s trades=%d",
            asset,
            fmt_decimal(avg),
            len(trades),
        )
        return avg

    async def _exchange_cost_basis(self, asset: str) -> Optional[Decimal]:
        fetch = getattr(self.client, "get_cost_basis", None)
        if fetch is None:
            return None
        try:
            avg = await call_with_retries(lambda: fetch(asset), limiter=self._limiter)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("exchange cost basis unavailable | asset=%s error=%s", asset, exc)
            return None
        if avg is None or avg <= 0:
            return None
        return avg

    async def fetch_all_trades(self) -> List[Trade]:
        trades: List[Trade] = []
        cursor: Optional[int] = None
        for _ in range(self.max_pages):
            batch, cursor = await call_with_retries(
                lambda c=cursor: self.client.list_trades(self.symbol, c),
                limiter=self._limiter,
            )
            trades.extend(batch)
            if cursor is None:
                break
        else:
            logger.warning(
                "trade history truncated | symbol=%s pages=%d trades=%d",
                self.symbol,
                self.max_pages,
                len(trades),
            )
        trades.sort(key=lambda t: (t.time, t.sequence_id))
        return trades
