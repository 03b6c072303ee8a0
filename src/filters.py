"""Exchange trading-rule normalisation.

``SymbolFilters`` turns the raw ``PRICE_FILTER`` / ``LOT_SIZE`` /
``(MIN_)NOTIONAL`` entries of a symbol into rounding and validation helpers.
All rounding truncates toward the grid: a price or quantity is never moved
away from the value the caller asked for in the direction that would commit
more funds or deliver less than requested.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from enum import Enum
from typing import Dict, Iterable, Optional

from utils import fmt_decimal, to_decimal

ZERO = Decimal(0)


def step_precision(step: Decimal) -> int:
    """Number of significant fractional digits implied by ``step``.

    ``Decimal("0.01000000")`` -> 2, ``Decimal("1.00000000")`` -> 0.
    """
    if step <= 0:
        return 0
    exponent = step.normalize().as_tuple().exponent
    return max(0, -int(exponent))


def _align(value: Decimal, step: Decimal, rounding: str) -> Decimal:
    if step <= 0:
        return value
    units = (value / step).to_integral_value(rounding=rounding)
    quantum = Decimal(1).scaleb(-step_precision(step))
    return (units * step).quantize(quantum)


def _format(value: Decimal, step: Decimal) -> str:
    if step <= 0:
        return fmt_decimal(value)
    quantum = Decimal(1).scaleb(-step_precision(step))
    return format(value.quantize(quantum, rounding=ROUND_FLOOR), "f")


class RejectReason(str, Enum):
    PRICE_OUT_OF_BOUNDS = "PriceOutOfBounds"
    QTY_OUT_OF_BOUNDS = "QtyOutOfBounds"
    NOTIONAL_TOO_LOW = "NotionalTooLow"


@dataclass(frozen=True)
class Validation:
    reason: Optional[RejectReason] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.reason is None

    def __bool__(self) -> bool:
        return self.ok


VALID = Validation()


@dataclass(frozen=True)
class SymbolFilters:
    """Trading rules for one symbol.

    A ``max_*`` of zero means the exchange imposes no upper bound.  A zero
    ``price_tick`` marks filters that were never loaded.
    """

    price_tick: Decimal = ZERO
    qty_step: Decimal = ZERO
    min_qty: Decimal = ZERO
    max_qty: Decimal = ZERO
    min_price: Decimal = ZERO
    max_price: Decimal = ZERO
    min_notional: Decimal = ZERO

    def __post_init__(self):
        for name in ("min_qty", "max_qty", "min_price", "max_price", "min_notional"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    # ------------------------------------------------------------------
    @classmethod
    def from_exchange_info(cls, symbol_info: Dict) -> "SymbolFilters":
        """Build filters from one entry of ``exchangeInfo['symbols']``."""
        by_type: Dict[str, Dict] = {
            f.get("filterType"): f for f in symbol_info.get("filters", [])
        }
        price_f = by_type.get("PRICE_FILTER", {})
        lot_f = by_type.get("LOT_SIZE", {})
        notional_f = by_type.get("NOTIONAL") or by_type.get("MIN_NOTIONAL") or {}
        min_notional = notional_f.get("minNotional", notional_f.get("notional"))
        return cls(
            price_tick=to_decimal(price_f.get("tickSize")),
            qty_step=to_decimal(lot_f.get("stepSize")),
            min_qty=to_decimal(lot_f.get("minQty")),
            max_qty=to_decimal(lot_f.get("maxQty")),
            min_price=to_decimal(price_f.get("minPrice")),
            max_price=to_decimal(price_f.get("maxPrice")),
            min_notional=to_decimal(min_notional),
        )

    @property
    def is_loaded(self) -> bool:
        return self.price_tick > 0

    # ------------------------------------------------------------------
    def round_price_down(self, value: Decimal) -> Decimal:
        return _align(value, self.price_tick, ROUND_FLOOR)

    def round_price_up(self, value: Decimal) -> Decimal:
        return _align(value, self.price_tick, ROUND_CEILING)

    def round_qty_down(self, value: Decimal) -> Decimal:
        return _align(value, self.qty_step, ROUND_FLOOR)

    def format_price(self, value: Decimal) -> str:
        return _format(value, self.price_tick)

    def format_qty(self, value: Decimal) -> str:
        return _format(value, self.qty_step)

    def clip_price(self, value: Decimal) -> Decimal:
        """Clamp ``value`` into ``[min_price, max_price]`` (max 0 = unbounded)."""
        if value < self.min_price:
            value = self.min_price
        if self.max_price > 0 and value > self.max_price:
            value = self.max_price
        return value

    # ------------------------------------------------------------------
    def price_in_bounds(self, price: Decimal) -> bool:
        if price <= 0 or price < self.min_price:
            return False
        return not (self.max_price > 0 and price > self.max_price)

    def qty_in_bounds(self, qty: Decimal) -> bool:
        if qty <= 0 or qty < self.min_qty:
            return False
        return not (self.max_qty > 0 and qty > self.max_qty)

    def validate(self, price: Decimal, qty: Decimal) -> Validation:
        if not self.price_in_bounds(price):
            return Validation(
                RejectReason.PRICE_OUT_OF_BOUNDS,
                f"price {fmt_decimal(price)} outside [{fmt_decimal(self.min_price)}, "
                f"{fmt_decimal(self.max_price) if self.max_price > 0 else 'inf'}]",
            )
        if not self.qty_in_bounds(qty):
            return Validation(
                RejectReason.QTY_OUT_OF_BOUNDS,
                f"qty {fmt_decimal(qty)} outside [{fmt_decimal(self.min_qty)}, "
                f"{fmt_decimal(self.max_qty) if self.max_qty > 0 else 'inf'}]",
            )
        notional = price * qty
        if notional < self.min_notional:
            return Validation(
                RejectReason.NOTIONAL_TOO_LOW,
                f"notional {fmt_decimal(notional)} < {fmt_decimal(self.min_notional)}",
            )
        return VALID

    def describe(self) -> Iterable[str]:
        yield f"tickSize: {fmt_decimal(self.price_tick)}"
        yield f"stepSize: {fmt_decimal(self.qty_step)}"
        yield f"minQty: {fmt_decimal(self.min_qty)}"
        yield f"minNotional: {fmt_decimal(self.min_notional)}"
