import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from filters import RejectReason, SymbolFilters, step_precision  # noqa: E402


def _paxg_filters(**overrides):
    values = dict(
        price_tick=Decimal("0.01"),
        qty_step=Decimal("0.0001"),
        min_qty=Decimal("0.0001"),
        min_notional=Decimal("10"),
        min_price=Decimal("0.01"),
        max_price=Decimal("1000000"),
        max_qty=Decimal("9000"),
    )
    values.update(overrides)
    return SymbolFilters(**values)


def test_step_precision_ignores_trailing_zeros():
    assert step_precision(Decimal("0.01000000")) == 2
    assert step_precision(Decimal("0.00010000")) == 4
    assert step_precision(Decimal("1.00000000")) == 0
    assert step_precision(Decimal("0")) == 0


@pytest.mark.parametrize(
    "tick,raw",
    [
        ("0.01", "1900.019"),
        ("0.01", "1900"),
        ("0.5", "10.74"),
        ("0.00001", "0.123456789"),
        ("1", "42.999"),
    ],
)
def test_round_price_down_stays_within_one_tick(tick, raw):
    filters = SymbolFilters(price_tick=Decimal(tick))
    raw = Decimal(raw)
    out = filters.round_price_down(raw)
    assert out <= raw < out + filters.price_tick
    assert out % filters.price_tick == 0
    assert -out.as_tuple().exponent == step_precision(filters.price_tick)


def test_round_price_up_and_qty_down():
    filters = _paxg_filters()
    assert filters.round_price_up(Decimal("1916.001")) == Decimal("1916.01")
    assert filters.round_price_up(Decimal("1916.00")) == Decimal("1916.00")
    assert filters.round_qty_down(Decimal("0.04219")) == Decimal("0.0421")


def test_buy_scenario_quantity_and_notional():
    filters = _paxg_filters()
    price = Decimal("1900.00")
    qty = filters.round_qty_down(Decimal("80") / price)
    assert qty == Decimal("0.0421")
    assert price * qty == Decimal("79.99")
    assert filters.validate(price, qty).ok


def test_validation_reasons():
    filters = _paxg_filters()
    assert filters.validate(Decimal("0"), Decimal("1")).reason is RejectReason.PRICE_OUT_OF_BOUNDS
    assert filters.validate(Decimal("2000000"), Decimal("1")).reason is RejectReason.PRICE_OUT_OF_BOUNDS
    assert filters.validate(Decimal("100"), Decimal("0.00001")).reason is RejectReason.QTY_OUT_OF_BOUNDS
    result = filters.validate(Decimal("100"), Decimal("0.05"))
    assert not result
    assert result.reason is RejectReason.NOTIONAL_TOO_LOW
    assert "notional 5" in result.detail


def test_zero_max_means_unbounded():
    filters = _paxg_filters(max_price=Decimal("0"), max_qty=Decimal("0"))
    assert filters.validate(Decimal("99999999"), Decimal("123456")).ok
    assert filters.clip_price(Decimal("99999999")) == Decimal("99999999")


def test_formatting_matches_step_precision():
    filters = SymbolFilters(price_tick=Decimal("0.01000000"), qty_step=Decimal("0.00010000"))
    assert filters.format_price(Decimal("1900")) == "1900.00"
    assert filters.format_qty(Decimal("0.04219")) == "0.0421"


def test_from_exchange_info():
    info = {
        "symbol": "PAXGUSDT",
        "filters": [
            {"filterType": "PRICE_FILTER", "minPrice": "0.01000000", "maxPrice": "1000000.00000000", "tickSize": "0.01000000"},
            {"filterType": "LOT_SIZE", "minQty": "0.00010000", "maxQty": "9000.00000000", "stepSize": "0.00010000"},
            {"filterType": "NOTIONAL", "minNotional": "5.00000000", "applyMinToMarket": True},
        ],
    }
    filters = SymbolFilters.from_exchange_info(info)
    assert filters.is_loaded
    assert filters.price_tick == Decimal("0.01")
    assert filters.qty_step == Decimal("0.0001")
    assert filters.min_notional == Decimal("5")


def test_legacy_min_notional_filter_and_missing_filters():
    info = {"filters": [{"filterType": "MIN_NOTIONAL", "minNotional": "10"}]}
    filters = SymbolFilters.from_exchange_info(info)
    assert filters.min_notional == Decimal("10")
    assert not filters.is_loaded


def test_negative_bounds_rejected():
    with pytest.raises(ValueError):
        SymbolFilters(price_tick=Decimal("0.01"), min_qty=Decimal("-1"))
