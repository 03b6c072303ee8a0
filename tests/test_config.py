import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from config import load_config  # noqa: E402
from errors import ConfigError  # noqa: E402

BASE_ENV = {"BINANCE_API_KEY": "k", "BINANCE_API_SECRET": "s"}


def env(**extra):
    values = dict(BASE_ENV)
    values.update(extra)
    return values


def test_defaults():
    cfg = load_config(env())
    assert cfg.symbol == "PAXGUSDT"
    assert cfg.base_asset == "PAXG"
    assert cfg.quote_asset == "USDT"
    assert cfg.trade_size == Decimal("40")
    assert cfg.node_width == Decimal("10")
    assert cfg.node_gap == Decimal("1")
    assert cfg.dynamic_nodes == 20
    assert cfg.interval_sec == 30.0
    assert cfg.sell_strategy == "node_upper"
    assert not cfg.fixed_grid
    assert not cfg.notify_pending
    assert cfg.state_path is None
    assert cfg.retry_attempts == 3
    assert not cfg.repeat_notices


def test_fixed_grid_and_overrides():
    cfg = load_config(
        env(
            SYMBOL="btcfdusd",
            QUOTE_ASSET="FDUSD",
            GRID_MIN="1800",
            GRID_MAX="2000",
            GRID_NODES="10",
            BUY_AMOUNT_USD="80",
            INTERVAL_MS="15000",
            SELL_STRATEGY="MARGIN",
            SELL_MARGIN="12.5",
            NOTIFY_PENDING="true",
            PORT="8080",
        )
    )
    assert cfg.symbol == "BTCFDUSD"
    assert cfg.base_asset == "BTC"
    assert cfg.fixed_grid
    assert cfg.grid_nodes == 10
    assert cfg.trade_size == Decimal("80")
    assert cfg.interval_sec == 15.0
    assert cfg.sell_strategy == "margin"
    assert cfg.sell_margin == Decimal("12.5")
    assert cfg.notify_pending
    assert cfg.health_port == 8080


@pytest.mark.parametrize(
    "extra",
    [
        {"BINANCE_API_KEY": ""},
        {"GRID_MIN": "1800"},
        {"GRID_MIN": "2000", "GRID_MAX": "1800", "GRID_NODES": "5"},
        {"GRID_MIN": "1800", "GRID_MAX": "2000", "GRID_NODES": "0"},
        {"GRID_NODES": "many", "GRID_MIN": "1", "GRID_MAX": "2"},
        {"BUY_AMOUNT_USD": "0"},
        {"BUY_AMOUNT_USD": "abc"},
        {"SELL_STRATEGY": "market"},
        {"INTERVAL_MS": "-1"},
        {"SYMBOL": "PAXGBTC"},
        {"PORT": "70000"},
        {"GRID_RETRY_ATTEMPTS": "0"},
        {"GRID_REQUEST_TIMEOUT": "0"},
        {"GRID_RETRY_BASE_DELAY": "-1"},
    ],
)
def test_invalid_configuration(extra):
    with pytest.raises(ConfigError):
        load_config(env(**extra))


def test_explicit_base_asset_wins():
    cfg = load_config(env(SYMBOL="PAXGBTC", QUOTE_ASSET="BTC", BASE_ASSET="paxg"))
    assert cfg.base_asset == "PAXG"


def test_retry_policy_and_repeat_notices():
    cfg = load_config(
        env(
            GRID_REQUEST_TIMEOUT="4.5",
            GRID_RETRY_ATTEMPTS="6",
            GRID_RETRY_BASE_DELAY="0.1",
            REPEAT_NOTICES="yes",
        )
    )
    assert cfg.request_timeout == 4.5
    assert cfg.retry_attempts == 6
    assert cfg.retry_base_delay == 0.1
    assert cfg.repeat_notices
