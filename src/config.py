# config.py
"""Bot configuration from the environment (optionally a ``.env`` file).

Everything is validated up front: a bad value raises :class:`ConfigError`
before any order is sent.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from dotenv import load_dotenv

from engine import SELL_STRATEGIES, SELL_AT_NODE_UPPER
from errors import ConfigError


@dataclass(frozen=True)
class BotConfig:
    api_key: str
    api_secret: str
    symbol: str = "PAXGUSDT"
    base_asset: str = "PAXG"
    quote_asset: str = "USDT"
    api_url: str = "https://api.binance.com"
    trade_size: Decimal = Decimal("40")
    grid_min: Optional[Decimal] = None
    grid_max: Optional[Decimal] = None
    grid_nodes: Optional[int] = None
    node_width: Decimal = Decimal("10")
    node_gap: Decimal = Decimal("1")
    dynamic_nodes: int = 20
    sell_strategy: str = SELL_AT_NODE_UPPER
    sell_offset: Decimal = Decimal("0")
    sell_margin: Decimal = Decimal("16")
    interval_sec: float = 30.0
    request_timeout: float = 10.0
    retry_attempts: int = 3
    retry_base_delay: float = 0.4
    trade_history_max_pages: int = 50
    state_path: Optional[str] = None
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    notify_pending: bool = False
    repeat_notices: bool = False
    keepalive_url: Optional[str] = None
    keepalive_interval_sec: float = 840.0
    health_port: Optional[int] = None
    log_level: str = "INFO"

    @property
    def fixed_grid(self) -> bool:
        return self.grid_min is not None


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _decimal(env, name, default=None) -> Optional[Decimal]:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if not value.is_finite():
        raise ConfigError(f"{name} must be finite, got {raw!r}")
    return value


def _int(env, name, default=None) -> Optional[int]:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(env, name, default) -> float:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _bool(env, name, default=False) -> bool:
    raw = _get(env, name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def load_config(env: Optional[Mapping[str, str]] = None, *, dotenv: bool = True) -> BotConfig:
    """Build a :class:`BotConfig` from ``env`` (default: ``os.environ``)."""
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    api_key = _get(env, "BINANCE_API_KEY")
    api_secret = _get(env, "BINANCE_API_SECRET")
    if not api_key or not api_secret:
        raise ConfigError("Environment variables 'BINANCE_API_KEY' and 'BINANCE_API_SECRET' are required")

    symbol = (_get(env, "SYMBOL") or "PAXGUSDT").upper()
    quote = (_get(env, "QUOTE_ASSET") or "USDT").upper()
    base = _get(env, "BASE_ASSET")
    if base is None:
        if not symbol.endswith(quote) or symbol == quote:
            raise ConfigError(f"cannot derive base asset of {symbol} from quote {quote}; set BASE_ASSET")
        base = symbol[: -len(quote)]

    trade_size = _decimal(env, "BUY_AMOUNT_USD", Decimal("40"))
    if trade_size <= 0:
        raise ConfigError("BUY_AMOUNT_USD must be positive")

    grid_min = _decimal(env, "GRID_MIN")
    grid_max = _decimal(env, "GRID_MAX")
    grid_nodes = _int(env, "GRID_NODES")
    fixed = [v is not None for v in (grid_min, grid_max, grid_nodes)]
    if any(fixed) and not all(fixed):
        raise ConfigError("GRID_MIN, GRID_MAX and GRID_NODES must be set together")
    if all(fixed):
        if grid_nodes <= 0:
            raise ConfigError(f"GRID_NODES must be positive, got {grid_nodes}")
        if grid_max <= grid_min:
            raise ConfigError(f"GRID_MAX ({grid_max}) must exceed GRID_MIN ({grid_min})")

    node_width = _decimal(env, "GRID_STEP_USD", Decimal("10"))
    node_gap = _decimal(env, "GRID_GAP_USD", Decimal("1"))
    dynamic_nodes = _int(env, "GRID_DYNAMIC_NODES", 20)
    if node_width <= 0 or node_gap < 0 or dynamic_nodes <= 0:
        raise ConfigError("GRID_STEP_USD and GRID_DYNAMIC_NODES must be positive, GRID_GAP_USD non-negative")

    sell_strategy = (_get(env, "SELL_STRATEGY") or SELL_AT_NODE_UPPER).lower()
    if sell_strategy not in SELL_STRATEGIES:
        raise ConfigError(f"SELL_STRATEGY must be one of {', '.join(SELL_STRATEGIES)}")
    sell_offset = _decimal(env, "SELL_OFFSET", Decimal("0"))
    sell_margin = _decimal(env, "SELL_MARGIN", Decimal("16"))
    if sell_offset < 0 or sell_margin < 0:
        raise ConfigError("SELL_OFFSET and SELL_MARGIN must not be negative")

    interval_ms = _float(env, "INTERVAL_MS", 30_000.0)
    if interval_ms <= 0:
        raise ConfigError("INTERVAL_MS must be positive")

    request_timeout = _float(env, "GRID_REQUEST_TIMEOUT", 10.0)
    retry_attempts = _int(env, "GRID_RETRY_ATTEMPTS", 3)
    retry_base_delay = _float(env, "GRID_RETRY_BASE_DELAY", 0.4)
    if request_timeout <= 0 or retry_attempts < 1 or retry_base_delay < 0:
        raise ConfigError(
            "GRID_REQUEST_TIMEOUT must be positive, GRID_RETRY_ATTEMPTS at least 1, "
            "GRID_RETRY_BASE_DELAY non-negative"
        )

    health_port = _int(env, "PORT")
    if health_port is not None and not 0 < health_port < 65536:
        raise ConfigError(f"PORT out of range: {health_port}")

    return BotConfig(
        api_key=api_key,
        api_secret=api_secret,
        symbol=symbol,
        base_asset=base.upper(),
        quote_asset=quote,
        api_url=_get(env, "BINANCE_API") or "https://api.binance.com",
        trade_size=trade_size,
        grid_min=grid_min,
        grid_max=grid_max,
        grid_nodes=grid_nodes,
        node_width=node_width,
        node_gap=node_gap,
        dynamic_nodes=dynamic_nodes,
        sell_strategy=sell_strategy,
        sell_offset=sell_offset,
        sell_margin=sell_margin,
        interval_sec=interval_ms / 1000.0,
        request_timeout=request_timeout,
        retry_attempts=retry_attempts,
        retry_base_delay=retry_base_delay,
        trade_history_max_pages=_int(env, "TRADE_HISTORY_MAX_PAGES", 50),
        state_path=_get(env, "GRID_STATE_PATH"),
        telegram_token=_get(env, "TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=_get(env, "TELEGRAM_CHAT_ID"),
        notify_pending=_bool(env, "NOTIFY_PENDING"),
        repeat_notices=_bool(env, "REPEAT_NOTICES"),
        keepalive_url=_get(env, "KEEPALIVE_URL"),
        keepalive_interval_sec=_float(env, "KEEPALIVE_INTERVAL_SEC", 840.0),
        health_port=health_port,
        log_level=_get(env, "LOG_LEVEL") or "INFO",
    )
