import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

logger = logging.getLogger("spot_grid_bot")

# Internal guard to avoid re-initialising logging repeatedly
_LOGGING_CONFIGURED = False


def _resolve_level(level: Optional[Union[int, str]]) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    env = os.getenv("LOG_LEVEL") or os.getenv("GRID_LOG_LEVEL")
    if env:
        resolved = logging.getLevelName(env.upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO


def setup_logging(log_level: Optional[Union[int, str]] = None) -> None:
    """Initialise console logging in an idempotent way.

    - Configures the root logger once with a sane format.
    - Attaches a StreamHandler to the app logger and disables propagation to prevent duplicates.
    - Respects a provided level, otherwise falls back to ``LOG_LEVEL`` or INFO.
    """
    global _LOGGING_CONFIGURED

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    level = _resolve_level(log_level)

    if not _LOGGING_CONFIGURED:
        logging.basicConfig(level=level, format=fmt)
        _LOGGING_CONFIGURED = True

    logger.setLevel(level)
    logger.propagate = False
    if all(isinstance(h, logging.NullHandler) for h in logger.handlers):
        h = logging.StreamHandler()
        h.setLevel(level)
        h.setFormatter(logging.Formatter(fmt))
        logger.addHandler(h)


def to_decimal(value: Any, default: Decimal = Decimal(0)) -> Decimal:
    """Convert exchange payload values (strings, ints, floats, None) to ``Decimal``."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def fmt_decimal(value: Optional[Decimal]) -> str:
    """Render a decimal without exponent notation or trailing zeros."""
    if value is None:
        return "?"
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"


async def close_session(session: Any) -> None:
    """Close an aiohttp session if it is still open, ignoring shutdown errors."""
    if session is None or getattr(session, "closed", True):
        return
    try:
        await session.close()
    except Exception as exc:  # pragma: no cover - best effort cleanup
        logger.debug("error closing http session: %s", exc)
