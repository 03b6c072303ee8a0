"""Retry outbound exchange calls with bounded exponential backoff."""

from __future__ import annotations

import asyncio
import contextlib
import os
import random
import re

import aiohttp

from utils import logger

# Maximum duration allowed for each REST call.
REQUEST_TIMEOUT = float(os.getenv("GRID_REQUEST_TIMEOUT", "10"))
MAX_ATTEMPTS = int(os.getenv("GRID_RETRY_ATTEMPTS", "3"))
BASE_DELAY = float(os.getenv("GRID_RETRY_BASE_DELAY", "0.4"))
MAX_DELAY = 5.0

# Binance error codes that signal overload rather than a bad request:
# -1003 too many requests, -1001 internal disconnect, -1007 backend timeout.
_TRANSIENT_CODES = {-1003, -1001, -1007}


def configure(*, request_timeout=None, max_attempts=None, base_delay=None) -> None:
    """Override the module defaults, e.g. from a loaded ``BotConfig``."""
    global REQUEST_TIMEOUT, MAX_ATTEMPTS, BASE_DELAY
    if request_timeout is not None:
        REQUEST_TIMEOUT = float(request_timeout)
    if max_attempts is not None:
        MAX_ATTEMPTS = int(max_attempts)
    if base_delay is not None:
        BASE_DELAY = float(base_delay)
    logger.debug(
        "retry policy | timeout=%.1fs attempts=%d base_delay=%.2fs",
        REQUEST_TIMEOUT,
        MAX_ATTEMPTS,
        BASE_DELAY,
    )


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` for failures worth retrying (timeouts, 429/418, 5xx, resets)."""
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return True
    if isinstance(exc, ConnectionError):
        return True
    if getattr(exc, "code", None) in _TRANSIENT_CODES:
        return True
    status_code = getattr(exc, "status_code", None)
    if status_code is None:
        status_code = getattr(exc, "status", None)
    if isinstance(status_code, int):
        return status_code in (418, 429) or 500 <= status_code <= 599
    msg = str(exc)
    return " 429 " in msg or "Too Many Requests" in msg or bool(re.search(r"\b50[234]\b", msg))


def _retry_after(exc: BaseException) -> float | None:
    value = getattr(exc, "retry_after", None)
    if value is not None:
        return float(value)
    m = re.search(r"Retry-After\"?:\s*\"?(\d+)", str(exc), re.IGNORECASE)
    return float(m.group(1)) if m else None


async def call_with_retries(op, *, limiter, max_attempts=None, base_delay=None):
    """Execute ``op`` with retry/backoff logic.

    ``op`` is a no-arg callable returning an awaitable (the REST call).
    ``limiter`` paces requests; every attempt acquires one token.
    Non-transient errors propagate immediately; transient ones are retried up
    to ``max_attempts`` times before the last error is re-raised.
    """
    max_attempts = MAX_ATTEMPTS if max_attempts is None else max_attempts
    base_delay = BASE_DELAY if base_delay is None else base_delay

    attempt = 0
    while True:
        attempt += 1
        await limiter.acquire()
        try:
            task = asyncio.ensure_future(op())
            try:
                return await asyncio.wait_for(task, timeout=REQUEST_TIMEOUT)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                raise
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: PERF203 - classification below decides
            if not is_transient(e):
                raise
            if attempt >= max_attempts:
                logger.error(
                    "retries exhausted | attempts=%d error=%s", attempt, e or type(e).__name__
                )
                raise
            ra = None if isinstance(e, asyncio.TimeoutError) else _retry_after(e)
            delay = ra if ra is not None else base_delay * (2 ** (attempt - 1))
            delay *= 0.8 + 0.4 * random.random()
            delay = min(delay, MAX_DELAY)
            logger.warning(
                "transient error, retrying | attempt=%d/%d delay=%.2fs error=%s",
                attempt,
                max_attempts,
                delay,
                e or type(e).__name__,
            )
            await asyncio.sleep(delay)
