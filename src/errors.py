"""Exception hierarchy shared by the bot modules.

Only :class:`ConfigError` is fatal.  Exchange errors are either retried by
``backoff_utils.call_with_retries`` (timeouts, 429, 5xx) or surfaced as a
failed cycle; :class:`OrderRejectedError` is an expected outcome that keeps a
node in its current state.
"""

from __future__ import annotations

from typing import Optional


class GridBotError(Exception):
    """Base class for all bot errors."""


class ConfigError(GridBotError):
    """Invalid or missing configuration detected before the first cycle."""


class ExchangeError(GridBotError):
    """Non-success response from the exchange REST API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after

    def __str__(self) -> str:
        base = super().__str__()
        parts = []
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.code is not None:
            parts.append(f"code={self.code}")
        return f"{base} ({' '.join(parts)})" if parts else base


class OrderRejectedError(ExchangeError):
    """The exchange refused an order (insufficient balance, filter failure...)."""
