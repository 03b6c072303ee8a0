import inspect

from binance_client import BinanceSpotClient
from config import BotConfig


class TradingAccount:
    """Own the exchange client built from the configured credentials."""

    def __init__(self, config: BotConfig):
        self.client = BinanceSpotClient(
            config.api_key,
            config.api_secret,
            base_url=config.api_url,
            timeout=config.request_timeout,
        )

    def get_client(self) -> BinanceSpotClient:
        return self.client

    async def close(self) -> None:
        """Close underlying HTTP sessions for created clients."""
        close_method = getattr(self.client, "close", None)
        if close_method:
            if inspect.iscoroutinefunction(close_method):
                await close_method()
            else:
                close_method()
