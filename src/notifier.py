"""Telegram notification channel.

Delivery is best effort: every failure is logged and swallowed so a flaky
chat API can never abort a trading cycle.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

import aiohttp

from utils import close_session, logger

TELEGRAM_API = "https://api.telegram.org"
# Telegram rejects messages longer than this.
MAX_MESSAGE_LEN = 4096


def split_message(text: str, limit: int = MAX_MESSAGE_LEN) -> List[str]:
    """Split ``text`` into chunks under ``limit``, preferring paragraph breaks."""
    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    current = ""
    for block in text.split("\n\n"):
        candidate = f"{current}\n\n{block}" if current else block
        if len(candidate) <= limit:
            current = candidate
            continue
        if current:
            chunks.append(current)
        while len(block) > limit:
            chunks.append(block[:limit])
            block = block[limit:]
        current = block
    if current:
        chunks.append(current)
    return chunks


class TelegramNotifier:
    def __init__(
        self,
        token: Optional[str],
        chat_id: Optional[str],
        *,
        api_url: str = TELEGRAM_API,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ):
        self.token = token or None
        self.chat_id = chat_id or None
        self.api_url = api_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        if not self.enabled:
            logger.warning("TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID missing; notifications go to the log only")

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def notify(self, message: str) -> None:
        logger.info("notify | %s", message.replace("\n", " / "))
        if not self.enabled or not message:
            return
        url = f"{self.api_url}/bot{self.token}/sendMessage"
        try:
            session = await self._get_session()
            for chunk in split_message(message):
                payload = {
                    "chat_id": self.chat_id,
                    "text": chunk,
                    "disable_web_page_preview": True,
                }
                async with session.post(url, json=payload) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        logger.warning("telegram send failed | status=%s body=%s", resp.status, body[:200])
                        return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("telegram send failed | error=%s", exc)

    async def close(self) -> None:
        if self._owns_session:
            await close_session(self._session)
        self._session = None
