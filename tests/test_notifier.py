import sys
from pathlib import Path

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from notifier import TelegramNotifier, split_message  # noqa: E402


class FakeResponse:
    def __init__(self, status=200, body="{}"):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    closed = False

    def __init__(self, status=200, error=None):
        self.posts = []
        self.status = status
        self.error = error

    def post(self, url, json=None):
        if self.error is not None:
            raise self.error
        self.posts.append((url, json))
        return FakeResponse(self.status, "bad request")


def test_split_message_prefers_paragraphs():
    text = "a" * 30 + "\n\n" + "b" * 30 + "\n\n" + "c" * 10
    chunks = split_message(text, limit=50)
    assert chunks == ["a" * 30, "b" * 30 + "\n\n" + "c" * 10]
    assert split_message("short") == ["short"]
    assert all(len(c) <= 20 for c in split_message("x" * 70, limit=20))


@pytest.mark.asyncio
async def test_notify_posts_to_chat():
    session = FakeSession()
    notifier = TelegramNotifier("T0KEN", "42", api_url="https://tg.test", session=session)
    await notifier.notify("BUY placed")
    assert session.posts == [
        (
            "https://tg.test/botT0KEN/sendMessage",
            {"chat_id": "42", "text": "BUY placed", "disable_web_page_preview": True},
        )
    ]


@pytest.mark.asyncio
async def test_disabled_notifier_only_logs(caplog):
    session = FakeSession()
    with caplog.at_level("INFO", logger="spot_grid_bot"):
        notifier = TelegramNotifier(None, None, session=session)
        await notifier.notify("hello")
    assert not notifier.enabled
    assert session.posts == []
    assert "notify | hello" in caplog.text


@pytest.mark.asyncio
async def test_delivery_failures_are_swallowed(caplog):
    notifier = TelegramNotifier("T", "1", session=FakeSession(error=OSError("network down")))
    with caplog.at_level("WARNING", logger="spot_grid_bot"):
        await notifier.notify("hello")
    assert "telegram send failed" in caplog.text

    notifier = TelegramNotifier("T", "1", session=FakeSession(status=400))
    await notifier.notify("hello")
