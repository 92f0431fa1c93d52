from decimal import Decimal

import pytest

from levtrade.notifier import (
    LogNotifier,
    Notification,
    NotificationDispatcher,
    NotificationError,
    NotificationKind,
    Notifier,
    TelegramNotifier,
)
from levtrade.pnl import realized_pnl
from levtrade.position import Direction, RiskPhase

from conftest import RecordingNotifier


class BrokenNotifier(Notifier):
    async def send(self, notification):
        raise NotificationError("chat not found")


class FakeResponse:
    def __init__(self, status, body=""):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, status=200, body=""):
        self.status = status
        self.body = body
        self.posts = []
        self.closed = False

    def post(self, url, json=None):
        self.posts.append((url, json))
        return FakeResponse(self.status, self.body)

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_failed_delivery_does_not_block_others():
    recorder = RecordingNotifier()
    dispatcher = NotificationDispatcher([BrokenNotifier(), recorder], "SOL/USDT:USDT")

    dispatcher.info("hello")
    await dispatcher.drain()

    assert [n.text for n in recorder.sent] == ["hello"]


@pytest.mark.asyncio
async def test_message_builders():
    recorder = RecordingNotifier()
    dispatcher = NotificationDispatcher([recorder], "SOL/USDT:USDT")

    dispatcher.position_opened(Direction.LONG, Decimal("1"), Decimal("100"), Decimal("99.65"), Decimal("101.05"), Decimal("1000"))
    result = realized_pnl(Direction.LONG, Decimal("100"), Decimal("101"), Decimal("1"), Decimal("0.04"))
    result.balance_change = Decimal("1")
    dispatcher.position_closed(result, Decimal("1001"), "manual")
    dispatcher.phase_changed(RiskPhase.INITIAL, RiskPhase.BREAK_EVEN, Decimal("1.06"))
    dispatcher.safety_orders_updated(Decimal("1"), None, Decimal("101.3"), Decimal("1.06"), RiskPhase.BREAK_EVEN)
    dispatcher.error("fetch_ticker", RuntimeError("boom"))
    await dispatcher.drain()

    opened, closed, phase, safety, error = recorder.sent
    assert opened.kind is NotificationKind.POSITION_OPENED
    assert "Stop loss: 99.6500" in opened.text
    assert "Balance: 1000.00" in opened.text
    assert "P&L: 1.00 (0.96%)" in closed.text
    assert "(manual)" in closed.text
    assert "INITIAL -> BREAK_EVEN" in phase.text
    assert "Stop loss: n/a" in safety.text
    assert error.kind is NotificationKind.ERROR
    assert "boom" in error.text


@pytest.mark.asyncio
async def test_log_notifier_always_delivers():
    assert await LogNotifier().send(Notification(NotificationKind.INFO, "hi")) is True


@pytest.mark.asyncio
async def test_telegram_disabled_without_credentials():
    notifier = TelegramNotifier(None, "42")
    assert not notifier.enabled
    assert await notifier.send(Notification(NotificationKind.INFO, "hi")) is False
    assert notifier.session is None


@pytest.mark.asyncio
async def test_telegram_posts_markdown():
    notifier = TelegramNotifier("123:abc", "42", api_url="https://telegram.test/")
    session = FakeSession()
    notifier.session = session

    assert await notifier.send(Notification(NotificationKind.INFO, "*hi*")) is True
    url, payload = session.posts[0]
    assert url == "https://telegram.test/bot123:abc/sendMessage"
    assert payload == {"chat_id": "42", "text": "*hi*", "parse_mode": "Markdown"}

    await notifier.close()
    assert session.closed
    assert notifier.session is None


@pytest.mark.asyncio
async def test_telegram_error_status_raises():
    notifier = TelegramNotifier("123:abc", "42")
    notifier.session = FakeSession(status=400, body="Bad Request: chat not found")

    with pytest.raises(NotificationError, match="400"):
        await notifier.send(Notification(NotificationKind.ERROR, "x"))
