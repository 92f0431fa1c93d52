from decimal import Decimal
from typing import List

import pytest

from levtrade.config import EngineConfig, RetryConfig, ScheduleConfig
from levtrade.engine import PositionEngine
from levtrade.gateway import InMemoryGateway
from levtrade.notifier import Notification, NotificationDispatcher, NotificationKind, Notifier


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[Notification] = []

    async def send(self, notification: Notification) -> bool:
        self.sent.append(notification)
        return True

    def kinds(self) -> List[NotificationKind]:
        return [n.kind for n in self.sent]


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_config(**schedule_overrides) -> EngineConfig:
    """Engine config with zero delays and a tiny retry budget."""
    cfg = EngineConfig()
    cfg.retry = RetryConfig(
        max_attempts=2,
        base_delay=0,
        max_delay=0,
        call_timeout=5,
        jitter=0,
        order_attempts=2,
        safety_rounds=2,
        max_requests_per_minute=100000,
    )
    schedule = dict(
        position_check_interval=3600,
        order_update_interval=90,
        reconcile_interval=3600,
        reconcile_retry_delay=0,
        safety_retry_delay=0,
        signal_retry_delay=0,
        close_poll_attempts=3,
        close_poll_delay=0,
    )
    schedule.update(schedule_overrides)
    cfg.schedule = ScheduleConfig(**schedule)
    return cfg


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return InMemoryGateway(symbol="SOL/USDT:USDT", price=Decimal("100"), balance=Decimal("1000"))


@pytest.fixture
def config():
    return fast_config()


@pytest.fixture
def engine(gateway, config, recorder, clock):
    dispatcher = NotificationDispatcher([recorder], config.exchange.symbol)
    return PositionEngine(gateway, config, notifier=dispatcher, clock=clock)
