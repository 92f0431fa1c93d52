import asyncio
from decimal import Decimal

import pytest

from levtrade.gateway import InMemoryGateway, OrderRejectedError, OrderSide, OrderType, TransientExchangeError
from levtrade.notifier import NotificationDispatcher, NotificationKind
from levtrade.retry import (
    ExchangeCallFailed,
    RequestThrottle,
    ResilientGateway,
    RetryPolicy,
    call_with_retry,
)

from conftest import RecordingNotifier

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, timeout=1.0, jitter=0)


class Flaky:
    def __init__(self, failures, exc=None, value="ok"):
        self.failures = failures
        self.exc = exc or TransientExchangeError("network down")
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.value


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(base_delay=2.0, max_delay=5.0, jitter=0)
    assert policy.backoff_delay(1) == 2.0
    assert policy.backoff_delay(2) == 4.0
    assert policy.backoff_delay(3) == 5.0


def test_backoff_jitter_stays_in_band():
    policy = RetryPolicy(base_delay=2.0, max_delay=30.0, jitter=0.25)
    for _ in range(50):
        delay = policy.backoff_delay(2)
        assert 3.0 <= delay <= 5.0


@pytest.mark.asyncio
async def test_transient_failure_then_success():
    fn = Flaky(failures=2)
    result = await call_with_retry(fn, NO_WAIT, "fetch_ticker")
    assert result.ok
    assert result.value == "ok"
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_exhaustion_returns_failure():
    fn = Flaky(failures=10)
    result = await call_with_retry(fn, NO_WAIT, "fetch_ticker")
    assert not result.ok
    assert result.attempts == 3
    assert fn.calls == 3
    assert isinstance(result.error, TransientExchangeError)

    with pytest.raises(ExchangeCallFailed) as excinfo:
        result.unwrap()
    assert excinfo.value.label == "fetch_ticker"
    assert excinfo.value.attempts == 3


@pytest.mark.asyncio
async def test_rejection_is_not_retried():
    fn = Flaky(failures=10, exc=OrderRejectedError("insufficient margin"))
    result = await call_with_retry(fn, NO_WAIT, "create_order")
    assert not result.ok
    assert fn.calls == 1
    with pytest.raises(OrderRejectedError):
        result.unwrap()


@pytest.mark.asyncio
async def test_timeout_counts_as_transient():
    async def hang():
        await asyncio.sleep(1)

    policy = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0, timeout=0.01, jitter=0)
    result = await call_with_retry(hang, policy, "fetch_position")
    assert not result.ok
    assert result.attempts == 2
    assert isinstance(result.error, TransientExchangeError)
    assert "timed out" in str(result.error)


@pytest.mark.asyncio
async def test_sleeps_between_attempts():
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, timeout=None, jitter=0)
    await call_with_retry(Flaky(failures=5), policy, "fetch_balance", sleep=fake_sleep)
    assert sleeps == [1.0, 2.0]


class SteppingClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_throttle_waits_for_window():
    clock = SteppingClock()
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        clock.now += seconds

    throttle = RequestThrottle(2, window_seconds=60, clock=clock, sleep=fake_sleep)
    assert await throttle.acquire() == 0.0
    clock.now = 10.0
    assert await throttle.acquire() == 0.0
    assert not throttle.is_allowed()
    assert throttle.time_until_allowed() == 50.0

    waited = await throttle.acquire()
    assert waited == 50.0
    assert sleeps == [50.0]


def test_throttle_window_expires():
    clock = SteppingClock()
    throttle = RequestThrottle(1, window_seconds=1, clock=clock)
    throttle._request_times.append(0.0)
    assert not throttle.is_allowed()
    clock.now = 1.5
    assert throttle.is_allowed()


@pytest.mark.asyncio
async def test_resilient_gateway_escalates_exhaustion():
    recorder = RecordingNotifier()
    dispatcher = NotificationDispatcher([recorder], "SOL/USDT:USDT")
    sim = InMemoryGateway()
    gateway = ResilientGateway(sim, NO_WAIT, notifier=dispatcher)

    sim.fail_next("fetch_ticker", times=3)
    result = await gateway.fetch_ticker("SOL/USDT:USDT")
    await dispatcher.drain()

    assert not result.ok
    assert recorder.kinds() == [NotificationKind.ERROR]
    assert "fetch_ticker" in recorder.sent[0].text


@pytest.mark.asyncio
async def test_resilient_gateway_reuses_client_order_id():
    sim = InMemoryGateway()
    gateway = ResilientGateway(sim, NO_WAIT)

    sim.fail_next("create_order", times=1)
    result = await gateway.create_order(
        "SOL/USDT:USDT", OrderType.MARKET, OrderSide.BUY, Decimal("1"), client_order_id="ltOPEN1"
    )
    assert result.ok
    assert result.attempts == 2
    assert result.value.client_order_id == "ltOPEN1"
    assert sim.position.size == Decimal("1")


@pytest.mark.asyncio
async def test_rejections_are_not_escalated():
    recorder = RecordingNotifier()
    dispatcher = NotificationDispatcher([recorder])
    sim = InMemoryGateway()
    gateway = ResilientGateway(sim, NO_WAIT, notifier=dispatcher)

    result = await gateway.create_order(
        "SOL/USDT:USDT", OrderType.MARKET, OrderSide.SELL, Decimal("1"), client_order_id="c1", reduce_only=True
    )
    await dispatcher.drain()
    assert not result.ok
    assert isinstance(result.error, OrderRejectedError)
    assert recorder.sent == []
