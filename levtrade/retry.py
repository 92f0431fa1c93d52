"""Retry & Resilience Layer: bounded retries, per-call timeouts and a request budget.

Every gateway call the engine makes goes through ``ResilientGateway``, which
returns a ``RetryResult`` instead of raising. Callers decide whether a failure
is fatal for their operation (``result.unwrap()``) or tolerable.
"""
import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Generic, Optional, TypeVar

from loguru import logger

from .config import RetryConfig
from .gateway import (
    Balance,
    ExchangeError,
    ExchangeGateway,
    ExchangePosition,
    OrderRejectedError,
    OrderResult,
    OrderSide,
    OrderType,
    Ticker,
    TransientExchangeError,
)

if TYPE_CHECKING:
    from .notifier import NotificationDispatcher

T = TypeVar("T")


class ExchangeCallFailed(ExchangeError):
    """A gateway call stayed unsuccessful after all permitted attempts."""

    def __init__(self, label: str, attempts: int, cause: Optional[BaseException]):
        super().__init__(f"{label} failed after {attempts} attempt(s): {cause}")
        self.label = label
        self.attempts = attempts
        self.cause = cause


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling, backoff and per-attempt timeout for one kind of call."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    timeout: Optional[float] = 30.0
    jitter: float = 0.25

    @classmethod
    def from_config(cls, cfg: RetryConfig, max_attempts: Optional[int] = None) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts or cfg.max_attempts,
            base_delay=cfg.base_delay,
            max_delay=cfg.max_delay,
            timeout=cfg.call_timeout,
            jitter=cfg.jitter,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Jittered exponential backoff before attempt ``attempt + 1``."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        jitter = delay * self.jitter * (2 * random.random() - 1)
        return max(0.0, delay + jitter)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried call: success with a value, or the last error."""
    label: str
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    def unwrap(self) -> T:
        if self.ok:
            return self.value
        if isinstance(self.error, OrderRejectedError):
            raise self.error
        raise ExchangeCallFailed(self.label, self.attempts, self.error) from self.error


class RequestThrottle:
    """Sliding-window request budget shared by all calls to one exchange.

    ``acquire`` waits (asynchronously) until the window has capacity, then
    records the request.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._request_times: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._request_times and self._request_times[0] <= cutoff:
            self._request_times.popleft()

    def is_allowed(self) -> bool:
        self._evict(self._clock())
        return len(self._request_times) < self.max_requests

    def time_until_allowed(self) -> float:
        """Seconds until the next request fits in the window. 0 if allowed now."""
        now = self._clock()
        self._evict(now)
        if len(self._request_times) < self.max_requests:
            return 0.0
        return max(0.0, self._request_times[0] + self.window_seconds - now)

    async def acquire(self) -> float:
        """Wait for capacity and record the request; returns seconds waited."""
        waited = 0.0
        async with self._lock:
            while True:
                wait = self.time_until_allowed()
                if wait <= 0:
                    break
                logger.debug(f"Request budget exhausted, waiting {wait:.2f}s")
                await self._sleep(wait)
                waited += wait
            self._request_times.append(self._clock())
        return waited


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str,
    *,
    throttle: Optional[RequestThrottle] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult[T]:
    """Invoke ``fn`` up to ``policy.max_attempts`` times.

    Transient errors and per-attempt timeouts are retried with backoff.
    ``OrderRejectedError`` and other non-transient ``ExchangeError``s end the
    loop at once. Never raises for exchange failures.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        if throttle is not None:
            await throttle.acquire()
        try:
            if policy.timeout:
                value = await asyncio.wait_for(fn(), policy.timeout)
            else:
                value = await fn()
            if attempt > 1:
                logger.info(f"Exchange call recovered | call={label} attempt={attempt}")
            return RetryResult(label, True, value, None, attempt)
        except asyncio.TimeoutError:
            last_error = TransientExchangeError(f"{label} timed out after {policy.timeout}s")
        except TransientExchangeError as e:
            last_error = e
        except ExchangeError as e:
            logger.warning(f"Exchange call rejected | call={label} attempt={attempt} error={e}")
            return RetryResult(label, False, None, e, attempt)

        logger.warning(f"Exchange call failed | call={label} attempt={attempt}/{policy.max_attempts} error={last_error}")
        if attempt < policy.max_attempts:
            await sleep(policy.backoff_delay(attempt))

    logger.error(f"Exchange call exhausted retries | call={label} attempts={policy.max_attempts} error={last_error}")
    return RetryResult(label, False, None, last_error, policy.max_attempts)


class ResilientGateway:
    """Wraps an ``ExchangeGateway``; every method returns a ``RetryResult``.

    Exhausted transient failures are escalated to the notifier; rejections
    are left to the caller, which knows whether they are expected.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        policy: RetryPolicy,
        *,
        throttle: Optional[RequestThrottle] = None,
        notifier: Optional["NotificationDispatcher"] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.inner = gateway
        self.policy = policy
        self.throttle = throttle
        self.notifier = notifier
        self._sleep = sleep

    async def _call(self, label: str, fn: Callable[[], Awaitable[T]], policy: Optional[RetryPolicy] = None, escalate: bool = True) -> RetryResult[T]:
        result = await call_with_retry(fn, policy or self.policy, label, throttle=self.throttle, sleep=self._sleep)
        if not result.ok and escalate and self.notifier is not None and not isinstance(result.error, OrderRejectedError):
            self.notifier.error(label, result.error)
        return result

    async def fetch_ticker(self, symbol: str) -> RetryResult[Ticker]:
        return await self._call(f"fetch_ticker:{symbol}", lambda: self.inner.fetch_ticker(symbol))

    async def fetch_position(self, symbol: str) -> RetryResult[Optional[ExchangePosition]]:
        return await self._call(f"fetch_position:{symbol}", lambda: self.inner.fetch_position(symbol))

    async def fetch_balance(self, escalate: bool = True) -> RetryResult[Balance]:
        return await self._call("fetch_balance", self.inner.fetch_balance, escalate=escalate)

    async def create_order(
        self,
        symbol: str,
        order_type: OrderType,
        side: OrderSide,
        size: Decimal,
        *,
        client_order_id: str,
        stop_price: Optional[Decimal] = None,
        reduce_only: bool = False,
        policy: Optional[RetryPolicy] = None,
        escalate: bool = True,
    ) -> RetryResult[OrderResult]:
        """Place an order; the same ``client_order_id`` is reused on every attempt."""
        return await self._call(
            f"create_order:{order_type.value}:{side.value}",
            lambda: self.inner.create_order(
                symbol,
                order_type,
                side,
                size,
                stop_price=stop_price,
                reduce_only=reduce_only,
                client_order_id=client_order_id,
            ),
            policy,
            escalate,
        )

    async def cancel_all_orders(self, symbol: str) -> RetryResult[None]:
        return await self._call(f"cancel_all_orders:{symbol}", lambda: self.inner.cancel_all_orders(symbol))

    async def fetch_time(self) -> RetryResult[int]:
        return await self._call("fetch_time", self.inner.fetch_time)
