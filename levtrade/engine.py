"""
Position Orchestrator.

``PositionEngine`` is the public surface: trading signals, manual close,
position/balance queries, exchange push events and the periodic position
check all enter here. Every entry point that can mutate position state runs
inside the per-symbol ``CriticalSection``; components below it never lock.

Signal flow (under the lock):
    reconcile -> no position: open
              -> same direction: average in, or ignore
              -> opposite direction: close (verified flat), then open
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Union

from loguru import logger

from .config import EngineConfig
from .dca import DcaController
from .gateway import Balance, ExchangeError, ExchangeGateway, OrderSide, OrderType, new_client_order_id
from .notifier import LogNotifier, NotificationDispatcher
from .pnl import TradeResult, realized_pnl
from .position import Direction, PositionStore, RiskPhase
from .reconciler import ExchangeReconciler, ReconcileOutcome
from .retry import RequestThrottle, ResilientGateway, RetryPolicy
from .risk import RiskPhaseMachine, base_levels, clamp_levels, tier_for
from .safety_orders import SafetyOrderManager
from .scheduler import CriticalSection, PeriodicTimer, Scheduler
from .ws_client import ExchangeEvent


class PositionCloseError(ExchangeError):
    """The exchange still reports a position after the close order and polling."""


class SignalOutcome(str, Enum):
    OPENED = "opened"
    AVERAGED = "averaged"
    FLIPPED = "flipped"
    IGNORED = "ignored"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass(frozen=True)
class ActivePositionView:
    """Read-only view returned to callers of ``get_active_position``."""
    is_open: bool
    direction: Optional[Direction] = None
    size: Decimal = Decimal("0")
    entry_price: Optional[Decimal] = None
    risk_phase: Optional[RiskPhase] = None
    stop_price: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    dca_count: int = 0


class PositionEngine:
    """Owns one symbol's position lifecycle on a leveraged margin account.

    Args:
        gateway: Exchange adapter (``CcxtGateway`` or ``InMemoryGateway``)
        config: Validated engine configuration
        notifier: Dispatcher for operator messages (defaults to log-only)
        clock: Epoch-seconds source for trailing throttles
        throttle: Shared request budget (defaults to ``retry.max_requests_per_minute``)
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        config: EngineConfig,
        *,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], float] = time.time,
        throttle: Optional[RequestThrottle] = None,
    ):
        self.config = config
        self.symbol = config.exchange.symbol
        self.clock = clock
        self.notifier = notifier or NotificationDispatcher([LogNotifier()], self.symbol)
        self.policy = RetryPolicy.from_config(config.retry)
        self.gateway = ResilientGateway(
            gateway,
            self.policy,
            throttle=throttle or RequestThrottle(config.retry.max_requests_per_minute),
            notifier=self.notifier,
        )
        self.store = PositionStore()
        self.guard = CriticalSection(self.symbol)
        self.scheduler = Scheduler()

        sched = config.schedule
        self.safety = SafetyOrderManager(
            self.gateway,
            self.store,
            self.notifier,
            self.scheduler,
            self.guard,
            symbol=self.symbol,
            risk=config.risk,
            order_policy=RetryPolicy.from_config(config.retry, max_attempts=config.retry.order_attempts),
            max_rounds=config.retry.safety_rounds,
            retry_delay=sched.safety_retry_delay,
        )
        self.phases = RiskPhaseMachine(
            self.store, self.safety, self.notifier, config.risk, sched.order_update_interval, clock=clock
        )
        self.dca = DcaController(self.gateway, self.store, self.safety, self.notifier, config.dca, symbol=self.symbol)
        self.reconciler = ExchangeReconciler(
            self.gateway,
            self.store,
            self.safety,
            self.notifier,
            self.scheduler,
            self.guard,
            symbol=self.symbol,
            commission_pct=config.risk.commission_pct,
            retry_delay=sched.reconcile_retry_delay,
            on_opened=self._start_position_timer,
            on_closed=self._stop_position_timer,
            clock=clock,
        )
        self.position_timer = PeriodicTimer(sched.position_check_interval, self.run_cycle, name=f"position-check:{self.symbol}")
        self._last_balance: Optional[Balance] = None

    # --- lifecycle ---
    async def start(self) -> ReconcileOutcome:
        """Startup reconciliation: adopt any position already on the exchange."""
        outcome = await self.guard.run("startup", self.reconciler.reconcile)
        await self.get_account_balance()
        logger.info(f"Engine started | symbol={self.symbol} reconcile={outcome.value} position={self.get_active_position()}")
        return outcome

    async def stop(self) -> None:
        self._stop_position_timer()
        self.scheduler.cancel_all()
        await self.notifier.drain()
        logger.info(f"Engine stopped | symbol={self.symbol}")

    # --- entry points ---
    async def handle_signal(self, direction: Union[Direction, str], price, amount) -> SignalOutcome:
        """Act on a trading signal: open, average in, flip or ignore."""
        if not isinstance(direction, Direction):
            direction = Direction.from_signal(direction)
        price = Decimal(str(price))
        amount = Decimal(str(amount))
        logger.info(f"Signal received | direction={direction.value} price={price} amount={amount}")
        return await self.guard.run("signal", lambda: self._handle_signal(direction, price, amount, attempt=1))

    async def close_position(self, reason: str = "manual") -> Optional[TradeResult]:
        """Close the open position at market; None if flat or the close failed."""
        async def _close():
            try:
                return await self._close(reason)
            except ExchangeError as e:
                logger.error(f"Close failed | reason={reason} error={e}")
                self.notifier.error("close position", e)
                return None

        return await self.guard.run("close", _close)

    async def run_cycle(self) -> None:
        """Periodic position check; dropped when another trigger holds the lock."""
        await self.guard.run("position-check", self._cycle, drop_if_busy=True)

    async def on_exchange_event(self, event: ExchangeEvent) -> None:
        """Fill or liquidation pushed by the exchange: reconcile right away."""
        logger.info(f"Exchange event received | kind={event.kind.value} status={event.status}")
        await self.guard.run(f"event:{event.kind.value}", self._cycle)

    def get_active_position(self) -> ActivePositionView:
        position = self.store.snapshot()
        if position is None:
            return ActivePositionView(is_open=False)
        return ActivePositionView(
            is_open=True,
            direction=position.direction,
            size=position.total_size,
            entry_price=position.entry_price,
            risk_phase=position.risk_phase,
            stop_price=position.stop_price,
            target_price=position.target_price,
            dca_count=position.dca_count,
        )

    async def get_account_balance(self) -> Optional[Decimal]:
        """Available quote balance; the last known value when the exchange is unreachable."""
        balance = await self._refresh_balance()
        return balance.available if balance is not None else None

    async def _refresh_balance(self) -> Optional[Balance]:
        result = await self.gateway.fetch_balance(escalate=False)
        if result.ok:
            self._last_balance = result.value
        else:
            logger.warning(f"Balance unavailable, using last known | balance={self._last_balance}")
        return self._last_balance

    # --- internals (lock held) ---
    async def _handle_signal(self, direction: Direction, price: Decimal, amount: Decimal, attempt: int) -> SignalOutcome:
        try:
            await self.reconciler.reconcile()
            position = self.store.snapshot()

            if position is None:
                await self._open(direction, amount, price)
                return SignalOutcome.OPENED

            if position.direction is direction:
                if self.dca.should_average_in(direction, price):
                    await self.dca.average_in(direction, price, amount)
                    return SignalOutcome.AVERAGED
                logger.info(f"Signal ignored, already {direction.value} | entry={position.entry_price} price={price}")
                return SignalOutcome.IGNORED

            await self._close(f"reversed to {direction.value}")
            await self._open(direction, amount, price)
            return SignalOutcome.FLIPPED

        except ExchangeError as e:
            if attempt == 1:
                delay = self.config.schedule.signal_retry_delay
                logger.error(f"Signal failed, retrying in {delay}s | direction={direction.value} error={e}")
                self.notifier.error(f"signal {direction.value} (retrying in {delay:.0f}s)", e)
                self.scheduler.call_later(
                    delay,
                    "signal-retry",
                    lambda: self.guard.run("signal-retry", lambda: self._handle_signal(direction, price, amount, attempt=2)),
                )
                return SignalOutcome.RETRY_SCHEDULED
            logger.error(f"Signal failed after retry | direction={direction.value} error={e}")
            self.notifier.error(f"signal {direction.value} (gave up)", e)
            return SignalOutcome.FAILED

    async def _open(self, direction: Direction, amount: Decimal, signal_price: Decimal) -> None:
        (await self.gateway.cancel_all_orders(self.symbol)).unwrap()
        balance = await self.get_account_balance()

        order = (
            await self.gateway.create_order(
                self.symbol,
                OrderType.MARKET,
                OrderSide.opening(direction),
                amount,
                client_order_id=new_client_order_id("OPEN"),
            )
        ).unwrap()
        entry = order.filled_price or signal_price
        position = self.store.open(direction, order.size or amount, entry, now=self.clock())
        logger.info(f"Position opened | {position.to_dict()}")

        self._start_position_timer()
        report = await self.safety.install(reason="open")

        planned = base_levels(direction, entry, tier_for(self.config.risk, RiskPhase.INITIAL), self.config.risk.min_level_distance_pct)
        planned = clamp_levels(direction, planned, entry, self.config.risk.min_stop_distance_pct)
        self.notifier.position_opened(
            direction,
            position.total_size,
            entry,
            report.stop_price or planned.stop,
            report.target_price or planned.target,
            balance,
        )

    async def _close(self, reason: str) -> Optional[TradeResult]:
        await self.safety.cancel_all(f"close: {reason}")
        try:
            remote = (await self.gateway.fetch_position(self.symbol)).unwrap()
            if remote is None:
                logger.info(f"Close requested but exchange is flat | reason={reason}")
                if self.store.clear() is not None:
                    self._stop_position_timer()
                return None

            balance_before = await self._refresh_balance()
            order = (
                await self.gateway.create_order(
                    self.symbol,
                    OrderType.MARKET,
                    OrderSide.closing(remote.direction),
                    remote.size,
                    reduce_only=True,
                    client_order_id=new_client_order_id("CLOSE"),
                )
            ).unwrap()
        except ExchangeError:
            # protection was cancelled above and the position is still open
            logger.error(f"Close order failed, restoring safety orders | reason={reason}")
            await self.safety.install(reason="close failed")
            raise

        await self._await_flat()

        exit_price = order.filled_price
        if exit_price is None:
            exit_price = (await self.gateway.fetch_ticker(self.symbol)).unwrap().last
        result = realized_pnl(remote.direction, remote.entry_price, exit_price, remote.size, self.config.risk.commission_pct)
        balance_after = await self._refresh_balance()
        if balance_before is not None and balance_after is not None:
            result.balance_change = balance_after.total - balance_before.total

        self.store.clear()
        self._stop_position_timer()
        logger.info(
            f"Position closed | reason={reason} direction={remote.direction.value} entry={remote.entry_price} "
            f"exit={exit_price} pnl={result.realized_pnl:.4f}"
        )
        self.notifier.position_closed(result, balance_after.total if balance_after else None, reason)
        return result

    async def _await_flat(self) -> None:
        sched = self.config.schedule
        remote = None
        for attempt in range(1, sched.close_poll_attempts + 1):
            remote = (await self.gateway.fetch_position(self.symbol)).unwrap()
            if remote is None:
                return
            logger.info(f"Waiting for close to settle | attempt={attempt}/{sched.close_poll_attempts} residual={remote.size}")
            if sched.close_poll_delay > 0:
                await asyncio.sleep(sched.close_poll_delay)

        if self.store.is_valid():
            self.store.sync_from_exchange(remote.size, remote.entry_price)
        await self.safety.install(reason="close incomplete")
        raise PositionCloseError(f"Exchange still reports {remote.size} after close on {self.symbol}")

    async def _cycle(self) -> None:
        try:
            await self.reconciler.reconcile()
            if not self.store.is_valid():
                return
            await self.safety.ensure_installed()
            ticker = await self.gateway.fetch_ticker(self.symbol)
            if not ticker.ok or not self.store.is_valid():
                return
            decision = await self.phases.check(ticker.value.last)
            position = self.store.snapshot()
            if position is not None:
                logger.info(
                    f"Position check | price={ticker.value.last} profit={decision.profit_pct:.2f}% "
                    f"phase={position.risk_phase.name} stop={position.stop_price} target={position.target_price}"
                )
        except ExchangeError as e:
            logger.error(f"Position check failed | error={e}")
            self.notifier.error("position check", e)

    def _start_position_timer(self) -> None:
        self.position_timer.start()

    def _stop_position_timer(self) -> None:
        self.position_timer.stop()
