"""
Safety Order Manager: keeps exactly one stop and one take-profit order on the
exchange for the open position.

Install is always cancel-then-recreate. Levels come from the position's risk
phase and are clamped against a freshly fetched price so neither leg can be
rejected for triggering immediately. The store is re-checked after every
exchange round-trip: if the position vanished in between, nothing is placed.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from loguru import logger

from .config import RiskConfig
from .gateway import OrderSide, OrderType, UnsafePriceError, new_client_order_id
from .pnl import unrealized_profit_pct
from .position import PositionStore
from .retry import ResilientGateway, RetryPolicy
from .risk import clamp_levels, desired_levels

if TYPE_CHECKING:
    from .notifier import NotificationDispatcher
    from .scheduler import CriticalSection, Scheduler


class InstallStatus(str, Enum):
    INSTALLED = "installed"
    PARTIAL = "partial"  # one leg soft-skipped for an unsafe trigger price
    NO_POSITION = "no_position"
    FAILED = "failed"


@dataclass
class InstallReport:
    status: InstallStatus
    stop_price: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    order_ids: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None


@dataclass
class _LegOutcome:
    placed: bool
    order_id: Optional[str] = None
    skipped: bool = False
    error: Optional[BaseException] = None


class SafetyOrderManager:
    """Installs and removes the protective stop/target pair.

    Args:
        gateway: Retrying gateway
        store: Position store (read before and after each exchange call)
        notifier: Dispatcher for safety-orders-updated and error messages
        scheduler: Runs the delayed reinstall rounds
        guard: Critical section the delayed rounds re-enter through
        symbol: Traded symbol
        risk: Risk settings (tiers, clamp distance, commission)
        order_policy: Retry policy for each individual protective order
        max_rounds: Whole-install attempts before giving up
        retry_delay: Seconds between install rounds
    """

    def __init__(
        self,
        gateway: ResilientGateway,
        store: PositionStore,
        notifier: "NotificationDispatcher",
        scheduler: "Scheduler",
        guard: "CriticalSection",
        *,
        symbol: str,
        risk: RiskConfig,
        order_policy: RetryPolicy,
        max_rounds: int = 3,
        retry_delay: float = 5.0,
    ):
        self.gateway = gateway
        self.store = store
        self.notifier = notifier
        self.scheduler = scheduler
        self.guard = guard
        self.symbol = symbol
        self.risk = risk
        self.order_policy = order_policy
        self.max_rounds = max_rounds
        self.retry_delay = retry_delay
        self._pending_retry: Optional[asyncio.Task] = None
        # the open position currently has no stop on the exchange
        self.protection_pending = False

    async def cancel_all(self, reason: str = "") -> bool:
        """Cancel every open order for the symbol; False if the exchange call failed."""
        result = await self.gateway.cancel_all_orders(self.symbol)
        if result.ok:
            logger.info(f"Cancelled all orders | symbol={self.symbol} reason={reason}")
            if self.store.is_valid():
                self.protection_pending = True
        else:
            logger.error(f"Cancel all orders failed | symbol={self.symbol} reason={reason} error={result.error}")
        return result.ok

    async def ensure_installed(self) -> Optional[InstallReport]:
        """Reinstall if the position was left without a stop; None when nothing to do.

        Skipped while a delayed install round is still queued.
        """
        if not self.protection_pending or not self.store.is_valid():
            return None
        if self._pending_retry is not None and not self._pending_retry.done():
            return None
        logger.warning(f"Position has no stop on the exchange, reinstalling | symbol={self.symbol}")
        return await self.install(reason="protection missing")

    async def install(self, reason: str = "", round_no: int = 1) -> InstallReport:
        """Replace protective orders with ones matching the current phase."""
        if not self.store.is_valid():
            logger.info(f"Safety orders skipped, no valid position | reason={reason}")
            self.protection_pending = False
            return InstallReport(InstallStatus.NO_POSITION)

        cancelled = await self.gateway.cancel_all_orders(self.symbol)
        if not cancelled.ok:
            return self._failed(round_no, reason, cancelled.error)

        ticker = await self.gateway.fetch_ticker(self.symbol)
        if not ticker.ok:
            return self._failed(round_no, reason, ticker.error)

        position = self.store.snapshot()
        if position is None:
            logger.warning(f"Position vanished before safety orders were placed | reason={reason}")
            return InstallReport(InstallStatus.NO_POSITION)

        price = ticker.value.last
        levels = clamp_levels(position.direction, desired_levels(position, self.risk), price, self.risk.min_stop_distance_pct)
        side = OrderSide.closing(position.direction)
        logger.info(
            f"Installing safety orders | reason={reason} round={round_no} phase={position.risk_phase.name} "
            f"price={price} stop={levels.stop:.6f} target={levels.target:.6f} size={position.total_size}"
        )

        report = InstallReport(InstallStatus.INSTALLED)
        legs = (
            ("SL", OrderType.STOP_MARKET, levels.stop),
            ("TP", OrderType.TAKE_PROFIT_MARKET, levels.target),
        )
        for tag, order_type, trigger in legs:
            if not self.store.is_valid():
                logger.warning(f"Position vanished while placing safety orders | leg={tag}")
                return InstallReport(InstallStatus.NO_POSITION, order_ids=report.order_ids)
            leg = await self._place_leg(tag, order_type, side, position.total_size, trigger)
            if leg.error is not None:
                report.error = leg.error
                return self._failed(round_no, reason, leg.error)
            if leg.skipped:
                report.skipped.append(tag)
                report.status = InstallStatus.PARTIAL
            else:
                report.order_ids.append(leg.order_id)
                if tag == "SL":
                    report.stop_price = trigger
                else:
                    report.target_price = trigger

        if not self.store.is_valid():
            return InstallReport(InstallStatus.NO_POSITION, order_ids=report.order_ids)

        self.store.record_protection(report.stop_price, report.target_price)
        self.protection_pending = report.stop_price is None
        self._cancel_pending_retry()
        profit = unrealized_profit_pct(position.direction, position.entry_price, price, self.risk.commission_pct)
        self.notifier.safety_orders_updated(position.total_size, report.stop_price, report.target_price, profit, position.risk_phase)
        return report

    async def _place_leg(self, tag: str, order_type: OrderType, side: OrderSide, size: Decimal, trigger: Decimal) -> _LegOutcome:
        client_id = new_client_order_id(tag)
        result = await self.gateway.create_order(
            self.symbol,
            order_type,
            side,
            size,
            stop_price=trigger,
            reduce_only=True,
            client_order_id=client_id,
            policy=self.order_policy,
            escalate=False,
        )
        if result.ok:
            logger.info(f"Safety order placed | leg={tag} trigger={trigger:.6f} id={result.value.order_id}")
            return _LegOutcome(placed=True, order_id=result.value.order_id)
        if isinstance(result.error, UnsafePriceError):
            logger.warning(f"Safety order skipped, trigger would fire immediately | leg={tag} trigger={trigger:.6f}")
            return _LegOutcome(placed=False, skipped=True)
        return _LegOutcome(placed=False, error=result.error)

    def _failed(self, round_no: int, reason: str, error: Optional[BaseException]) -> InstallReport:
        self.protection_pending = True
        if round_no < self.max_rounds:
            logger.warning(
                f"Safety order install failed, retrying in {self.retry_delay}s | round={round_no}/{self.max_rounds} error={error}"
            )
            self._cancel_pending_retry()
            self._pending_retry = self.scheduler.call_later(
                self.retry_delay,
                f"safety-retry-{round_no + 1}",
                lambda: self.guard.run("safety-retry", lambda: self.install(reason=reason or "retry", round_no=round_no + 1)),
            )
        else:
            logger.error(f"Safety order install gave up | rounds={self.max_rounds} error={error}")
            self.notifier.error("safety orders (position may be unprotected)", error)
        return InstallReport(InstallStatus.FAILED, error=error)

    def _cancel_pending_retry(self) -> None:
        task = self._pending_retry
        self._pending_retry = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
