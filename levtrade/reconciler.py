"""Exchange Reconciler: makes local position state agree with the exchange.

The exchange is authoritative. Reconciliation never raises; a failed
exchange read is logged, escalated and retried once after a delay.
"""
import time
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from loguru import logger

from .gateway import ExchangePosition
from .pnl import realized_pnl
from .position import PositionStore, RiskPhase
from .retry import ResilientGateway

if TYPE_CHECKING:
    from .notifier import NotificationDispatcher
    from .safety_orders import SafetyOrderManager
    from .scheduler import CriticalSection, Scheduler


class ReconcileOutcome(str, Enum):
    IN_SYNC = "in_sync"
    UPDATED = "updated"
    ADOPTED = "adopted"
    REPLACED = "replaced"
    CLOSED_EXTERNALLY = "closed_externally"
    FAILED = "failed"


class ExchangeReconciler:
    """Compare the store with the exchange-reported position and repair the store.

    ``on_opened`` / ``on_closed`` let the engine start and stop its
    position-check timer when a position appears or disappears here.
    """

    def __init__(
        self,
        gateway: ResilientGateway,
        store: PositionStore,
        safety: "SafetyOrderManager",
        notifier: "NotificationDispatcher",
        scheduler: "Scheduler",
        guard: "CriticalSection",
        *,
        symbol: str,
        commission_pct: Decimal,
        retry_delay: float = 5.0,
        on_opened: Optional[Callable[[], None]] = None,
        on_closed: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.store = store
        self.safety = safety
        self.notifier = notifier
        self.scheduler = scheduler
        self.guard = guard
        self.symbol = symbol
        self.commission_pct = commission_pct
        self.retry_delay = retry_delay
        self.on_opened = on_opened
        self.on_closed = on_closed
        self.clock = clock

    async def reconcile(self, *, schedule_retry: bool = True) -> ReconcileOutcome:
        """One reconciliation pass. Caller holds the critical section."""
        result = await self.gateway.fetch_position(self.symbol)
        if not result.ok:
            logger.error(f"Reconcile failed | symbol={self.symbol} error={result.error}")
            if schedule_retry:
                self.scheduler.call_later(
                    self.retry_delay,
                    "reconcile-retry",
                    lambda: self.guard.run("reconcile-retry", lambda: self.reconcile(schedule_retry=False)),
                )
            return ReconcileOutcome.FAILED

        remote = result.value
        if self.store.position is not None and not self.store.is_valid():
            logger.warning(f"Discarding incomplete local position record | record={self.store.position}")
            self.store.clear()
        local = self.store.snapshot()

        if remote is None:
            if local is None:
                return ReconcileOutcome.IN_SYNC
            return await self._closed_externally()

        if local is None:
            await self._adopt(remote)
            return ReconcileOutcome.ADOPTED

        if local.direction is not remote.direction:
            logger.warning(
                f"Exchange position direction differs from local record, re-adopting | "
                f"local={local.direction.value} exchange={remote.direction.value}"
            )
            await self.safety.cancel_all("direction mismatch")
            self.store.clear()
            await self._adopt(remote)
            return ReconcileOutcome.REPLACED

        size_changed = local.total_size != remote.size
        if not self.store.sync_from_exchange(remote.size, remote.entry_price):
            return ReconcileOutcome.IN_SYNC

        logger.info(
            f"Position synced from exchange | size={local.total_size} -> {remote.size} "
            f"entry={local.entry_price} -> {remote.entry_price} phase={local.risk_phase.name}"
        )
        if size_changed:
            await self.safety.install(reason="size changed on exchange")
        elif local.risk_phase is RiskPhase.BREAK_EVEN:
            # the break-even stop is the entry price itself
            await self.safety.install(reason="entry changed on exchange")
        return ReconcileOutcome.UPDATED

    async def _adopt(self, remote: ExchangePosition) -> None:
        position = self.store.adopt(remote.direction, remote.size, remote.entry_price, now=self.clock())
        logger.info(f"Adopted exchange position | {position.to_dict()}")
        self.notifier.info(
            f"Adopted existing {remote.direction.value.upper()} position on {self.symbol}: "
            f"size {remote.size} entry {remote.entry_price}"
        )
        if self.on_opened is not None:
            self.on_opened()
        await self.safety.install(reason="adopted")

    async def _closed_externally(self) -> ReconcileOutcome:
        previous = self.store.clear()
        logger.info(f"Position closed externally | {previous.to_dict()}")
        if self.on_closed is not None:
            self.on_closed()
        await self.safety.cancel_all("position closed externally")

        estimate = None
        ticker = await self.gateway.fetch_ticker(self.symbol)
        if ticker.ok:
            estimate = realized_pnl(previous.direction, previous.entry_price, ticker.value.last, previous.total_size, self.commission_pct)
        self.notifier.closed_externally(previous.direction, previous.total_size, previous.entry_price, estimate)
        return ReconcileOutcome.CLOSED_EXTERNALLY
