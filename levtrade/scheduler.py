"""Scheduling primitives: the per-symbol critical section, delayed retries and timers.

- ``CriticalSection`` serializes every mutation of one symbol's state.
  Periodic triggers may ask to be dropped when it is busy; signals and
  push events wait their turn.
- ``Scheduler`` runs delayed retries as tracked tasks so they can be
  cancelled on shutdown and drained in tests.
- ``PeriodicTimer`` is the position-check timer, started on open and
  stopped on close.
- ``EngineRunner`` drives the engine: startup reconcile, reconcile loop
  and exchange event stream.
"""
import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Set, TypeVar

from loguru import logger

if TYPE_CHECKING:
    from .engine import PositionEngine
    from .ws_client import ExchangeEventStream

T = TypeVar("T")


class CriticalSection:
    """asyncio.Lock with trigger labels and drop-if-busy support."""

    def __init__(self, name: str):
        self.name = name
        self._lock = asyncio.Lock()
        self.holder: Optional[str] = None
        self.dropped = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, label: str, fn: Callable[[], Awaitable[T]], *, drop_if_busy: bool = False) -> Optional[T]:
        """Run ``fn`` while holding the section.

        Returns None without running ``fn`` when ``drop_if_busy`` is set and
        another trigger holds the section.
        """
        if drop_if_busy and self._lock.locked():
            self.dropped += 1
            logger.info(f"Trigger dropped, critical section busy | section={self.name} trigger={label} holder={self.holder}")
            return None
        async with self._lock:
            self.holder = label
            try:
                return await fn()
            finally:
                self.holder = None


class Scheduler:
    """Tracks delayed one-shot tasks (retries)."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def call_later(self, delay: float, label: str, fn: Callable[[], Awaitable]) -> asyncio.Task:
        async def _run():
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await fn()
            except Exception:
                logger.exception(f"Scheduled task failed | task={label}")

        logger.debug(f"Scheduled | task={label} delay={delay}s")
        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, max_rounds: int = 20) -> None:
        """Wait until no scheduled task is pending (tasks may schedule more)."""
        for _ in range(max_rounds):
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


class PeriodicTimer:
    """Invokes an async callback every ``interval`` seconds until stopped."""

    def __init__(self, interval: float, callback: Callable[[], Awaitable], name: str = "timer"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info(f"Timer started | timer={self.name} interval={self.interval}s")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        # a callback may stop its own timer; that task exits after the callback returns
        if task is not asyncio.current_task():
            task.cancel()
        logger.info(f"Timer stopped | timer={self.name}")

    async def _run(self) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval)
            try:
                await self.callback()
            except Exception:
                logger.exception(f"Timer callback failed | timer={self.name}")


class EngineRunner:
    """Orchestrate the engine with periodic reconciliation and the exchange event stream."""

    def __init__(
        self,
        engine: "PositionEngine",
        reconcile_interval: float = 30.0,
        stream: Optional["ExchangeEventStream"] = None,
    ):
        self.engine = engine
        self.reconcile_interval = reconcile_interval
        self.stream = stream
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Startup reconcile, then run the reconcile loop and event listener until stopped."""
        await self.engine.start()
        loops = [self._reconcile_loop()]
        if self.stream is not None:
            loops.append(self._event_loop())
        await asyncio.gather(*loops)

    async def stop(self) -> None:
        """Signal the loops to stop and shut the engine down."""
        self._stop_event.set()
        if self.stream is not None:
            await self.stream.close()
        await self.engine.stop()

    async def _reconcile_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.reconcile_interval)
            except asyncio.TimeoutError:
                await self.engine.run_cycle()

    async def _event_loop(self) -> None:
        async for event in self.stream.events():
            if self._stop_event.is_set():
                break
            await self.engine.on_exchange_event(event)
