"""Operator notifications: Telegram (aiohttp) and log backends behind a fire-and-forget dispatcher.

Delivery never blocks or fails a trading operation: each message is sent on
its own task and delivery errors are logged and dropped.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

import aiohttp
from loguru import logger

from .pnl import TradeResult
from .position import Direction, RiskPhase

TELEGRAM_API_URL = "https://api.telegram.org"


class NotificationKind(str, Enum):
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    SAFETY_ORDERS_UPDATED = "safety_orders_updated"
    PHASE_CHANGED = "phase_changed"
    AVERAGED_IN = "averaged_in"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    text: str
    context: Dict[str, Any] = field(default_factory=dict)


class NotificationError(Exception):
    pass


class Notifier(ABC):
    """A delivery channel."""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Deliver; returns False if the channel is disabled."""
        pass

    async def close(self) -> None:
        pass


class LogNotifier(Notifier):
    async def send(self, notification: Notification) -> bool:
        level = "ERROR" if notification.kind is NotificationKind.ERROR else "INFO"
        logger.log(level, f"[notify:{notification.kind.value}] {notification.text}")
        return True


class TelegramNotifier(Notifier):
    """Sends Markdown messages through the Telegram Bot API.

    Disabled (``send`` returns False) when the token or chat id is missing.
    """

    def __init__(self, token: Optional[str], chat_id: Optional[str], *, timeout: float = 10.0, api_url: str = TELEGRAM_API_URL):
        self.token = token
        self.chat_id = chat_id
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")
        self.session: Optional[aiohttp.ClientSession] = None

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    async def send(self, notification: Notification) -> bool:
        if not self.enabled:
            return False
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

        payload = {"chat_id": self.chat_id, "text": notification.text, "parse_mode": "Markdown"}
        async with self.session.post(f"{self.api_url}/bot{self.token}/sendMessage", json=payload) as resp:
            if not (200 <= resp.status < 300):
                text = await resp.text()
                raise NotificationError(f"Telegram {resp.status}: {text}")
        return True

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None


def _fmt(value: Optional[Decimal], places: int = 4) -> str:
    if value is None:
        return "n/a"
    return f"{value:.{places}f}"


class NotificationDispatcher:
    """Formats engine events and hands them to every configured notifier."""

    def __init__(self, notifiers: Sequence[Notifier], symbol: str = ""):
        self.notifiers: List[Notifier] = list(notifiers)
        self.symbol = symbol
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, notification: Notification) -> None:
        for notifier in self.notifiers:
            task = asyncio.get_running_loop().create_task(self._deliver(notifier, notification))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, notifier: Notifier, notification: Notification) -> None:
        try:
            await notifier.send(notification)
        except Exception as e:
            logger.warning(f"Notification delivery failed | notifier={type(notifier).__name__} kind={notification.kind.value} error={e}")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (tests and shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for notifier in self.notifiers:
            await notifier.close()

    # --- message builders ---
    def position_opened(self, direction: Direction, size: Decimal, entry_price: Decimal, stop: Optional[Decimal], target: Optional[Decimal], balance: Optional[Decimal]) -> None:
        text = (
            f"*Position opened* {self.symbol}\n"
            f"Direction: {direction.value.upper()}\n"
            f"Size: {size}\n"
            f"Entry: {_fmt(entry_price)}\n"
            f"Take profit: {_fmt(target)}\n"
            f"Stop loss: {_fmt(stop)}\n"
            f"Balance: {_fmt(balance, 2)}"
        )
        self.emit(Notification(NotificationKind.POSITION_OPENED, text, {"direction": direction.value, "size": str(size), "entry_price": str(entry_price)}))

    def position_closed(self, result: TradeResult, balance: Optional[Decimal], reason: str) -> None:
        text = (
            f"*Position closed* {self.symbol} ({reason})\n"
            f"Direction: {result.direction.value.upper()}\n"
            f"Entry: {_fmt(result.entry_price)} Exit: {_fmt(result.exit_price)}\n"
            f"P&L: {_fmt(result.realized_pnl, 2)} ({_fmt(result.pnl_percent, 2)}%)\n"
            f"Balance change: {_fmt(result.balance_change, 2)}\n"
            f"Balance: {_fmt(balance, 2)}"
        )
        self.emit(Notification(NotificationKind.POSITION_CLOSED, text, {"reason": reason, "realized_pnl": str(result.realized_pnl)}))

    def closed_externally(self, direction: Direction, size: Decimal, entry_price: Decimal, result: Optional[TradeResult]) -> None:
        text = (
            f"*Position closed externally* {self.symbol}\n"
            f"Direction: {direction.value.upper()} Size: {size} Entry: {_fmt(entry_price)}\n"
            "Stop, target, liquidation or manual close."
        )
        if result is not None:
            text += f"\nEstimated P&L: {_fmt(result.realized_pnl, 2)} ({_fmt(result.pnl_percent, 2)}%)"
        self.emit(Notification(NotificationKind.POSITION_CLOSED, text, {"reason": "external"}))

    def safety_orders_updated(self, size: Decimal, stop: Optional[Decimal], target: Optional[Decimal], profit_pct: Decimal, phase: RiskPhase) -> None:
        text = (
            f"*Safety orders updated* {self.symbol}\n"
            f"Phase: {phase.name}\n"
            f"Size: {size}\n"
            f"Stop loss: {_fmt(stop)}\n"
            f"Take profit: {_fmt(target)}\n"
            f"Profit: {_fmt(profit_pct, 2)}%"
        )
        self.emit(Notification(NotificationKind.SAFETY_ORDERS_UPDATED, text, {"phase": phase.name}))

    def phase_changed(self, old: RiskPhase, new: RiskPhase, profit_pct: Decimal) -> None:
        text = f"*Risk phase* {self.symbol}: {old.name} -> {new.name} at {_fmt(profit_pct, 2)}% profit"
        self.emit(Notification(NotificationKind.PHASE_CHANGED, text, {"from": old.name, "to": new.name}))

    def averaged_in(self, added: Decimal, fill_price: Decimal, total_size: Decimal, entry_price: Decimal, count: int) -> None:
        text = (
            f"*Averaged in* {self.symbol} (#{count})\n"
            f"Added: {added} @ {_fmt(fill_price)}\n"
            f"Total size: {total_size}\n"
            f"New entry: {_fmt(entry_price)}"
        )
        self.emit(Notification(NotificationKind.AVERAGED_IN, text, {"count": count}))

    def error(self, context: str, err: Optional[BaseException]) -> None:
        text = f"*Error* {self.symbol} in {context}: {err}"
        self.emit(Notification(NotificationKind.ERROR, text, {"context": context, "error": repr(err)}))

    def info(self, text: str) -> None:
        self.emit(Notification(NotificationKind.INFO, text))
