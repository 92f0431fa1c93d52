"""DCA Controller: averaging into an open position on adverse moves."""
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from loguru import logger

from .config import DcaConfig
from .gateway import OrderSide, OrderType, new_client_order_id
from .pnl import HUNDRED
from .position import Direction, PositionStore
from .retry import ResilientGateway

if TYPE_CHECKING:
    from .notifier import NotificationDispatcher
    from .safety_orders import SafetyOrderManager


@dataclass(frozen=True)
class AverageInFill:
    size: Decimal
    price: Decimal
    total_size: Decimal
    entry_price: Decimal
    dca_count: int


class DcaController:
    """Decides whether a same-direction signal adds to the position, and executes it.

    An addition is allowed only when the price has moved at least
    ``step_pct`` against the position since the last entry or addition, and
    fewer than ``max_dca_count`` additions have been made. Each addition is
    ``multiplier ** dca_count`` times the signal amount.
    """

    def __init__(
        self,
        gateway: ResilientGateway,
        store: PositionStore,
        safety: "SafetyOrderManager",
        notifier: "NotificationDispatcher",
        config: DcaConfig,
        *,
        symbol: str,
    ):
        self.gateway = gateway
        self.store = store
        self.safety = safety
        self.notifier = notifier
        self.config = config
        self.symbol = symbol

    def should_average_in(self, direction: Direction, price: Decimal) -> bool:
        if not self.config.enabled:
            return False
        position = self.store.snapshot()
        if position is None or position.direction is not direction:
            return False
        if position.dca_count >= self.config.max_dca_count:
            logger.info(f"Average-in declined, limit reached | count={position.dca_count}/{self.config.max_dca_count}")
            return False

        reference = position.last_average_in_price or position.entry_price
        step = reference * self.config.step_pct / HUNDRED
        if direction is Direction.LONG:
            allowed = price <= reference - step
        else:
            allowed = price >= reference + step
        if not allowed:
            logger.info(f"Average-in declined, step not reached | price={price} reference={reference} step={self.config.step_pct}%")
        return allowed

    def next_size(self, base_amount: Decimal) -> Decimal:
        position = self.store.snapshot()
        count = position.dca_count if position is not None else 0
        return base_amount * (self.config.multiplier ** count)

    async def average_in(self, direction: Direction, price: Decimal, base_amount: Decimal) -> Optional[AverageInFill]:
        """Place the addition, fold the fill into the position and reinstall protection.

        Raises:
            ExchangeCallFailed: If the market order could not be placed
        """
        size = self.next_size(base_amount)
        result = await self.gateway.create_order(
            self.symbol,
            OrderType.MARKET,
            OrderSide.opening(direction),
            size,
            client_order_id=new_client_order_id("DCA"),
        )
        order = result.unwrap()

        if not self.store.is_valid():
            logger.warning("Position vanished while averaging in; next reconcile adopts the exchange state")
            return None

        fill_price = order.filled_price or price
        fill_size = order.size or size
        self.store.add_fill(fill_price, fill_size)
        self.store.record_average_in(fill_price)
        position = self.store.snapshot()
        logger.info(
            f"Averaged in | added={fill_size} @ {fill_price} total={position.total_size} "
            f"entry={position.entry_price:.6f} count={position.dca_count}"
        )
        self.notifier.averaged_in(fill_size, fill_price, position.total_size, position.entry_price, position.dca_count)

        await self.safety.install(reason="average-in")
        return AverageInFill(fill_size, fill_price, position.total_size, position.entry_price, position.dca_count)
