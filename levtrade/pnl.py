"""P&L helpers for leveraged positions (direction-aware, Decimal)."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .position import Direction

HUNDRED = Decimal("100")


@dataclass
class TradeResult:
    """Summary of a closed (or partially closed) position."""
    direction: Direction
    entry_price: Decimal
    exit_price: Decimal
    size: Decimal
    realized_pnl: Decimal  # quote currency, before fees
    pnl_percent: Decimal  # price move in percent, net of commission estimate
    balance_change: Optional[Decimal] = None  # exchange-reported, when known

    @property
    def is_win(self) -> bool:
        return self.realized_pnl > 0


def price_move_pct(direction: Direction, entry_price: Decimal, price: Decimal) -> Decimal:
    """Gross price move in percent, positive when in the position's favour."""
    if entry_price <= 0:
        return Decimal("0")
    return (price - entry_price) * direction.sign / entry_price * HUNDRED


def unrealized_profit_pct(
    direction: Direction,
    entry_price: Decimal,
    price: Decimal,
    commission_pct: Decimal = Decimal("0"),
) -> Decimal:
    """Unrealized profit in percent, less the round-trip commission estimate.

    May be negative; callers compare it against phase thresholds.

    Example:
        >>> unrealized_profit_pct(Direction.LONG, Decimal("100"), Decimal("101.05"))
        Decimal('1.0500')
    """
    return price_move_pct(direction, entry_price, price) - commission_pct


def realized_pnl(
    direction: Direction,
    entry_price: Decimal,
    exit_price: Decimal,
    size: Decimal,
    commission_pct: Decimal = Decimal("0"),
) -> TradeResult:
    """Compute realized P&L for closing ``size`` at ``exit_price``."""
    pnl = (exit_price - entry_price) * direction.sign * size
    return TradeResult(
        direction=direction,
        entry_price=entry_price,
        exit_price=exit_price,
        size=size,
        realized_pnl=pnl,
        pnl_percent=unrealized_profit_pct(direction, entry_price, exit_price, commission_pct),
    )
