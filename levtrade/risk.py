"""
Risk Phase Machine and protective-level arithmetic.

Pure functions compute stop/target levels for each phase; ``RiskPhaseMachine``
evaluates the open position against the live price on every position check
and escalates Initial -> BreakEven -> TrailingAggressive, asking the safety
order manager to reinstall protection whenever the desired levels change.

All prices are Decimal; percent settings are in percent.
"""

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from loguru import logger

from .config import RiskConfig, RiskTier
from .pnl import HUNDRED, unrealized_profit_pct
from .position import Direction, Position, PositionStore, RiskPhase

if TYPE_CHECKING:
    from .notifier import NotificationDispatcher
    from .safety_orders import SafetyOrderManager


@dataclass(frozen=True)
class ProtectionLevels:
    stop: Decimal
    target: Decimal


def tier_for(risk: RiskConfig, phase: RiskPhase) -> RiskTier:
    return risk.tiers[phase.tier_name]


def base_levels(direction: Direction, entry_price: Decimal, tier: RiskTier, min_distance_pct: Decimal) -> ProtectionLevels:
    """Stop and target offset from the entry by the tier distances.

    Both distances are floored at ``min_distance_pct``.

    Example:
        >>> from levtrade.config import RiskTier
        >>> tier = RiskTier(Decimal("0.35"), Decimal("1.05"), Decimal("0.64"), Decimal("0.2"))
        >>> lv = base_levels(Direction.LONG, Decimal("100"), tier, Decimal("0.1"))
        >>> (lv.stop, lv.target)
        (Decimal('99.6500'), Decimal('101.0500'))
    """
    sl = max(tier.stop_loss_pct, min_distance_pct)
    tp = max(tier.take_profit_pct, min_distance_pct)
    sign = direction.sign
    return ProtectionLevels(
        stop=entry_price * (1 - sign * sl / HUNDRED),
        target=entry_price * (1 + sign * tp / HUNDRED),
    )


def break_even_levels(direction: Direction, entry_price: Decimal, tier: RiskTier, min_distance_pct: Decimal) -> ProtectionLevels:
    """Stop moved to the entry price; target from the break-even tier."""
    target = base_levels(direction, entry_price, tier, min_distance_pct).target
    return ProtectionLevels(stop=entry_price, target=target)


def trailing_distance_pct(tier: RiskTier, profit_pct: Decimal, floor_pct: Decimal, damping: Decimal) -> Decimal:
    """Trailing distance in percent; shrinks as profit grows, never below the floor.

    Example:
        >>> from levtrade.config import RiskTier
        >>> tier = RiskTier(Decimal("0.25"), Decimal("0.84"), Decimal("0.4"), Decimal("0.12"))
        >>> trailing_distance_pct(tier, Decimal("1"), Decimal("0.08"), Decimal("0.03"))
        Decimal('0.09')
    """
    return max(floor_pct, tier.trailing_stop_pct - profit_pct * damping)


def trailing_levels(
    direction: Direction,
    entry_price: Decimal,
    price: Decimal,
    profit_pct: Decimal,
    risk: RiskConfig,
) -> ProtectionLevels:
    """Stop offset from the live price; target pulled toward the entry as profit grows."""
    tier = tier_for(risk, RiskPhase.TRAILING_AGGRESSIVE)
    sign = direction.sign
    distance = trailing_distance_pct(tier, profit_pct, risk.trailing_floor_pct, risk.trailing_damping)
    reduction = min(risk.max_target_reduction, max(profit_pct, Decimal("0")) * risk.target_damping)
    tp = max(tier.take_profit_pct * (1 - reduction), risk.min_level_distance_pct)
    return ProtectionLevels(
        stop=price * (1 - sign * distance / HUNDRED),
        target=entry_price * (1 + sign * tp / HUNDRED),
    )


def clamp_levels(direction: Direction, levels: ProtectionLevels, price: Decimal, min_stop_distance_pct: Decimal) -> ProtectionLevels:
    """Keep both legs at least ``min_stop_distance_pct`` away from the live price.

    A long stop never sits above ``price * (1 - d)`` and a long target never
    below ``price * (1 + d)``; shorts are mirrored. Already-distant levels are
    returned unchanged.

    Example:
        >>> lv = ProtectionLevels(Decimal("99.65"), Decimal("101.05"))
        >>> clamp_levels(Direction.LONG, lv, Decimal("99.6"), Decimal("0.2")).stop
        Decimal('99.4008')
    """
    d = min_stop_distance_pct / HUNDRED
    below = price * (1 - d)
    above = price * (1 + d)
    if direction is Direction.LONG:
        return ProtectionLevels(stop=min(levels.stop, below), target=max(levels.target, above))
    return ProtectionLevels(stop=max(levels.stop, above), target=min(levels.target, below))


def desired_levels(position: Position, risk: RiskConfig) -> ProtectionLevels:
    """Unclamped levels for the position's current phase."""
    phase = position.risk_phase
    tier = tier_for(risk, phase)
    if phase is RiskPhase.BREAK_EVEN:
        return break_even_levels(position.direction, position.entry_price, tier, risk.min_level_distance_pct)
    if phase is RiskPhase.TRAILING_AGGRESSIVE and position.trailing_stop_price is not None:
        return ProtectionLevels(position.trailing_stop_price, position.trailing_target_price)
    return base_levels(position.direction, position.entry_price, tier, risk.min_level_distance_pct)


def stop_improves(direction: Direction, new_stop: Decimal, old_stop: Optional[Decimal], min_ratchet_pct: Decimal = Decimal("0")) -> bool:
    """True when ``new_stop`` locks in more than ``old_stop`` (ratchet-only)."""
    if old_stop is None:
        return True
    step = old_stop * min_ratchet_pct / HUNDRED
    if direction is Direction.LONG:
        return new_stop > old_stop + step
    return new_stop < old_stop - step


class PhaseAction(Enum):
    NONE = "none"
    BREAK_EVEN = "break_even"
    START_TRAILING = "start_trailing"
    UPDATE_TRAILING = "update_trailing"


@dataclass(frozen=True)
class PhaseDecision:
    action: PhaseAction
    profit_pct: Decimal
    levels: Optional[ProtectionLevels] = None
    reason: str = ""


def evaluate_phase(
    position: Position,
    price: Decimal,
    risk: RiskConfig,
    now: float,
    order_update_interval: float,
) -> PhaseDecision:
    """Decide the single transition (if any) for this evaluation.

    Break-even is checked first; trailing activation uses the active tier's
    threshold and the trailing throttle. At most one transition is returned.
    """
    profit = unrealized_profit_pct(position.direction, position.entry_price, price, risk.commission_pct)
    phase = position.risk_phase

    if phase is RiskPhase.INITIAL and profit >= risk.break_even_trigger_pct:
        return PhaseDecision(PhaseAction.BREAK_EVEN, profit, reason="break-even trigger reached")

    if phase is RiskPhase.TRAILING_AGGRESSIVE or profit >= tier_for(risk, phase).trailing_activation_pct:
        elapsed = now - position.last_trailing_update_at
        if elapsed < order_update_interval:
            return PhaseDecision(PhaseAction.NONE, profit, reason=f"trailing throttled ({elapsed:.0f}s < {order_update_interval:.0f}s)")
        levels = trailing_levels(position.direction, position.entry_price, price, profit, risk)
        if phase is RiskPhase.TRAILING_AGGRESSIVE:
            return PhaseDecision(PhaseAction.UPDATE_TRAILING, profit, levels)
        return PhaseDecision(PhaseAction.START_TRAILING, profit, levels, reason="trailing activation reached")

    return PhaseDecision(PhaseAction.NONE, profit)


class RiskPhaseMachine:
    """Applies ``evaluate_phase`` decisions to the store and reinstalls protection.

    Runs inside the per-symbol critical section; it never locks by itself.
    """

    def __init__(
        self,
        store: PositionStore,
        safety: "SafetyOrderManager",
        notifier: "NotificationDispatcher",
        risk: RiskConfig,
        order_update_interval: float,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.safety = safety
        self.notifier = notifier
        self.risk = risk
        self.order_update_interval = order_update_interval
        self.clock = clock

    async def check(self, price: Decimal) -> PhaseDecision:
        position = self.store.snapshot()
        if position is None:
            return PhaseDecision(PhaseAction.NONE, Decimal("0"), reason="no position")

        now = self.clock()
        decision = evaluate_phase(position, price, self.risk, now, self.order_update_interval)

        if decision.action is PhaseAction.BREAK_EVEN:
            self.store.advance_phase(RiskPhase.BREAK_EVEN)
            self._announce(position.risk_phase, RiskPhase.BREAK_EVEN, decision.profit_pct)
            await self.safety.install(reason="break-even")

        elif decision.action is PhaseAction.START_TRAILING:
            levels = clamp_levels(position.direction, decision.levels, price, self.risk.min_stop_distance_pct)
            self.store.advance_phase(RiskPhase.TRAILING_AGGRESSIVE)
            self.store.record_trailing(levels.stop, levels.target, now)
            self._announce(position.risk_phase, RiskPhase.TRAILING_AGGRESSIVE, decision.profit_pct)
            await self.safety.install(reason="trailing activated")

        elif decision.action is PhaseAction.UPDATE_TRAILING:
            levels = clamp_levels(position.direction, decision.levels, price, self.risk.min_stop_distance_pct)
            if stop_improves(position.direction, levels.stop, position.stop_price, self.risk.min_ratchet_pct):
                logger.info(
                    f"Trailing stop ratchet | stop={position.stop_price} -> {levels.stop:.6f} "
                    f"target={levels.target:.6f} profit={decision.profit_pct:.2f}%"
                )
                self.store.record_trailing(levels.stop, levels.target, now)
                await self.safety.install(reason="trailing update")
            else:
                logger.debug(f"Trailing stop unchanged | stop={position.stop_price} candidate={levels.stop:.6f}")

        elif decision.reason:
            logger.debug(f"Phase check | {decision.reason} profit={decision.profit_pct:.2f}%")

        return decision

    def _announce(self, old: RiskPhase, new: RiskPhase, profit_pct: Decimal) -> None:
        logger.info(f"Risk phase escalated | {old.name} -> {new.name} profit={profit_pct:.2f}%")
        self.notifier.phase_changed(old, new, profit_pct)
