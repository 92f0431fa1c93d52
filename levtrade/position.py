"""
Position State Store: the single in-memory record of the open position.

The store owns at most one ``Position`` for the traded symbol. It is either
fully present (id, positive size, positive entry price) or fully absent;
``is_valid()`` is the accessor every other component reads through before
acting, and again after every exchange round-trip.

Risk phases only move forward (Initial -> BreakEven -> TrailingAggressive)
for the lifetime of a position. The two resets are a full close (the record
is dropped) and an averaging-in fill, which changes the cost basis and so
returns the phase to Initial.

Examples:
    >>> from decimal import Decimal
    >>> store = PositionStore()
    >>> _ = store.open(Direction.LONG, Decimal("10"), Decimal("100"), now=0.0)
    >>> _ = store.add_fill(fill_price=Decimal("90"), fill_size=Decimal("5"))
    >>> store.position.total_size
    Decimal('15')
    >>> round(store.position.entry_price, 3)
    Decimal('96.667')
"""

import time
import uuid
from dataclasses import asdict, dataclass, replace
from decimal import Decimal, getcontext
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

getcontext().prec = 28


class Direction(str, Enum):
    """Position direction."""

    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_signal(cls, value: str) -> "Direction":
        """Accept ``buy``/``sell`` as well as ``long``/``short``."""
        v = str(value).strip().lower()
        if v in ("buy", "long"):
            return cls.LONG
        if v in ("sell", "short"):
            return cls.SHORT
        raise ValueError(f"Unknown direction: {value!r}")

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG

    @property
    def sign(self) -> Decimal:
        return Decimal(1) if self is Direction.LONG else Decimal(-1)


class RiskPhase(IntEnum):
    """Ordered risk phases; comparisons follow escalation order."""

    INITIAL = 0
    BREAK_EVEN = 1
    TRAILING_AGGRESSIVE = 2

    @property
    def tier_name(self) -> str:
        return self.name.lower()


class PhaseDowngradeError(RuntimeError):
    """Raised when a caller tries to move a position to an earlier phase."""


@dataclass
class Position:
    """An open position as the engine believes it to be.

    Attributes:
        id: Opaque identifier, assigned on open or on adoption
        direction: LONG or SHORT
        total_size: Sum of all fills contributing to the position
        entry_price: Weighted-average fill price
        risk_phase: Active risk phase
        last_trailing_update_at: Epoch seconds of the last trailing recompute
        dca_count: Averaging additions since open
        last_average_in_price: Reference price for the next allowed addition
        opened_at: Epoch seconds when the record was created
        stop_price: Stop level installed on the exchange (None if absent)
        target_price: Take-profit level installed on the exchange (None if absent)
        trailing_stop_price: Desired stop computed by the trailing phase
        trailing_target_price: Desired target computed by the trailing phase
    """

    id: str
    direction: Direction
    total_size: Decimal
    entry_price: Decimal
    risk_phase: RiskPhase = RiskPhase.INITIAL
    last_trailing_update_at: float = 0.0
    dca_count: int = 0
    last_average_in_price: Optional[Decimal] = None
    opened_at: float = 0.0
    stop_price: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None
    trailing_target_price: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for log lines and snapshots (Decimals as strings)."""
        out = asdict(self)
        for key, value in out.items():
            if isinstance(value, Decimal):
                out[key] = str(value)
        out["direction"] = self.direction.value
        out["risk_phase"] = self.risk_phase.name
        return out


def generate_position_id() -> str:
    return f"POS_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class PositionStore:
    """Single-writer owner of the current ``Position``.

    Callers hold the per-symbol critical section while mutating; the store
    itself does no locking.
    """

    def __init__(self) -> None:
        self._position: Optional[Position] = None

    @property
    def position(self) -> Optional[Position]:
        return self._position

    def is_valid(self) -> bool:
        """True when a complete position is held (id, size > 0, entry > 0)."""
        p = self._position
        if p is None:
            return False
        return bool(p.id) and p.total_size > 0 and p.entry_price > 0

    def snapshot(self) -> Optional[Position]:
        """Copy of the current position, or None when absent or inconsistent."""
        if not self.is_valid():
            return None
        return replace(self._position)

    def open(
        self,
        direction: Direction,
        size: Decimal,
        entry_price: Decimal,
        *,
        now: Optional[float] = None,
        position_id: Optional[str] = None,
    ) -> Position:
        """Create a fresh position from an opening fill."""
        if size <= 0 or entry_price <= 0:
            raise ValueError(f"Cannot open position with size={size} entry_price={entry_price}")
        self._position = Position(
            id=position_id or generate_position_id(),
            direction=direction,
            total_size=size,
            entry_price=entry_price,
            last_average_in_price=entry_price,
            opened_at=time.time() if now is None else now,
        )
        return self._position

    def adopt(self, direction: Direction, size: Decimal, entry_price: Decimal, *, now: Optional[float] = None) -> Position:
        """Take over a position discovered on the exchange with no local record."""
        return self.open(direction, size, entry_price, now=now)

    def sync_from_exchange(self, size: Decimal, entry_price: Decimal) -> bool:
        """Overwrite size and entry price from the exchange; risk flags are kept.

        Returns:
            True if either value changed
        """
        p = self._require()
        if size <= 0 or entry_price <= 0:
            raise ValueError(f"Exchange reported unusable position size={size} entry_price={entry_price}")
        changed = p.total_size != size or p.entry_price != entry_price
        p.total_size = size
        p.entry_price = entry_price
        return changed

    def add_fill(self, fill_price: Decimal, fill_size: Decimal) -> Position:
        """Fold an averaging fill into the weighted-average entry price."""
        p = self._require()
        if fill_size <= 0 or fill_price <= 0:
            raise ValueError(f"Invalid fill size={fill_size} price={fill_price}")
        new_size = p.total_size + fill_size
        p.entry_price = (p.entry_price * p.total_size + fill_price * fill_size) / new_size
        p.total_size = new_size
        return p

    def advance_phase(self, phase: RiskPhase) -> bool:
        """Move to ``phase``; returns False if already there.

        Raises:
            PhaseDowngradeError: If ``phase`` is earlier than the current one
        """
        p = self._require()
        if phase < p.risk_phase:
            raise PhaseDowngradeError(f"Cannot move from {p.risk_phase.name} to {phase.name}")
        if phase == p.risk_phase:
            return False
        p.risk_phase = phase
        return True

    def record_average_in(self, fill_price: Decimal) -> None:
        """Book an averaging addition: count it and reset the phase to Initial."""
        p = self._require()
        p.dca_count += 1
        p.last_average_in_price = fill_price
        p.risk_phase = RiskPhase.INITIAL
        p.trailing_stop_price = None
        p.trailing_target_price = None
        p.last_trailing_update_at = 0.0

    def record_trailing(self, stop: Decimal, target: Decimal, now: float) -> None:
        p = self._require()
        p.trailing_stop_price = stop
        p.trailing_target_price = target
        p.last_trailing_update_at = now

    def record_protection(self, stop: Optional[Decimal], target: Optional[Decimal]) -> None:
        p = self._require()
        p.stop_price = stop
        p.target_price = target

    def clear(self) -> Optional[Position]:
        """Drop the position; returns the record that was held."""
        previous, self._position = self._position, None
        return previous

    def _require(self) -> Position:
        if not self.is_valid():
            raise RuntimeError("No active position")
        return self._position
