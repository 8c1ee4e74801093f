"""
Trade Pipeline - Trade State Machine.

============================================================
PURPOSE
============================================================
Lifecycle graph for trade requests and the guard every
status write goes through.

STATE MACHINE:

    queued -> quoted -> signed -> submitted -> filled
    queued    -> cancelled   (no tradeable venue / setup failure)
    quoted    -> cancelled   (quote unusable, risk breach)
    signed    -> cancelled   (insufficient funds / fatal signing error)
    submitted -> cancelled   (submission rejected)
    submitted -> expired     (venue invalidated the order)

    Transient failures are not transitions: only next_run_at
    moves.

INVARIANTS:
- Terminal states are final
- No edge skips a phase
- Every transition is recorded in trade_events

============================================================
"""

from datetime import datetime
from typing import Dict, Set, List, Any, Tuple
from dataclasses import dataclass, field

from .types import TradeStatus, InvalidTransitionError, utcnow


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[TradeStatus, Set[TradeStatus]] = {
    TradeStatus.QUEUED: {
        TradeStatus.QUOTED,
        TradeStatus.CANCELLED,
    },
    TradeStatus.QUOTED: {
        TradeStatus.SIGNED,
        TradeStatus.CANCELLED,
    },
    TradeStatus.SIGNED: {
        TradeStatus.SUBMITTED,
        TradeStatus.CANCELLED,
    },
    TradeStatus.SUBMITTED: {
        TradeStatus.FILLED,
        TradeStatus.CANCELLED,
        TradeStatus.EXPIRED,
    },
    # Terminal states - no transitions out
    TradeStatus.FILLED: set(),
    TradeStatus.EXPIRED: set(),
    TradeStatus.CANCELLED: set(),
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """A status change (or reschedule) of one trade."""

    trade_id: str
    from_status: TradeStatus
    to_status: TradeStatus
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_reschedule(self) -> bool:
        return self.from_status == self.to_status


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for status transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_status: TradeStatus,
        to_status: TradeStatus,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if from_status == to_status:
            return False, f"Already {from_status.value}"

        if to_status in VALID_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal:
            return False, f"Cannot transition from terminal state {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @classmethod
    def validate(cls, from_status: TradeStatus, to_status: TradeStatus) -> None:
        """Raise InvalidTransitionError unless the edge exists."""
        allowed, reason = cls.can_transition(from_status, to_status)
        if not allowed:
            raise InvalidTransitionError(from_status, to_status, reason)

    @classmethod
    def validate_path(cls, path: List[TradeStatus]) -> None:
        """Validate every consecutive edge of a multi-step walk."""
        if len(path) < 2:
            raise ValueError("A transition path needs at least two statuses")
        for from_status, to_status in zip(path, path[1:]):
            cls.validate(from_status, to_status)

