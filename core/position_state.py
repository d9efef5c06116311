"""
lp-autopilot Core: Position State Machine

Explicit liquidity position lifecycle with forward-only transitions.

States: PENDING_EXECUTION → ACTIVE → (OUT_OF_RANGE →) LIQUIDATING → LIQUIDATED
        PENDING_EXECUTION → FAILED

Provides:
- Transition validation (normal and emergency edges)
- Terminal/open status checks
"""

from enum import Enum
from typing import Dict, FrozenSet, Set
import logging

from core.exceptions import IllegalTransitionError

logger = logging.getLogger(__name__)


class PositionStatus(Enum):
    """Position lifecycle states"""
    PENDING_EXECUTION = "PENDING_EXECUTION"  # Created, investment not yet dispatched/confirmed
    ACTIVE = "ACTIVE"                        # Liquidity live on chain
    OUT_OF_RANGE = "OUT_OF_RANGE"            # Price left the range, liquidation lock held
    LIQUIDATING = "LIQUIDATING"              # Liquidation sent, awaiting settlement
    LIQUIDATED = "LIQUIDATED"                # Funds back in custody
    FAILED = "FAILED"                        # Dispatch failed

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


TERMINAL_STATUSES: FrozenSet[PositionStatus] = frozenset({
    PositionStatus.LIQUIDATED,
    PositionStatus.FAILED,
})

OPEN_STATUSES: FrozenSet[PositionStatus] = frozenset({
    PositionStatus.PENDING_EXECUTION,
    PositionStatus.ACTIVE,
    PositionStatus.OUT_OF_RANGE,
    PositionStatus.LIQUIDATING,
})

# Normal lifecycle edges
VALID_TRANSITIONS: Dict[PositionStatus, Set[PositionStatus]] = {
    PositionStatus.PENDING_EXECUTION: {PositionStatus.ACTIVE, PositionStatus.FAILED},
    PositionStatus.ACTIVE: {PositionStatus.OUT_OF_RANGE, PositionStatus.LIQUIDATING},
    PositionStatus.OUT_OF_RANGE: {PositionStatus.LIQUIDATING},
    PositionStatus.LIQUIDATING: {PositionStatus.LIQUIDATED},
    # Terminal states have no outbound transitions
    PositionStatus.LIQUIDATED: set(),
    PositionStatus.FAILED: set(),
}


def coerce_status(value) -> PositionStatus:
    """Accept a PositionStatus or its string value."""
    if isinstance(value, PositionStatus):
        return value
    return PositionStatus(str(value).upper())


def is_terminal(status) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def can_transition(from_status, to_status, *, emergency: bool = False) -> bool:
    """
    Check whether a status change is an edge of the state machine.

    Args:
        from_status: Current status
        to_status: Target status
        emergency: Allow the admin edge from any non-terminal state to LIQUIDATED

    Returns:
        True if the transition is permitted
    """
    current = coerce_status(from_status)
    target = coerce_status(to_status)

    if emergency:
        return current not in TERMINAL_STATUSES and target == PositionStatus.LIQUIDATED

    return target in VALID_TRANSITIONS.get(current, set())


def ensure_transition(from_status, to_status, *, emergency: bool = False) -> None:
    """Raise IllegalTransitionError unless the edge exists."""
    if not can_transition(from_status, to_status, emergency=emergency):
        current = coerce_status(from_status)
        target = coerce_status(to_status)
        logger.error("Rejected position transition %s -> %s", current.value, target.value)
        raise IllegalTransitionError(current.value, target.value)
