"""
Risk Appetite Engine - Breach State Machine.

============================================================
PURPOSE
============================================================
Two orthogonal dimensions of a breach ledger entry:

1. Severity (AMBER | RED), driven by observations
2. Lifecycle status, driven by observations and people

OBSERVATION ACTIONS (open severity x observed status):

                 GREEN      AMBER        RED          UNKNOWN
  no open        NO_OP      OPEN_NEW     OPEN_NEW     NO_OP
  AMBER open     RESOLVE    REFRESH      ESCALATE     NO_OP
  RED open       RESOLVE    DEESCALATE   REFRESH      NO_OP

ESCALATE closes the AMBER entry and opens a RED entry linked
to it through prior_breach_id. DEESCALATE mutates the RED
entry in place: no new entry, no link. The asymmetry is kept
on purpose and pinned by tests.

LIFECYCLE:
- OPEN        -> IN_PROGRESS, RESOLVED, CLOSED, BOARD_ACCEPTED
- IN_PROGRESS -> OPEN, RESOLVED, CLOSED, BOARD_ACCEPTED
- RESOLVED, CLOSED, BOARD_ACCEPTED are terminal

BOARD_ACCEPTED is immutable to every ordinary writer.

============================================================
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from .types import (
    AppetiteStatus,
    BreachSeverity,
    BreachStatus,
    ConfigurationError,
    InvalidBreachTransitionError,
)


class BreachAction(str, Enum):
    """What the tracker does with one observation."""

    NO_OP = "NO_OP"
    """Nothing to write."""

    OPEN_NEW = "OPEN_NEW"
    """Insert a new OPEN entry and notify."""

    REFRESH = "REFRESH"
    """Same severity: update value and timestamp on the open entry."""

    ESCALATE = "ESCALATE"
    """AMBER -> RED: close AMBER, insert linked RED, notify."""

    DEESCALATE = "DEESCALATE"
    """RED -> AMBER: downgrade the open entry in place."""

    RESOLVE = "RESOLVE"
    """Back to GREEN: resolve every open entry."""


OPEN_LIKE_STATUSES: FrozenSet[BreachStatus] = frozenset({
    BreachStatus.OPEN,
    BreachStatus.IN_PROGRESS,
})

TERMINAL_STATUSES: FrozenSet[BreachStatus] = frozenset({
    BreachStatus.RESOLVED,
    BreachStatus.CLOSED,
    BreachStatus.BOARD_ACCEPTED,
})


# ============================================================
# OBSERVATION TRANSITIONS
# ============================================================

BREACH_ACTIONS: Dict[Tuple[Optional[BreachSeverity], AppetiteStatus], BreachAction] = {
    (None, AppetiteStatus.GREEN): BreachAction.NO_OP,
    (None, AppetiteStatus.AMBER): BreachAction.OPEN_NEW,
    (None, AppetiteStatus.RED): BreachAction.OPEN_NEW,
    (None, AppetiteStatus.UNKNOWN): BreachAction.NO_OP,

    (BreachSeverity.AMBER, AppetiteStatus.GREEN): BreachAction.RESOLVE,
    (BreachSeverity.AMBER, AppetiteStatus.AMBER): BreachAction.REFRESH,
    (BreachSeverity.AMBER, AppetiteStatus.RED): BreachAction.ESCALATE,
    (BreachSeverity.AMBER, AppetiteStatus.UNKNOWN): BreachAction.NO_OP,

    (BreachSeverity.RED, AppetiteStatus.GREEN): BreachAction.RESOLVE,
    (BreachSeverity.RED, AppetiteStatus.AMBER): BreachAction.DEESCALATE,
    (BreachSeverity.RED, AppetiteStatus.RED): BreachAction.REFRESH,
    (BreachSeverity.RED, AppetiteStatus.UNKNOWN): BreachAction.NO_OP,
}


def decide_breach_action(
    open_severity: Optional[BreachSeverity],
    observed: AppetiteStatus,
) -> BreachAction:
    """
    Decide what an observation does to a metric's ledger.

    Args:
        open_severity: Severity of the metric's open entry, or None
        observed: Status produced by the evaluator

    Returns:
        BreachAction (defined for every pair)
    """
    try:
        return BREACH_ACTIONS[(open_severity, AppetiteStatus(observed))]
    except (KeyError, ValueError):
        raise ConfigurationError(
            f"No breach action for severity={open_severity!r}, status={observed!r}"
        )


def severity_for(status: AppetiteStatus) -> BreachSeverity:
    """Ledger severity for a breaching status."""
    if status == AppetiteStatus.RED:
        return BreachSeverity.RED
    if status == AppetiteStatus.AMBER:
        return BreachSeverity.AMBER
    raise ConfigurationError(f"Status {status.value} is not a breach severity")


# ============================================================
# LIFECYCLE TRANSITIONS
# ============================================================

ALLOWED_STATUS_TRANSITIONS: Dict[BreachStatus, FrozenSet[BreachStatus]] = {
    BreachStatus.OPEN: frozenset({
        BreachStatus.IN_PROGRESS,
        BreachStatus.RESOLVED,
        BreachStatus.CLOSED,
        BreachStatus.BOARD_ACCEPTED,
    }),
    BreachStatus.IN_PROGRESS: frozenset({
        BreachStatus.OPEN,
        BreachStatus.RESOLVED,
        BreachStatus.CLOSED,
        BreachStatus.BOARD_ACCEPTED,
    }),
    BreachStatus.RESOLVED: frozenset(),
    BreachStatus.CLOSED: frozenset(),
    BreachStatus.BOARD_ACCEPTED: frozenset(),
}


def can_transition(from_status: BreachStatus, to_status: BreachStatus) -> bool:
    return to_status in ALLOWED_STATUS_TRANSITIONS.get(from_status, frozenset())


def validate_status_transition(
    from_status: BreachStatus,
    to_status: BreachStatus,
) -> None:
    """
    Require a lifecycle transition to be allowed.

    Raises:
        InvalidBreachTransitionError: If the transition is not allowed
    """
    if can_transition(from_status, to_status):
        return

    if from_status == BreachStatus.BOARD_ACCEPTED:
        reason = "board-accepted breaches are immutable"
    elif from_status in TERMINAL_STATUSES:
        reason = "breach is already closed"
    else:
        reason = "not an allowed lifecycle step"
    raise InvalidBreachTransitionError(from_status, to_status, reason)


def require_mutable(status: BreachStatus) -> None:
    """Refuse any in-place write to a board-accepted entry."""
    if status == BreachStatus.BOARD_ACCEPTED:
        raise InvalidBreachTransitionError(
            status, status, "board-accepted breaches are immutable"
        )
