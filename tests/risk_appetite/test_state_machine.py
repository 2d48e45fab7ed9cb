"""
Tests for the breach state machine.
"""

import pytest

from risk_appetite.state_machine import (
    ALLOWED_STATUS_TRANSITIONS,
    BREACH_ACTIONS,
    BreachAction,
    can_transition,
    decide_breach_action,
    require_mutable,
    severity_for,
    validate_status_transition,
)
from risk_appetite.types import (
    AppetiteStatus,
    BreachSeverity,
    BreachStatus,
    ConfigurationError,
    InvalidBreachTransitionError,
)


class TestObservationActions:
    """Every (open severity, observed status) pair has an action."""

    def test_table_is_total(self):
        for severity in (None, BreachSeverity.AMBER, BreachSeverity.RED):
            for status in AppetiteStatus:
                assert (severity, status) in BREACH_ACTIONS

    @pytest.mark.parametrize("severity,status,expected", [
        (None, AppetiteStatus.GREEN, BreachAction.NO_OP),
        (None, AppetiteStatus.AMBER, BreachAction.OPEN_NEW),
        (None, AppetiteStatus.RED, BreachAction.OPEN_NEW),
        (BreachSeverity.AMBER, AppetiteStatus.AMBER, BreachAction.REFRESH),
        (BreachSeverity.AMBER, AppetiteStatus.RED, BreachAction.ESCALATE),
        (BreachSeverity.RED, AppetiteStatus.AMBER, BreachAction.DEESCALATE),
        (BreachSeverity.RED, AppetiteStatus.RED, BreachAction.REFRESH),
        (BreachSeverity.AMBER, AppetiteStatus.GREEN, BreachAction.RESOLVE),
        (BreachSeverity.RED, AppetiteStatus.GREEN, BreachAction.RESOLVE),
    ])
    def test_actions(self, severity, status, expected):
        assert decide_breach_action(severity, status) == expected

    def test_unknown_never_writes(self):
        for severity in (None, BreachSeverity.AMBER, BreachSeverity.RED):
            assert decide_breach_action(severity, AppetiteStatus.UNKNOWN) == BreachAction.NO_OP

    def test_unrecognised_status_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            decide_breach_action(None, "PURPLE")

    def test_severity_for_green_raises(self):
        assert severity_for(AppetiteStatus.RED) == BreachSeverity.RED
        with pytest.raises(ConfigurationError):
            severity_for(AppetiteStatus.GREEN)


class TestLifecycle:
    """Lifecycle status transitions."""

    def test_open_to_in_progress(self):
        assert can_transition(BreachStatus.OPEN, BreachStatus.IN_PROGRESS)

    def test_terminal_statuses_have_no_exits(self):
        for status in (BreachStatus.RESOLVED, BreachStatus.CLOSED, BreachStatus.BOARD_ACCEPTED):
            assert ALLOWED_STATUS_TRANSITIONS[status] == frozenset()

    def test_board_accepted_is_immutable(self):
        with pytest.raises(InvalidBreachTransitionError, match="immutable"):
            validate_status_transition(BreachStatus.BOARD_ACCEPTED, BreachStatus.OPEN)

        with pytest.raises(InvalidBreachTransitionError):
            require_mutable(BreachStatus.BOARD_ACCEPTED)

    def test_resolved_cannot_reopen(self):
        with pytest.raises(InvalidBreachTransitionError, match="already closed"):
            validate_status_transition(BreachStatus.RESOLVED, BreachStatus.OPEN)

    def test_open_is_mutable(self):
        require_mutable(BreachStatus.OPEN)
