"""
Tests for the position state machine.
"""
import pytest

from core.exceptions import IllegalTransitionError
from core.position_state import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    PositionStatus,
    can_transition,
    coerce_status,
    ensure_transition,
    is_terminal,
)

S = PositionStatus


class TestTransitions:

    @pytest.mark.parametrize("src,dst", [
        (S.PENDING_EXECUTION, S.ACTIVE),
        (S.PENDING_EXECUTION, S.FAILED),
        (S.ACTIVE, S.OUT_OF_RANGE),
        (S.ACTIVE, S.LIQUIDATING),
        (S.OUT_OF_RANGE, S.LIQUIDATING),
        (S.LIQUIDATING, S.LIQUIDATED),
    ])
    def test_lifecycle_edges(self, src, dst):
        assert can_transition(src, dst)

    @pytest.mark.parametrize("src,dst", [
        (S.LIQUIDATED, S.ACTIVE),
        (S.FAILED, S.PENDING_EXECUTION),
        (S.ACTIVE, S.PENDING_EXECUTION),
        (S.LIQUIDATING, S.ACTIVE),
        (S.OUT_OF_RANGE, S.ACTIVE),
        (S.ACTIVE, S.LIQUIDATED),
    ])
    def test_no_backward_or_skipping_edges(self, src, dst):
        assert not can_transition(src, dst)
        with pytest.raises(IllegalTransitionError):
            ensure_transition(src, dst)

    def test_terminal_states_have_no_exits(self):
        for terminal in TERMINAL_STATUSES:
            for target in PositionStatus:
                assert not can_transition(terminal, target)
                assert not can_transition(terminal, target, emergency=True)

    def test_emergency_edge(self):
        for status in OPEN_STATUSES:
            assert can_transition(status, S.LIQUIDATED, emergency=True)
        assert not can_transition(S.ACTIVE, S.FAILED, emergency=True)


class TestHelpers:

    def test_coerce_from_string(self):
        assert coerce_status("active") is S.ACTIVE
        assert coerce_status(S.FAILED) is S.FAILED

    def test_coerce_unknown(self):
        with pytest.raises(ValueError):
            coerce_status("CLOSED")

    def test_is_terminal(self):
        assert is_terminal("LIQUIDATED")
        assert not is_terminal(S.OUT_OF_RANGE)
