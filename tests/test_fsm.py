"""Tests for repoengine.workflow.fsm module."""

import pytest
from transitions import MachineError

from repoengine.lib.types import OperationState
from repoengine.workflow.fsm import (
    OperationFSM,
    STATES,
    TRANSITIONS,
    TRIGGER_FOR,
)


class TestFSMStates:
    """Tests for FSM state definitions."""

    def test_all_states_defined(self):
        """States mirror OperationState."""
        assert set(STATES) == {"idle", "in_progress", "committed", "conflict_pending", "aborted"}

    def test_every_transition_uses_known_states(self):
        for t in TRANSITIONS:
            assert t["source"] in STATES
            assert t["dest"] in STATES

    def test_trigger_lookup(self):
        assert TRIGGER_FOR[("idle", "in_progress")] == "start"
        assert TRIGGER_FOR[("conflict_pending", "in_progress")] == "resume"
        assert TRIGGER_FOR[("conflict_pending", "aborted")] == "abort"


class TestFSMBasic:
    """Basic FSM functionality tests."""

    def test_starts_idle(self):
        fsm = OperationFSM("squash")
        assert fsm.state == "idle"
        assert fsm.operation_state is OperationState.IDLE

    def test_unknown_initial_state_defaults_to_idle(self, caplog):
        fsm = OperationFSM("squash", initial="bogus_state")
        assert fsm.state == "idle"
        assert "unknown state 'bogus_state'" in caplog.text

    def test_happy_path(self):
        fsm = OperationFSM("reorder", "/repo")
        fsm.start()
        fsm.succeed()
        assert fsm.operation_state is OperationState.COMMITTED

    def test_conflict_then_resume_then_commit(self):
        fsm = OperationFSM("cherry-pick")
        fsm.start()
        fsm.conflict()
        assert fsm.state == "conflict_pending"
        fsm.resume()
        fsm.succeed()
        assert fsm.state == "committed"

    def test_abort_from_conflict(self):
        fsm = OperationFSM("revert")
        fsm.start()
        fsm.conflict()
        fsm.abort()
        assert fsm.state == "aborted"


class TestFSMGuards:
    """Invalid transitions are refused."""

    def test_cannot_succeed_from_idle(self):
        fsm = OperationFSM("drop")
        with pytest.raises(MachineError):
            fsm.succeed()

    def test_terminal_states_have_no_triggers(self):
        fsm = OperationFSM("drop")
        fsm.start()
        fsm.succeed()
        assert fsm.machine.get_triggers(fsm.state) == []

    def test_triggers_per_state(self):
        fsm = OperationFSM("merge")
        assert fsm.machine.get_triggers(fsm.state) == ["start"]
        fsm.start()
        assert set(fsm.machine.get_triggers(fsm.state)) == {"succeed", "conflict", "abort"}

    def test_no_auto_transitions(self):
        fsm = OperationFSM("merge")
        assert not hasattr(fsm, "to_committed")


class TestFSMObserver:
    """Transitions are logged and forwarded."""

    def test_observer_receives_each_transition(self):
        seen = []
        fsm = OperationFSM("squash", "/repo", on_transition=lambda *args: seen.append(args))
        fsm.start()
        fsm.abort()
        assert seen == [
            ("squash", "idle", "in_progress", "start"),
            ("squash", "in_progress", "aborted", "abort"),
        ]

    def test_transition_logged(self, caplog):
        caplog.set_level("INFO", logger="repoengine.workflow.fsm")
        fsm = OperationFSM("drop", "/some/repo")
        fsm.start()
        assert "[OP] drop /some/repo: idle -> in_progress (start)" in caplog.text
