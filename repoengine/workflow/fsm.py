"""History-operation state machine using the transitions library.

Every history mutation (cherry-pick, reorder, squash, drop, revert,
amend, merge) drives one OperationFSM:

    idle -> in_progress -> committed | conflict_pending | aborted

A conflict leaves the machine in conflict_pending until the caller
continues or skips (resume -> in_progress) or aborts.

Usage:
    from repoengine.workflow.fsm import OperationFSM

    fsm = OperationFSM("squash", repo_path)
    fsm.start()
    fsm.succeed()
"""

import logging
from typing import Callable

from transitions import Machine

from repoengine.lib.types import OperationState

logger = logging.getLogger(__name__)


# State values must match OperationState
STATES = [state.value for state in OperationState]

TRANSITIONS = [
    {"trigger": "start", "source": "idle", "dest": "in_progress"},

    {"trigger": "succeed", "source": "in_progress", "dest": "committed"},
    {"trigger": "conflict", "source": "in_progress", "dest": "conflict_pending"},

    # Caller chose continue or skip on a pending conflict
    {"trigger": "resume", "source": "conflict_pending", "dest": "in_progress"},

    {"trigger": "abort", "source": "in_progress", "dest": "aborted"},
    {"trigger": "abort", "source": "conflict_pending", "dest": "aborted"},
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        key = (t["source"], t["dest"])
        if key not in lookup:
            lookup[key] = t["trigger"]
    return lookup


TRIGGER_FOR = _build_trigger_lookup()

Observer = Callable[[str, str, str, str], None]


class OperationFSM:
    """Lifecycle of one history mutation on one repository.

    Logs every transition and forwards it to an optional observer as
    (operation, from_state, to_state, trigger).
    """

    def __init__(
        self,
        operation: str,
        repo_path: str = "",
        initial: str = "idle",
        on_transition: Observer | None = None,
    ):
        self.operation = operation
        self.repo_path = str(repo_path)
        self.on_transition = on_transition

        if initial not in STATES:
            logger.warning(f"[OP] {operation}: unknown state '{initial}', defaulting to 'idle'")
            initial = "idle"

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[OP] {self.operation} {self.repo_path}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(self.operation, from_state, to_state, trigger)

    @property
    def operation_state(self) -> OperationState:
        return OperationState(self.state)
