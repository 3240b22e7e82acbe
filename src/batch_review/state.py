"""State machine for the automation server lifecycle."""

from __future__ import annotations

from batch_review.models import ServerState

# Valid transitions: from_state -> set of allowed to_states
TRANSITIONS: dict[ServerState, set[ServerState]] = {
    ServerState.STOPPED: {ServerState.STARTING},
    ServerState.STARTING: {ServerState.RUNNING, ServerState.STOPPED},
    ServerState.RUNNING: {ServerState.STOPPED},
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ServerState, to_state: ServerState) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition: {from_state.value} -> {to_state.value}"
        )


def transition(current: ServerState, to: ServerState) -> ServerState:
    """Return ``to`` if reachable from ``current``. Raises InvalidTransitionError if not allowed."""
    allowed = TRANSITIONS.get(current, set())
    if to not in allowed:
        raise InvalidTransitionError(current, to)
    return to


def can_transition(current: ServerState, to: ServerState) -> bool:
    """Check if a transition is valid without performing it."""
    allowed = TRANSITIONS.get(current, set())
    return to in allowed
