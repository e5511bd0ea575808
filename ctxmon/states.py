"""Monitor display states and transition table for ctxmon."""

from __future__ import annotations

from enum import Enum, auto


class State(Enum):
    INITIALIZING = auto()
    DISCONNECTED = auto()
    NO_CONVERSATIONS = auto()
    IDLE = auto()
    TRACKING = auto()


class Event(Enum):
    CONNECTING = auto()
    CONNECTION_FAILED = auto()
    LIST_EMPTY = auto()
    NONE_SELECTED = auto()
    CASCADE_SELECTED = auto()


_CONNECTED = (State.NO_CONVERSATIONS, State.IDLE, State.TRACKING)

# (current_state, event) -> next_state
TRANSITIONS: dict[tuple[State, Event], State] = {
    (State.INITIALIZING, Event.CONNECTION_FAILED): State.DISCONNECTED,
    (State.INITIALIZING, Event.LIST_EMPTY): State.NO_CONVERSATIONS,
    (State.INITIALIZING, Event.NONE_SELECTED): State.IDLE,
    (State.INITIALIZING, Event.CASCADE_SELECTED): State.TRACKING,
    (State.DISCONNECTED, Event.CONNECTING): State.INITIALIZING,
    (State.DISCONNECTED, Event.CONNECTION_FAILED): State.DISCONNECTED,
}
for _state in _CONNECTED:
    TRANSITIONS.update({
        (_state, Event.CONNECTING): State.INITIALIZING,
        (_state, Event.CONNECTION_FAILED): State.DISCONNECTED,
        (_state, Event.LIST_EMPTY): State.NO_CONVERSATIONS,
        (_state, Event.NONE_SELECTED): State.IDLE,
        (_state, Event.CASCADE_SELECTED): State.TRACKING,
    })


def transition(current: State, event: Event) -> State:
    """Return the next state for a given (state, event) pair.

    Raises ValueError if the transition is not allowed.
    """
    key = (current, event)
    if key not in TRANSITIONS:
        raise ValueError(
            f"Invalid transition: {current.name} + {event.name}"
        )
    return TRANSITIONS[key]
