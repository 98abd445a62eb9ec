"""Per-event state machine of the dual-path orchestrator."""

import logging
from enum import Enum

from ..errors import PipelineStateError

logger = logging.getLogger(__name__)


class EventState(str, Enum):
    """Processing state of one event. Transitions only move forward."""

    IDLE = "idle"
    INPUT_READ = "input_read"
    UPLOADED = "uploaded"
    DEVICE_SEEDED = "device_seeded"
    DEVICE_PARAMS_ESTIMATED = "device_params_estimated"
    DEVICE_NAV_BUFFER_SIZED = "device_nav_buffer_sized"
    DEVICE_FOUND = "device_found"
    DEVICE_FITTED = "device_fitted"
    HOST_MIRROR = "host_mirror"
    COMPARED = "compared"
    RECORDED = "recorded"


TRANSITIONS: dict[EventState, frozenset[EventState]] = {
    EventState.IDLE: frozenset({EventState.INPUT_READ}),
    EventState.INPUT_READ: frozenset({EventState.UPLOADED}),
    EventState.UPLOADED: frozenset({EventState.DEVICE_SEEDED}),
    EventState.DEVICE_SEEDED: frozenset({EventState.DEVICE_PARAMS_ESTIMATED}),
    EventState.DEVICE_PARAMS_ESTIMATED: frozenset({EventState.DEVICE_NAV_BUFFER_SIZED}),
    EventState.DEVICE_NAV_BUFFER_SIZED: frozenset({EventState.DEVICE_FOUND}),
    EventState.DEVICE_FOUND: frozenset({EventState.DEVICE_FITTED}),
    EventState.DEVICE_FITTED: frozenset({EventState.HOST_MIRROR, EventState.COMPARED}),
    EventState.HOST_MIRROR: frozenset({EventState.COMPARED}),
    EventState.COMPARED: frozenset({EventState.RECORDED}),
    EventState.RECORDED: frozenset({EventState.IDLE}),
}


class EventStateMachine:
    """Tracks the state of the event being processed.

    Attributes:
        state: Current state.
        history: States of the current event, starting with ``IDLE``. Reset
            when the next event is read.
    """

    def __init__(self):
        self.state = EventState.IDLE
        self.history: list[EventState] = [EventState.IDLE]

    def advance(self, new_state: EventState) -> None:
        """Move to ``new_state``.

        Raises:
            PipelineStateError: If the transition is not allowed.
        """
        if new_state not in TRANSITIONS[self.state]:
            raise PipelineStateError(
                f"Illegal transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("%s -> %s", self.state.value, new_state.value)
        if new_state == EventState.INPUT_READ:
            self.history = [EventState.IDLE]
        self.state = new_state
        self.history.append(new_state)
