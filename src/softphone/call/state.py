"""Call lifecycle states and their legal transitions.

Initiating → Ringing → Answered → Disposed, with Busy and Canceled as
alternate endings before the call is answered.  Every state may move to
Disposed; Disposed is terminal.
"""

from __future__ import annotations

import logging
from enum import StrEnum

logger = logging.getLogger(__name__)


class CallState(StrEnum):
    INITIATING = "initiating"  # INVITE sent or received, no provisional yet
    RINGING = "ringing"  # callee alerted, waiting for answer
    ANSWERED = "answered"  # 2xx exchanged, media flowing
    BUSY = "busy"  # 486 Busy Here received
    CANCELED = "canceled"  # CANCEL completed (487 Request Terminated)
    DISPOSED = "disposed"  # resources released


_TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    CallState.INITIATING: frozenset(
        {
            CallState.RINGING,
            CallState.ANSWERED,
            CallState.BUSY,
            CallState.CANCELED,
            CallState.DISPOSED,
        }
    ),
    CallState.RINGING: frozenset(
        {CallState.ANSWERED, CallState.BUSY, CallState.CANCELED, CallState.DISPOSED}
    ),
    CallState.ANSWERED: frozenset({CallState.DISPOSED}),
    CallState.BUSY: frozenset({CallState.DISPOSED}),
    CallState.CANCELED: frozenset({CallState.DISPOSED}),
    CallState.DISPOSED: frozenset(),
}


def can_transition(current: CallState, new: CallState) -> bool:
    return new in _TRANSITIONS[current]


class CallStateMachine:
    """Holds the current state; illegal transitions are logged no-ops."""

    def __init__(self, call_id: str, initial: CallState = CallState.INITIATING) -> None:
        self.call_id = call_id
        self.state = initial

    def transition(self, new: CallState) -> bool:
        if not can_transition(self.state, new):
            logger.warning(
                "Call %s: ignoring illegal transition %s → %s",
                self.call_id,
                self.state,
                new,
            )
            return False
        logger.debug("Call %s: %s → %s", self.call_id, self.state, new)
        self.state = new
        return True
