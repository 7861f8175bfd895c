"""RFC 4733 telephone-event payloads for DTMF keypad characters.

Each payload is 4 bytes::

     0                   1                   2                   3
    |     event     |E|R| volume    |          duration             |

A keypad press is sent as a burst of payloads sharing one RTP timestamp:
progress payloads with growing duration, then the end-of-event payload
repeated three times (RFC 4733 §2.5.1.4).
"""

from __future__ import annotations

import logging
import struct

from softphone.errors import InvalidDtmfCharError

logger = logging.getLogger(__name__)

DTMF_CHARS = "0123456789*#"
END_OF_EVENT = 0x80
VOLUME = 10
DURATION_STEP = 160  # 20 ms at 8000 Hz
PROGRESS_PAYLOADS = 3
END_PAYLOADS = 3

_EVENT_CODES = {char: code for code, char in enumerate(DTMF_CHARS)}
_PAYLOAD = struct.Struct("!BBH")


def char_to_payloads(char: str) -> list[bytes]:
    """Encode one keypad character as a telephone-event payload burst."""
    code = _EVENT_CODES.get(char) if len(char) == 1 else None
    if code is None:
        raise InvalidDtmfCharError(f"Invalid DTMF character: {char!r}")
    payloads = [
        _PAYLOAD.pack(code, VOLUME, DURATION_STEP * (i + 1))
        for i in range(PROGRESS_PAYLOADS)
    ]
    end_duration = DURATION_STEP * (PROGRESS_PAYLOADS + 1)
    payloads += [
        _PAYLOAD.pack(code, END_OF_EVENT | VOLUME, end_duration)
    ] * END_PAYLOADS
    return payloads


def payload_to_char(payload: bytes) -> str | None:
    """Return the keypad character for a payload, or None if unrecognized."""
    if len(payload) < _PAYLOAD.size:
        return None
    code = payload[0]
    if code >= len(DTMF_CHARS):
        return None
    return DTMF_CHARS[code]


def is_end_of_event(payload: bytes) -> bool:
    return len(payload) >= _PAYLOAD.size and bool(payload[1] & END_OF_EVENT)


class DtmfDetector:
    """Collapses a stream of telephone-event payloads into keypad presses.

    All payloads of one event share an SSRC and RTP timestamp.  A character
    is reported once, on the first end-of-event payload seen for that pair;
    progress payloads and redundant end payloads are ignored.
    """

    def __init__(self) -> None:
        self._reported: tuple[int, int] | None = None

    def feed(self, payload: bytes, ssrc: int, timestamp: int) -> str | None:
        if not is_end_of_event(payload):
            return None
        if (ssrc, timestamp) == self._reported:
            return None
        char = payload_to_char(payload)
        if char is None:
            logger.debug("Ignoring unknown telephone-event %d", payload[0])
            return None
        self._reported = (ssrc, timestamp)
        return char
