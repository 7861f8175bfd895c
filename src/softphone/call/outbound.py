"""Call session for an INVITE we sent."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from softphone.call.session import CallSession
from softphone.call.state import CallState
from softphone.config import Settings
from softphone.rtp.transport import Decoder
from softphone.sip.channel import SignalingChannel, all_of, for_call
from softphone.sip.message import SipMessage, build_request, extract_address

logger = logging.getLogger(__name__)


def _contact_uri(contact: str | None) -> str | None:
    if not contact:
        return None
    start = contact.find("<")
    end = contact.find(">", start + 1)
    if start == -1 or end == -1:
        return contact.split(";")[0].strip()
    return contact[start + 1 : end]


def _strip_tag(header: str) -> str:
    value, _, _ = header.partition(";tag=")
    return value


class OutboundCallSession(CallSession):
    """Call we placed, created from the first response carrying the callee's SDP.

    ``request_uri`` is the Request-URI of our INVITE; ACKs for failure
    responses and CANCEL reuse it (RFC 3261 §17.1.1.3, §9.1).
    """

    def __init__(
        self,
        channel: SignalingChannel,
        response: SipMessage,
        settings: Settings,
        *,
        request_uri: str | None = None,
        decoders: Mapping[int, Decoder] | None = None,
    ) -> None:
        super().__init__(channel, response, settings, decoders=decoders)
        self.local_peer = response.header("From") or ""
        self.remote_peer = response.header("To") or ""
        self.request_uri = request_uri or f"sip:{extract_address(self.remote_peer)}"
        self._invite_cseq, _ = response.cseq
        self._invite_via = response.header("Via") or self._via()
        # In-dialog requests continue from the INVITE's sequence number
        self._local_cseq = self._invite_cseq
        self._fsm.transition(CallState.RINGING)
        self._track(
            channel.subscribe(
                all_of(for_call(self.call_id), self._is_invite_success),
                self.handle_answer,
            )
        )

    def _is_invite_success(self, msg: SipMessage) -> bool:
        return (
            msg.is_response
            and msg.status_code is not None
            and 200 <= msg.status_code < 300
            and msg.cseq == (self._invite_cseq, "INVITE")
        )

    def handle_answer(self, response: SipMessage) -> None:
        """ACK a 2xx to our INVITE; the first one moves the call to answered."""
        if self.disposed:
            return
        to_header = response.header("To")
        if to_header:
            self.remote_peer = to_header
        target = _contact_uri(response.header("Contact")) or self.request_uri
        # RFC 3261 §13.2.2.4: the 2xx ACK is its own transaction, sent for
        # every retransmission of the 2xx
        self.channel.send(
            build_request(
                "ACK",
                target,
                headers=[
                    ("Via", self._via()),
                    ("From", self.local_peer),
                    ("To", self.remote_peer),
                    ("Call-ID", self.call_id),
                    ("CSeq", f"{self._invite_cseq} ACK"),
                    ("Max-Forwards", "70"),
                    ("User-Agent", self.settings.user_agent),
                ],
            )
        )
        if self.state is CallState.ANSWERED:
            logger.debug("Call %s: re-acknowledged retransmitted 2xx", self.call_id)
            return
        if self._fsm.transition(CallState.ANSWERED):
            logger.info("Call %s answered by %s", self.call_id, self.remote_peer)
            self.emit("answered")

    def _acknowledge_failure(self, response: SipMessage) -> None:
        # RFC 3261 §17.1.1.3: ACK for a non-2xx final reuses the INVITE's
        # Via and Request-URI; To comes from the response
        self.channel.send(
            build_request(
                "ACK",
                self.request_uri,
                headers=[
                    ("Via", self._invite_via),
                    ("From", self.local_peer),
                    ("To", response.header("To") or self.remote_peer),
                    ("Call-ID", self.call_id),
                    ("CSeq", f"{self._invite_cseq} ACK"),
                    ("Max-Forwards", "70"),
                ],
            )
        )

    def cancel(self) -> None:
        """Abandon the call before it is answered (RFC 3261 §9.1)."""
        if self.state is not CallState.RINGING:
            logger.warning("Call %s: cannot cancel in state %s", self.call_id, self.state)
            return
        self.channel.send(
            build_request(
                "CANCEL",
                self.request_uri,
                headers=[
                    ("Via", self._invite_via),
                    ("From", self.local_peer),
                    ("To", _strip_tag(self.remote_peer)),
                    ("Call-ID", self.call_id),
                    ("CSeq", f"{self._invite_cseq} CANCEL"),
                    ("Max-Forwards", "70"),
                    ("User-Agent", self.settings.user_agent),
                ],
            )
        )
        logger.info("Call %s: sent CANCEL", self.call_id)
