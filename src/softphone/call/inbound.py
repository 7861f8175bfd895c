"""Call session for an INVITE received from the network."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from softphone.call.session import CallSession
from softphone.call.state import CallState
from softphone.config import Settings
from softphone.rtp.transport import Decoder
from softphone.sip.channel import SignalingChannel, all_of, for_call, is_request
from softphone.sip.message import SipMessage, build_response, generate_tag
from softphone.sip.sdp import build_sdp

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "INVITE, ACK, CANCEL, BYE, NOTIFY, REFER, INFO, OPTIONS"


class InboundCallSession(CallSession):
    """Ringing call waiting for :meth:`answer`.

    Local peer is the INVITE's To (plus our tag), remote peer its From.
    A CANCEL arriving before the answer ends the session with 487.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        invite: SipMessage,
        settings: Settings,
        *,
        decoders: Mapping[int, Decoder] | None = None,
    ) -> None:
        super().__init__(channel, invite, settings, decoders=decoders)
        self._to_tag = generate_tag()
        to_header = invite.header("To") or ""
        if ";tag=" in to_header:
            self.local_peer = to_header
        else:
            self.local_peer = f"{to_header};tag={self._to_tag}"
        self.remote_peer = invite.header("From") or ""
        self._fsm.transition(CallState.RINGING)
        self._track(
            channel.subscribe(
                all_of(for_call(self.call_id), is_request("CANCEL")), self._on_cancel
            )
        )

    def _on_cancel(self, msg: SipMessage) -> None:
        # RFC 3261 §9.2: 200 to the CANCEL; if no final response was sent
        # yet, the INVITE is answered with 487 Request Terminated
        self.channel.send(build_response(msg, 200, "OK", to_tag=self._to_tag))
        if self.state is not CallState.RINGING:
            return
        self.channel.send(
            build_response(
                self.sip_message, 487, "Request Terminated", to_tag=self._to_tag
            )
        )
        self._fsm.transition(CallState.CANCELED)
        logger.info("Call %s canceled by caller", self.call_id)
        self.dispose()

    async def answer(self, local_ip: str) -> None:
        """Accept the call with an SRTP answer and start media.

        ``local_ip`` is advertised in the SDP answer and must be the address
        the signaling connection uses, not a loopback address.
        """
        if self.state is not CallState.RINGING:
            logger.warning("Call %s: cannot answer in state %s", self.call_id, self.state)
            return
        contact = (
            f"<sip:{self.settings.username}@{self.settings.via_host};transport=tls>"
        )
        self.channel.send(
            build_response(
                self.sip_message,
                200,
                "OK",
                body=build_sdp(local_ip, self.settings.local_key),
                to_tag=self._to_tag,
                extra_headers=[
                    ("Contact", contact),
                    ("Allow", ALLOWED_METHODS),
                    ("User-Agent", self.settings.user_agent),
                ],
            )
        )
        await self.start_local_services()
        if self._fsm.transition(CallState.ANSWERED):
            logger.info("Call %s answered", self.call_id)
            self.emit("answered")
