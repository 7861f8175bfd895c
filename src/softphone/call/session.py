"""Call session: signaling state machine plus the call's media pipeline.

A session is built from the SIP message carrying the peer's SDP (an
inbound INVITE or the provisional/2xx answer to our INVITE).  It owns one
:class:`MediaTransport`, listens on the shared signaling channel for its own
Call-ID only, and tears everything down exactly once in :meth:`dispose`.

Events: ``rtp_packet``, ``audio_packet``, ``dtmf_packet``, ``dtmf``,
``answered``, ``busy``, ``disposed``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping

from softphone.call.state import CallState, CallStateMachine
from softphone.config import Settings
from softphone.errors import TransportNotReadyError
from softphone.events import EventEmitter
from softphone.rtp.dtmf import char_to_payloads
from softphone.rtp.packet import (
    PAYLOAD_TYPE_TELEPHONE_EVENT,
    RtpHeader,
    RtpPacket,
    next_ssrc,
)
from softphone.rtp.stream import AudioStreamer
from softphone.rtp.transport import HOLE_PUNCH, Decoder, MediaTransport
from softphone.sip.channel import (
    SignalingChannel,
    Subscription,
    all_of,
    for_call,
    is_request,
)
from softphone.sip.message import (
    SipMessage,
    build_request,
    build_response,
    extract_address,
    generate_branch,
)
from softphone.sip.sdp import parse_sdp_offer

logger = logging.getLogger(__name__)

# Body of the NOTIFY (RFC 3515 §2.4.5 sipfrag) reporting a completed transfer
TRANSFER_COMPLETE = "SIP/2.0 200 OK"


class CallSession(EventEmitter):
    def __init__(
        self,
        channel: SignalingChannel,
        sip_message: SipMessage,
        settings: Settings,
        *,
        decoders: Mapping[int, Decoder] | None = None,
    ) -> None:
        super().__init__()
        self.channel = channel
        self.sip_message = sip_message
        self.settings = settings
        # Raises MalformedOfferError before any socket exists
        offer = parse_sdp_offer(sip_message.body)
        self.remote_ip = offer.connection_address
        self.remote_port = offer.audio_port
        self.local_peer = ""
        self.remote_peer = ""
        self.disposed = False
        self._fsm = CallStateMachine(self.call_id)
        self._subscriptions: list[Subscription] = []
        self._streamers: set[AudioStreamer] = set()
        self._local_cseq = 0
        self.media = MediaTransport(
            (self.remote_ip, self.remote_port),
            settings.local_key,
            self.emit,
            decoders,
        )
        if offer.crypto_key is not None:
            self.set_remote_key(offer.crypto_key)
        else:
            logger.warning("Call %s: SDP carries no SRTP key", self.call_id)

    @property
    def call_id(self) -> str:
        return self.sip_message.call_id

    @property
    def state(self) -> CallState:
        return self._fsm.state

    def set_remote_key(self, key: str) -> None:
        self.media.set_remote_key(key)

    # ------------------------------------------------------------------
    # Signaling helpers
    # ------------------------------------------------------------------

    def _track(self, subscription: Subscription) -> Subscription:
        self._subscriptions.append(subscription)
        return subscription

    def _via(self) -> str:
        return f"SIP/2.0/TLS {self.settings.via_host};branch={generate_branch()}"

    def _send_request(
        self,
        method: str,
        uri: str,
        extra_headers: list[tuple[str, str]] | None = None,
    ) -> None:
        # RFC 3261 §12.2.1.1: CSeq MUST increase by one per in-dialog request
        self._local_cseq += 1
        headers = [
            ("Via", self._via()),
            ("From", self.local_peer),
            ("To", self.remote_peer),
            ("Call-ID", self.call_id),
            ("CSeq", f"{self._local_cseq} {method}"),
            ("Max-Forwards", "70"),
            ("User-Agent", self.settings.user_agent),
        ]
        if extra_headers:
            headers += extra_headers
        self.channel.send(build_request(method, uri, headers=headers))
        logger.info("Call %s: sent %s", self.call_id, method)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_local_services(self) -> None:
        """Open the media socket, punch the return path and watch for teardown."""
        if self.disposed:
            return
        self._track(
            self.channel.subscribe(for_call(self.call_id), self._on_teardown_message)
        )
        await self.media.open()
        if self.disposed:
            return
        # The peer learns our media endpoint from this datagram's source address
        self.media.send(HOLE_PUNCH)
        logger.info(
            "Call %s: media to %s:%d", self.call_id, self.remote_ip, self.remote_port
        )

    def _on_teardown_message(self, msg: SipMessage) -> None:
        if self.disposed:
            return
        _, cseq_method = msg.cseq
        status = msg.status_code
        if status is not None:
            if cseq_method == "INVITE" and status >= 300:
                self._acknowledge_failure(msg)
                if status == 486:
                    self._fsm.transition(CallState.BUSY)
                    self.emit("busy")
                elif status == 487:
                    self._fsm.transition(CallState.CANCELED)
                else:
                    logger.info(
                        "Call %s: INVITE failed with %d %s",
                        self.call_id,
                        status,
                        msg.reason,
                    )
                self.dispose()
            elif cseq_method == "BYE":
                # Confirms our own BYE
                self.dispose()
            return

        if cseq_method == "BYE":
            # RFC 3261 §15.1.2: UAS MUST answer a BYE with 2xx
            self.channel.send(build_response(msg, 200, "OK"))
            self.dispose()

    def _acknowledge_failure(self, response: SipMessage) -> None:
        """ACK a non-2xx final response to our INVITE (outbound calls only)."""

    def transfer(self, target: str) -> Subscription | None:
        """Blind-transfer the peer to ``target`` (RFC 3515 REFER).

        Each NOTIFY reporting transfer progress is answered with 200 OK;
        the listener is removed once the transfer reports success.
        """
        if self.disposed:
            logger.debug("Call %s: transfer after dispose ignored", self.call_id)
            return None
        self._send_request(
            "REFER",
            f"sip:{extract_address(self.remote_peer)}",
            [
                ("Refer-To", f"sip:{target}@{self.settings.domain}"),
                ("Referred-By", f"<sip:{extract_address(self.local_peer)}>"),
            ],
        )

        def _on_notify(msg: SipMessage) -> None:
            self.channel.send(build_response(msg, 200, "OK"))
            if msg.body.strip() == TRANSFER_COMPLETE:
                logger.info("Call %s: transfer to %s complete", self.call_id, target)
                subscription.unsubscribe()

        subscription = self._track(
            self.channel.subscribe(
                all_of(for_call(self.call_id), is_request("NOTIFY")), _on_notify
            )
        )
        return subscription

    def hangup(self) -> None:
        """Send BYE; the session is disposed once the BYE is confirmed."""
        if self.disposed:
            logger.debug("Call %s: hangup after dispose ignored", self.call_id)
            return
        self._send_request("BYE", f"sip:{self.settings.domain}")

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def send_dtmf(self, char: str) -> None:
        """Send one keypad press as RFC 4733 telephone-event packets."""
        payloads = char_to_payloads(char)
        if self.disposed:
            logger.debug("Call %s: DTMF after dispose ignored", self.call_id)
            return
        if not self.media.ready:
            raise TransportNotReadyError("Cannot send DTMF before the SRTP key is known")
        timestamp = int(time.time())
        sequence_number = timestamp % 65536
        ssrc = next_ssrc()
        for i, payload in enumerate(payloads):
            header = RtpHeader(
                payload_type=PAYLOAD_TYPE_TELEPHONE_EVENT,
                sequence_number=(sequence_number + i) & 0xFFFF,
                timestamp=timestamp,
                ssrc=ssrc,
                marker=i == 0,
            )
            self.media.encrypt_and_send(RtpPacket(header, payload))
        logger.debug("Call %s: sent DTMF %r", self.call_id, char)

    def stream_audio(self, audio_buf: bytes) -> AudioStreamer:
        """Play 8 kHz μ-law audio into the call.

        The buffer should be playable with
        ``ffplay -autoexit -f mulaw -ar 8000 file.raw``.
        """
        if not self.media.ready:
            raise TransportNotReadyError("Cannot stream audio before the SRTP key is known")
        streamer = AudioStreamer(self, audio_buf)
        self._streamers.add(streamer)
        streamer.finished.add_done_callback(lambda _f: self._streamers.discard(streamer))
        streamer.start()
        return streamer

    def dispose(self) -> None:
        """Release the call's resources; safe to call repeatedly from any state."""
        if self.disposed:
            return
        self.disposed = True
        self._fsm.transition(CallState.DISPOSED)
        for streamer in list(self._streamers):
            streamer.stop()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        logger.info("Call %s disposed", self.call_id)
        self.emit("disposed")
        self.remove_all_listeners()
        self.media.close()
