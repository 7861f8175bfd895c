"""Per-call SRTP media transport over a dedicated UDP socket."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

import pylibsrtp

from softphone.errors import TransportNotReadyError
from softphone.rtp.dtmf import DtmfDetector
from softphone.rtp.opus import OpusDecoder
from softphone.rtp.packet import (
    PAYLOAD_TYPE_OPUS,
    PAYLOAD_TYPE_PCMU,
    PAYLOAD_TYPE_TELEPHONE_EVENT,
    RtpPacket,
)
from softphone.rtp.pcmu import ulaw_to_pcm
from softphone.rtp.srtp import SrtpContext

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes], bytes]
EventSink = Callable[..., Any]

# Sent unencrypted so the peer learns our ephemeral port from the source address
HOLE_PUNCH = b"hello"


def default_decoders() -> dict[int, Decoder]:
    return {
        PAYLOAD_TYPE_PCMU: ulaw_to_pcm,
        PAYLOAD_TYPE_OPUS: OpusDecoder().decode,
    }


class MediaTransport(asyncio.DatagramProtocol):
    """Owns one UDP socket and the SRTP context for a single call.

    Inbound datagrams are decrypted, parsed and classified, then handed to
    ``emit`` as ``rtp_packet`` plus either ``dtmf_packet``/``dtmf`` or
    ``audio_packet`` (payload replaced by decoded PCM).  A datagram that
    fails at any step is logged and dropped.
    """

    def __init__(
        self,
        remote_addr: tuple[str, int],
        local_key: str,
        emit: EventSink,
        decoders: Mapping[int, Decoder] | None = None,
    ) -> None:
        self.remote_addr = remote_addr
        self._local_key = local_key
        self._emit = emit
        self._decoders = dict(decoders) if decoders is not None else default_decoders()
        self._srtp: SrtpContext | None = None
        self._dtmf = DtmfDetector()
        self._transport: asyncio.DatagramTransport | None = None
        self._closed = False

    @property
    def ready(self) -> bool:
        return self._srtp is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def local_port(self) -> int | None:
        if self._transport is None:
            return None
        sockname = self._transport.get_extra_info("sockname")
        return sockname[1] if sockname else None

    def set_remote_key(self, remote_key: str) -> None:
        """Build the SRTP context from the local key and the peer's key."""
        if self._srtp is not None:
            logger.info("Replacing SRTP context for %s", self.remote_addr)
        self._srtp = SrtpContext(self._local_key, remote_key)

    async def open(self) -> None:
        """Bind an ephemeral local UDP port; no-op when already open."""
        if self._transport is not None or self._closed:
            return
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=("0.0.0.0", 0))

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        logger.info(
            "Media socket bound to port %s for %s", self.local_port, self.remote_addr
        )

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("Media socket lost: %s", exc)

    def error_received(self, exc: Exception) -> None:
        logger.warning("Media socket error for %s: %s", self.remote_addr, exc)

    def send(self, data: bytes) -> None:
        if self._closed or self._transport is None:
            logger.debug("Media socket not open, dropping %d bytes", len(data))
            return
        self._transport.sendto(data, self.remote_addr)

    def encrypt_and_send(self, packet: RtpPacket) -> None:
        if self._srtp is None:
            raise TransportNotReadyError("Remote SRTP key is not known yet")
        self.send(self._srtp.protect(packet.serialize()))

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if self._closed:
            return
        if self._srtp is None:
            logger.warning(
                "Dropping %d-byte datagram from %s: no SRTP key yet", len(data), addr
            )
            return
        try:
            packet = RtpPacket.parse(self._srtp.unprotect(data))
        except (pylibsrtp.Error, ValueError) as exc:
            logger.warning("Dropping undecryptable datagram from %s: %s", addr, exc)
            return

        self._emit("rtp_packet", packet)
        if self._closed:
            return

        payload_type = packet.header.payload_type
        if payload_type == PAYLOAD_TYPE_TELEPHONE_EVENT:
            self._emit("dtmf_packet", packet)
            char = self._dtmf.feed(
                packet.payload, packet.header.ssrc, packet.header.timestamp
            )
            if char is not None and not self._closed:
                self._emit("dtmf", char)
            return

        decoder = self._decoders.get(payload_type)
        if decoder is None:
            logger.debug("No decoder for payload type %d", payload_type)
            return
        try:
            pcm = decoder(packet.payload)
        except Exception:
            logger.warning(
                "Failed to decode payload type %d (seq=%d)",
                payload_type,
                packet.header.sequence_number,
                exc_info=True,
            )
            return
        self._emit("audio_packet", RtpPacket(header=packet.header, payload=pcm))

    def close(self) -> None:
        """Close the socket; later calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        logger.info("Media socket closed for %s", self.remote_addr)
