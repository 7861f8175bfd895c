"""SDP offer parsing and SRTP offer/answer generation."""

from __future__ import annotations

import dataclasses
import random

from softphone.errors import MalformedOfferError
from softphone.rtp.packet import (
    PAYLOAD_TYPE_OPUS,
    PAYLOAD_TYPE_PCMU,
    PAYLOAD_TYPE_TELEPHONE_EVENT,
)
from softphone.rtp.srtp import CRYPTO_SUITE


@dataclasses.dataclass
class SdpOffer:
    """Remote audio endpoint and SDES key from a session description."""

    audio_port: int
    connection_address: str
    crypto_key: str | None = None


def parse_sdp_offer(sdp: str) -> SdpOffer:
    """Extract audio port, connection address and SRTP key from an SDP body.

    Raises MalformedOfferError when the ``c=IN IP4`` or ``m=audio`` line
    is missing.
    """
    audio_port: int | None = None
    connection_address: str | None = None
    crypto_key: str | None = None

    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m=audio "):
            # m=audio <port> RTP/SAVP ...
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                audio_port = int(parts[1])
        elif line.startswith("c=IN IP4 "):
            # c=IN IP4 <address>[/<subnet>]
            addr = line[len("c=IN IP4 ") :]
            connection_address = addr.split("/")[0].strip()
        elif line.startswith("a=crypto:") and crypto_key is None:
            crypto_key = _parse_crypto_line(line)

    if connection_address is None:
        raise MalformedOfferError("SDP has no 'c=IN IP4' connection line")
    if audio_port is None:
        raise MalformedOfferError("SDP has no 'm=audio' media line")
    return SdpOffer(
        audio_port=audio_port,
        connection_address=connection_address,
        crypto_key=crypto_key,
    )


def _parse_crypto_line(line: str) -> str | None:
    # RFC 4568 §9.1: a=crypto:<tag> <crypto-suite> inline:<key||salt>[|lifetime][|MKI]
    parts = line.split()
    if len(parts) < 3 or parts[1] != CRYPTO_SUITE:
        return None
    key_params = parts[2]
    if not key_params.startswith("inline:"):
        return None
    return key_params[len("inline:") :].split("|")[0]


def build_sdp(local_ip: str, local_key: str, rtp_port: int | None = None) -> str:
    """Build an RTP/SAVP offer or answer with Opus, PCMU and telephone-event.

    The advertised port only needs to be plausible: the peer learns our
    real media port from the source of the first datagram we send.
    """
    if rtp_port is None:
        rtp_port = random.randint(10000, 65000)
    session_id = random.randint(1, 0xFFFFFFFF)
    lines = [
        "v=0",
        f"o=- {session_id} 0 IN IP4 {local_ip}",
        "s=softphone",
        f"c=IN IP4 {local_ip}",
        "t=0 0",
        f"m=audio {rtp_port} RTP/SAVP {PAYLOAD_TYPE_OPUS} {PAYLOAD_TYPE_PCMU}"
        f" {PAYLOAD_TYPE_TELEPHONE_EVENT}",
        f"a=rtpmap:{PAYLOAD_TYPE_OPUS} OPUS/48000/2",
        f"a=rtpmap:{PAYLOAD_TYPE_PCMU} PCMU/8000",
        f"a=rtpmap:{PAYLOAD_TYPE_TELEPHONE_EVENT} telephone-event/8000",
        f"a=fmtp:{PAYLOAD_TYPE_TELEPHONE_EVENT} 0-15",
        "a=ptime:20",
        "a=sendrecv",
        f"a=crypto:1 {CRYPTO_SUITE} inline:{local_key}",
        "",
    ]
    return "\r\n".join(lines)
