"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from softphone.config import Settings
from softphone.rtp.srtp import SrtpContext, generate_key
from softphone.sip.channel import SignalingChannel
from softphone.sip.message import SipMessage, parse_message

REMOTE_IP = "10.0.0.2"
REMOTE_PORT = 30000
CALL_ID = "call-001@10.0.0.2"


class FakeTransport(asyncio.DatagramTransport):
    """Captures sendto() calls for test assertions."""

    def __init__(self) -> None:
        super().__init__(extra={"sockname": ("127.0.0.1", 40000)})
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.close_calls = 0

    def sendto(self, data: Any, addr: Any = None) -> None:
        if addr is not None:
            self.sent.append((bytes(data), addr))

    def close(self) -> None:
        self.close_calls += 1


class RecordingChannel(SignalingChannel):
    """SignalingChannel whose outbound messages are kept for inspection."""

    def __init__(self) -> None:
        self.sent: list[bytes] = []
        super().__init__(self.sent.append)

    def sent_messages(self) -> list[SipMessage]:
        return [parse_message(data) for data in self.sent]


def make_sdp(key: str | None, ip: str = REMOTE_IP, port: int = REMOTE_PORT) -> str:
    lines = [
        "v=0",
        f"o=- 1 0 IN IP4 {ip}",
        "s=-",
        f"c=IN IP4 {ip}",
        "t=0 0",
        f"m=audio {port} RTP/SAVP 0 101",
        "a=rtpmap:0 PCMU/8000",
        "a=rtpmap:101 telephone-event/8000",
    ]
    if key is not None:
        lines.append(f"a=crypto:1 AES_CM_128_HMAC_SHA1_80 inline:{key}|2^31")
    return "\r\n".join(lines) + "\r\n"


def make_message(
    start_line: str, headers: list[tuple[str, str]], body: str = ""
) -> SipMessage:
    lines = [start_line] + [f"{name}: {value}" for name, value in headers]
    lines.append(f"Content-Length: {len(body.encode())}")
    return parse_message(("\r\n".join(lines) + "\r\n\r\n" + body).encode())


@pytest.fixture
def local_key() -> str:
    return generate_key()


@pytest.fixture
def remote_key() -> str:
    return generate_key()


@pytest.fixture
def peer_srtp(local_key: str, remote_key: str) -> SrtpContext:
    """The far end's SRTP context: encrypts with its key, decrypts ours."""
    return SrtpContext(remote_key, local_key)


@pytest.fixture
def settings(local_key: str) -> Settings:
    return Settings(
        domain="sip.example.com",
        outbound_proxy="sip.example.com:5061",
        username="101",
        password="secret",
        local_key=local_key,
        via_host="abc123.invalid",
    )


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def invite(remote_key: str) -> SipMessage:
    return make_message(
        "INVITE sip:101@sip.example.com SIP/2.0",
        [
            ("Via", "SIP/2.0/TLS 10.0.0.2:5061;branch=z9hG4bKinv1"),
            ("From", '"Alice" <sip:alice@sip.example.com>;tag=alice1'),
            ("To", "<sip:101@sip.example.com>"),
            ("Call-ID", CALL_ID),
            ("CSeq", "1 INVITE"),
            ("Contact", "<sip:alice@10.0.0.2:5061;transport=tls>"),
            ("Content-Type", "application/sdp"),
        ],
        make_sdp(remote_key),
    )


@pytest.fixture
def ringing(remote_key: str) -> SipMessage:
    """183 Session Progress to our INVITE, carrying the callee's SDP."""
    return make_message(
        "SIP/2.0 183 Session Progress",
        [
            ("Via", "SIP/2.0/TLS abc123.invalid;branch=z9hG4bKout1"),
            ("From", "<sip:101@sip.example.com>;tag=me1"),
            ("To", "<sip:202@sip.example.com>;tag=bob1"),
            ("Call-ID", CALL_ID),
            ("CSeq", "2 INVITE"),
            ("Content-Type", "application/sdp"),
        ],
        make_sdp(remote_key),
    )
