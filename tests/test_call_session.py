from __future__ import annotations

import asyncio

import pytest

from softphone.call.inbound import InboundCallSession
from softphone.call.session import CallSession
from softphone.call.state import CallState
from softphone.errors import (
    InvalidDtmfCharError,
    MalformedOfferError,
    TransportNotReadyError,
)
from softphone.rtp.packet import RtpHeader, RtpPacket
from softphone.rtp.pcmu import ulaw_to_pcm
from softphone.rtp.transport import HOLE_PUNCH, MediaTransport
from softphone.sip.message import parse_message

from .conftest import (
    CALL_ID,
    REMOTE_IP,
    REMOTE_PORT,
    FakeTransport,
    make_message,
    make_sdp,
)


def _session(channel, invite, settings) -> InboundCallSession:
    return InboundCallSession(channel, invite, settings, decoders={0: ulaw_to_pcm})


async def _start(session: CallSession) -> FakeTransport:
    fake = FakeTransport()
    session.media.connection_made(fake)
    await session.start_local_services()
    return fake


def _in_dialog(method: str, cseq: int, body: str = "", call_id: str = CALL_ID):
    return make_message(
        f"{method} sip:101@abc123.invalid;transport=tls SIP/2.0",
        [
            ("Via", f"SIP/2.0/TLS 10.0.0.2:5061;branch=z9hG4bK{method.lower()}{cseq}"),
            ("From", '"Alice" <sip:alice@sip.example.com>;tag=alice1'),
            ("To", "<sip:101@sip.example.com>;tag=me1"),
            ("Call-ID", call_id),
            ("CSeq", f"{cseq} {method}"),
        ],
        body,
    )


def _count(session: CallSession, event: str) -> list:
    calls: list = []
    session.on(event, lambda *args: calls.append(args))
    return calls


def test_malformed_offer_raises_before_any_resources(channel, invite, settings):
    invite.body = "v=0\r\nc=IN IP4 10.0.0.2\r\n"
    with pytest.raises(MalformedOfferError):
        _session(channel, invite, settings)
    assert channel.subscription_count == 0
    assert channel.sent == []


def test_remote_endpoint_and_key_from_offer(channel, invite, settings):
    session = _session(channel, invite, settings)
    assert session.call_id == CALL_ID
    assert (session.remote_ip, session.remote_port) == (REMOTE_IP, REMOTE_PORT)
    assert session.media.ready


def test_offer_without_key_is_not_ready(channel, invite, settings, remote_key):
    invite.body = make_sdp(None)
    session = _session(channel, invite, settings)
    assert not session.media.ready
    with pytest.raises(TransportNotReadyError):
        session.send_dtmf("1")
    session.set_remote_key(remote_key)
    assert session.media.ready


@pytest.mark.asyncio
async def test_start_punches_hole(channel, invite, settings):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    assert fake.sent == [(HOLE_PUNCH, (REMOTE_IP, REMOTE_PORT))]


@pytest.mark.asyncio
async def test_peer_bye_disposes(channel, invite, settings):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    disposed = _count(session, "disposed")
    channel.dispatch(_in_dialog("BYE", 2))
    [response] = channel.sent_messages()
    assert response.status_code == 200
    assert response.cseq == (2, "BYE")
    assert len(disposed) == 1
    assert session.disposed
    assert session.state is CallState.DISPOSED
    assert fake.close_calls == 1
    assert channel.subscription_count == 0


@pytest.mark.asyncio
async def test_hangup_disposes_on_confirmation(channel, invite, settings):
    session = _session(channel, invite, settings)
    await _start(session)
    session.hangup()
    [bye] = channel.sent_messages()
    assert bye.method == "BYE"
    assert bye.uri == "sip:sip.example.com"
    assert bye.call_id == CALL_ID
    cseq, _ = bye.cseq
    assert not session.disposed
    ok = make_message(
        "SIP/2.0 200 OK",
        [("Call-ID", CALL_ID), ("CSeq", f"{cseq} BYE"), ("Via", bye.header("Via"))],
    )
    channel.dispatch(ok)
    assert session.disposed


@pytest.mark.asyncio
async def test_other_calls_do_not_affect_session(channel, invite, settings):
    session = _session(channel, invite, settings)
    await _start(session)
    channel.dispatch(_in_dialog("BYE", 2, call_id="someone-else"))
    assert not session.disposed
    assert channel.sent == []


@pytest.mark.asyncio
async def test_double_dispose_closes_once(channel, invite, settings):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    disposed = _count(session, "disposed")
    session.dispose()
    session.dispose()
    assert len(disposed) == 1
    assert fake.close_calls == 1


@pytest.mark.asyncio
async def test_operations_after_dispose_are_noops(channel, invite, settings):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    session.dispose()
    sent_before = list(fake.sent)
    session.send_dtmf("1")
    session.hangup()
    assert session.transfer("303") is None
    assert fake.sent == sent_before
    assert channel.sent == []


@pytest.mark.asyncio
async def test_invalid_dtmf_rejected_before_sending(channel, invite, settings):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    with pytest.raises(InvalidDtmfCharError):
        session.send_dtmf("A")
    assert fake.sent == [(HOLE_PUNCH, (REMOTE_IP, REMOTE_PORT))]


@pytest.mark.asyncio
async def test_send_dtmf_burst(channel, invite, settings, peer_srtp):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    session.send_dtmf("#")
    datagrams = [data for data, _ in fake.sent[1:]]
    assert len(datagrams) == 6
    packets = [RtpPacket.parse(peer_srtp.unprotect(d)) for d in datagrams]
    assert {p.header.payload_type for p in packets} == {101}
    assert len({p.header.timestamp for p in packets}) == 1
    assert len({p.header.ssrc for p in packets}) == 1
    assert [p.header.marker for p in packets] == [True] + [False] * 5
    seqs = [p.header.sequence_number for p in packets]
    assert seqs == [(seqs[0] + i) & 0xFFFF for i in range(6)]
    assert all(p.payload[0] == 11 for p in packets)


@pytest.mark.asyncio
async def test_back_to_back_presses_each_reach_peer(
    channel, invite, settings, local_key, remote_key
):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    session.send_dtmf("1")
    session.send_dtmf("2")

    digits: list[str] = []

    def sink(event: str, *args) -> None:
        if event == "dtmf":
            digits.append(args[0])

    peer = MediaTransport(("127.0.0.1", 40000), remote_key, sink, {})
    peer.set_remote_key(local_key)
    peer.connection_made(FakeTransport())
    for data, _ in fake.sent[1:]:
        peer.datagram_received(data, (REMOTE_IP, REMOTE_PORT))
    assert digits == ["1", "2"]


@pytest.mark.asyncio
async def test_media_events_reach_listeners(channel, invite, settings, peer_srtp):
    session = _session(channel, invite, settings)
    await _start(session)
    audio = _count(session, "audio_packet")
    raw = _count(session, "rtp_packet")
    header = RtpHeader(payload_type=0, sequence_number=1, timestamp=0, ssrc=5)
    session.media.datagram_received(
        peer_srtp.protect(RtpPacket(header, b"\xff" * 160).serialize()),
        (REMOTE_IP, REMOTE_PORT),
    )
    assert len(raw) == 1
    assert len(audio) == 1
    assert audio[0][0].payload == b"\x00\x00" * 160


@pytest.mark.asyncio
async def test_stream_audio_stops_on_dispose(channel, invite, settings):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    streamer = session.stream_audio(b"\xff" * 160 * 100)
    await asyncio.sleep(0.05)
    session.dispose()
    await asyncio.wait_for(streamer.finished, 1.0)
    sent = len(fake.sent)
    await asyncio.sleep(0.05)
    assert len(fake.sent) == sent


@pytest.mark.asyncio
async def test_stream_audio_single_frame(channel, invite, settings, peer_srtp):
    session = _session(channel, invite, settings)
    fake = await _start(session)
    streamer = session.stream_audio(b"\xff" * 160)
    await asyncio.wait_for(streamer.finished, 1.0)
    assert len(fake.sent) == 2
    packet = RtpPacket.parse(peer_srtp.unprotect(fake.sent[1][0]))
    assert packet.header.payload_type == 0
    assert packet.payload == b"\xff" * 160


@pytest.mark.asyncio
async def test_transfer(channel, invite, settings):
    session = _session(channel, invite, settings)
    await _start(session)
    subscription = session.transfer("303")
    assert subscription is not None
    [refer] = channel.sent_messages()
    assert refer.method == "REFER"
    assert refer.uri == "sip:alice@sip.example.com"
    assert refer.header("Refer-To") == "sip:303@sip.example.com"
    assert refer.header("Referred-By") == "<sip:101@sip.example.com>"

    channel.dispatch(_in_dialog("NOTIFY", 3, "SIP/2.0 100 Trying"))
    assert subscription.active
    channel.dispatch(_in_dialog("NOTIFY", 4, "SIP/2.0 200 OK"))
    assert not subscription.active
    responses = [parse_message(d) for d in channel.sent[1:]]
    assert [(r.status_code, r.cseq) for r in responses] == [
        (200, (3, "NOTIFY")),
        (200, (4, "NOTIFY")),
    ]
    assert not session.disposed
