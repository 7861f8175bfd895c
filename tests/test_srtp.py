import base64

import pylibsrtp
import pytest

from softphone.rtp.packet import RtpHeader, RtpPacket
from softphone.rtp.srtp import (
    KEY_MATERIAL_LENGTH,
    MasterKey,
    SrtpContext,
    generate_key,
)


def _rtp(seq: int = 1, payload: bytes = b"\xff" * 160) -> bytes:
    header = RtpHeader(payload_type=0, sequence_number=seq, timestamp=seq * 160, ssrc=1234)
    return RtpPacket(header, payload).serialize()


def test_generate_key_is_30_bytes():
    material = base64.b64decode(generate_key())
    assert len(material) == KEY_MATERIAL_LENGTH


def test_generate_key_is_random():
    assert generate_key() != generate_key()


def test_master_key_split():
    material = bytes(range(30))
    key = MasterKey.from_base64(base64.b64encode(material).decode())
    assert key.key == material[:16]
    assert key.salt == material[16:]
    assert key.material == material


def test_master_key_rejects_bad_base64():
    with pytest.raises(ValueError):
        MasterKey.from_base64("not base64!!")


def test_master_key_rejects_short_material():
    with pytest.raises(ValueError):
        MasterKey.from_base64(base64.b64encode(b"\x00" * 16).decode())


def test_mirrored_contexts_round_trip(local_key, remote_key):
    ours = SrtpContext(local_key, remote_key)
    theirs = SrtpContext(remote_key, local_key)
    plain = _rtp()
    protected = ours.protect(plain)
    # 80-bit auth tag
    assert len(protected) == len(plain) + 10
    assert protected[12:] != plain[12:]
    assert theirs.unprotect(protected) == plain


def test_peer_to_us(local_key, remote_key, peer_srtp):
    ours = SrtpContext(local_key, remote_key)
    plain = _rtp(seq=7)
    assert ours.unprotect(peer_srtp.protect(plain)) == plain


def test_wrong_key_fails_authentication(local_key, remote_key):
    ours = SrtpContext(local_key, remote_key)
    stranger = SrtpContext(generate_key(), local_key)
    with pytest.raises(pylibsrtp.Error):
        ours.unprotect(stranger.protect(_rtp()))


def test_invalid_remote_key_rejected(local_key):
    with pytest.raises(ValueError):
        SrtpContext(local_key, "short")
