"""SRTP master keys and the per-call protect/unprotect context.

Keys use the SDES ``inline:`` format of RFC 4568: base64 of a 16-byte
AES master key followed by a 14-byte master salt.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import secrets

import pylibsrtp

MASTER_KEY_LENGTH = 16
MASTER_SALT_LENGTH = 14
KEY_MATERIAL_LENGTH = MASTER_KEY_LENGTH + MASTER_SALT_LENGTH
CRYPTO_SUITE = "AES_CM_128_HMAC_SHA1_80"


@dataclasses.dataclass(frozen=True)
class MasterKey:
    key: bytes
    salt: bytes

    @classmethod
    def from_base64(cls, encoded: str) -> MasterKey:
        try:
            material = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"SRTP key is not valid base64: {exc}") from exc
        if len(material) < KEY_MATERIAL_LENGTH:
            raise ValueError(
                f"SRTP key material must be {KEY_MATERIAL_LENGTH} bytes,"
                f" got {len(material)}"
            )
        return cls(
            key=material[:MASTER_KEY_LENGTH],
            salt=material[MASTER_KEY_LENGTH:KEY_MATERIAL_LENGTH],
        )

    @property
    def material(self) -> bytes:
        return self.key + self.salt


def generate_key() -> str:
    """Return a fresh base64 master key + salt."""
    return base64.b64encode(secrets.token_bytes(KEY_MATERIAL_LENGTH)).decode()


class SrtpContext:
    """Outbound and inbound SRTP sessions for one call.

    libsrtp allows a single wildcard-SSRC template per session, so
    outbound (local key) and inbound (remote key) each get their own.
    """

    def __init__(self, local_key: str, remote_key: str) -> None:
        local = MasterKey.from_base64(local_key)
        remote = MasterKey.from_base64(remote_key)
        self._tx = pylibsrtp.Session(
            policy=pylibsrtp.Policy(
                key=local.material,
                ssrc_type=pylibsrtp.Policy.SSRC_ANY_OUTBOUND,
                srtp_profile=pylibsrtp.Policy.SRTP_PROFILE_AES128_CM_SHA1_80,
            )
        )
        self._rx = pylibsrtp.Session(
            policy=pylibsrtp.Policy(
                key=remote.material,
                ssrc_type=pylibsrtp.Policy.SSRC_ANY_INBOUND,
                srtp_profile=pylibsrtp.Policy.SRTP_PROFILE_AES128_CM_SHA1_80,
            )
        )

    def protect(self, packet: bytes) -> bytes:
        return self._tx.protect(packet)

    def unprotect(self, packet: bytes) -> bytes:
        """Decrypt and authenticate; raises pylibsrtp.Error on failure."""
        return self._rx.unprotect(packet)
