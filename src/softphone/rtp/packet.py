"""RTP header and packet (de)serialization (RFC 3550 §5.1)."""

from __future__ import annotations

import dataclasses
import itertools
import random
import struct

RTP_VERSION = 2
PAYLOAD_TYPE_PCMU = 0
PAYLOAD_TYPE_TELEPHONE_EVENT = 101
PAYLOAD_TYPE_OPUS = 111

_FIXED_HEADER = struct.Struct("!BBHII")

_ssrc_counter = itertools.count(random.randint(0, 0xFFFFFFFF))


def next_ssrc() -> int:
    """Allocate an SSRC distinct from every other one handed out in this process."""
    return next(_ssrc_counter) & 0xFFFFFFFF


@dataclasses.dataclass
class RtpHeader:
    payload_type: int
    sequence_number: int
    timestamp: int
    ssrc: int
    marker: bool = False
    csrc: list[int] = dataclasses.field(default_factory=list)
    extension_profile: int | None = None
    extension_data: bytes = b""
    version: int = RTP_VERSION

    def serialize(self) -> bytes:
        """Build the fixed 12-byte header plus CSRC list and extension."""
        extension = self.extension_profile is not None
        first_byte = (
            (self.version << 6)
            | (0x10 if extension else 0)
            | (len(self.csrc) & 0x0F)
        )
        second_byte = (self.payload_type & 0x7F) | (0x80 if self.marker else 0)
        data = _FIXED_HEADER.pack(
            first_byte,
            second_byte,
            self.sequence_number & 0xFFFF,
            self.timestamp & 0xFFFFFFFF,
            self.ssrc & 0xFFFFFFFF,
        )
        for csrc in self.csrc:
            data += struct.pack("!I", csrc & 0xFFFFFFFF)
        if extension:
            # Extension body is a whole number of 32-bit words
            body = self.extension_data
            if len(body) % 4:
                body += b"\x00" * (4 - len(body) % 4)
            data += struct.pack("!HH", self.extension_profile, len(body) // 4)
            data += body
        return data


@dataclasses.dataclass
class RtpPacket:
    header: RtpHeader
    payload: bytes

    def serialize(self) -> bytes:
        return self.header.serialize() + self.payload

    @classmethod
    def parse(cls, data: bytes) -> RtpPacket:
        """Parse a datagram into header and payload.

        Raises ValueError when the datagram is too short, is not RTP
        version 2, or its CSRC/extension/padding lengths overrun the data.
        """
        if len(data) < _FIXED_HEADER.size:
            raise ValueError(f"RTP packet too short ({len(data)} bytes)")
        first_byte, second_byte, seq, timestamp, ssrc = _FIXED_HEADER.unpack_from(
            data
        )
        version = first_byte >> 6
        if version != RTP_VERSION:
            raise ValueError(f"Unsupported RTP version {version}")
        padding = bool(first_byte & 0x20)
        extension = bool(first_byte & 0x10)
        csrc_count = first_byte & 0x0F

        offset = _FIXED_HEADER.size
        if len(data) < offset + 4 * csrc_count:
            raise ValueError("RTP CSRC list truncated")
        csrc = list(struct.unpack_from(f"!{csrc_count}I", data, offset))
        offset += 4 * csrc_count

        extension_profile = None
        extension_data = b""
        if extension:
            if len(data) < offset + 4:
                raise ValueError("RTP header extension truncated")
            extension_profile, words = struct.unpack_from("!HH", data, offset)
            offset += 4
            if len(data) < offset + 4 * words:
                raise ValueError("RTP header extension truncated")
            extension_data = data[offset : offset + 4 * words]
            offset += 4 * words

        end = len(data)
        if padding:
            pad_len = data[-1]
            if pad_len == 0 or offset + pad_len > end:
                raise ValueError("Invalid RTP padding length")
            end -= pad_len

        header = RtpHeader(
            payload_type=second_byte & 0x7F,
            sequence_number=seq,
            timestamp=timestamp,
            ssrc=ssrc,
            marker=bool(second_byte & 0x80),
            csrc=csrc,
            extension_profile=extension_profile,
            extension_data=extension_data,
            version=version,
        )
        return cls(header=header, payload=bytes(data[offset:end]))
