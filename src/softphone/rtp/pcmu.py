"""μ-law (G.711 PCMU) encoder/decoder and test tone generator."""

import math
import struct

SAMPLE_RATE = 8000
ULAW_BIAS = 0x84
ULAW_CLIP = 32635
SILENCE = 0xFF


def linear_to_ulaw(sample: int) -> int:
    """Convert a 16-bit signed PCM sample to 8-bit μ-law."""
    sign = 0
    if sample < 0:
        sign = 0x80
        sample = -sample
    if sample > ULAW_CLIP:
        sample = ULAW_CLIP
    sample += ULAW_BIAS

    exponent = 7
    mask = 0x4000
    while exponent > 0 and not (sample & mask):
        exponent -= 1
        mask >>= 1

    mantissa = (sample >> (exponent + 3)) & 0x0F
    byte = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return byte


def ulaw_to_linear(byte: int) -> int:
    """Convert an 8-bit μ-law value to a 16-bit signed PCM sample."""
    byte = ~byte & 0xFF
    sign = byte & 0x80
    exponent = (byte >> 4) & 0x07
    mantissa = byte & 0x0F
    sample = (((mantissa << 3) + ULAW_BIAS) << exponent) - ULAW_BIAS
    return -sample if sign else sample


# Decoding happens per inbound packet, so precompute all 256 values
_DECODE_TABLE = [ulaw_to_linear(b) for b in range(256)]


def pcm_to_ulaw(pcm: bytes) -> bytes:
    """Encode little-endian 16-bit PCM to μ-law."""
    count = len(pcm) // 2
    samples = struct.unpack(f"<{count}h", pcm[: count * 2])
    return bytes(linear_to_ulaw(s) for s in samples)


def ulaw_to_pcm(ulaw: bytes) -> bytes:
    """Decode μ-law to little-endian 16-bit PCM."""
    return struct.pack(f"<{len(ulaw)}h", *(_DECODE_TABLE[b] for b in ulaw))


def tone(freq: float = 440.0, duration_s: float = 1.0, amplitude: int = 8000) -> bytes:
    """Render a sine tone directly to μ-law at 8 kHz."""
    n = int(SAMPLE_RATE * duration_s)
    return bytes(
        linear_to_ulaw(int(amplitude * math.sin(2.0 * math.pi * freq * i / SAMPLE_RATE)))
        for i in range(n)
    )
