"""Opus payload decoding backed by opuslib."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

OPUS_SAMPLE_RATE = 48000
OPUS_CHANNELS = 2
# Largest Opus frame duration
MAX_FRAME_MS = 120


class OpusDecoder:
    """Decodes Opus packets to interleaved 16-bit PCM.

    opuslib needs the native libopus at import time, so the decoder is
    created on the first call to :meth:`decode`.
    """

    def __init__(
        self, sample_rate: int = OPUS_SAMPLE_RATE, channels: int = OPUS_CHANNELS
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._decoder = None

    def _init_decoder(self) -> None:
        import opuslib

        self._decoder = opuslib.Decoder(self.sample_rate, self.channels)
        logger.debug(
            "Opus decoder initialized (%d Hz, %d ch)", self.sample_rate, self.channels
        )

    def decode(self, payload: bytes) -> bytes:
        if not payload:
            raise ValueError("Empty Opus payload")
        if self._decoder is None:
            self._init_decoder()
        return self._decoder.decode(payload, self.sample_rate * MAX_FRAME_MS // 1000)
