"""Paced RTP playback of a pre-recorded μ-law buffer into a call."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import TYPE_CHECKING

from softphone.rtp.packet import PAYLOAD_TYPE_PCMU, RtpHeader, RtpPacket, next_ssrc

if TYPE_CHECKING:
    from softphone.call.session import CallSession

logger = logging.getLogger(__name__)

PTIME_MS = 20
SAMPLES_PER_PACKET = 160  # 8000 Hz * 20ms


class AudioStreamer:
    """Sends 8 kHz μ-law audio over the session's SRTP transport at 20ms intervals.

    Only whole 160-byte frames are sent; a shorter tail is dropped.  The
    streamer checks the session before every frame and stops once it has
    been disposed.
    """

    def __init__(self, session: CallSession, audio_buf: bytes) -> None:
        self._session = session
        self._audio_buf = audio_buf
        self._task: asyncio.Task[None] | None = None
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._ssrc = next_ssrc()
        self._initial_seq = random.randint(0, 0xFFFF)
        self._initial_timestamp = int(time.time())
        self.finished: asyncio.Future[None] = (
            asyncio.get_running_loop().create_future()
        )
        self.packets_sent = 0

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._send_loop())
        logger.info(
            "Audio stream started for call %s (%d bytes)",
            self._session.call_id,
            len(self._audio_buf),
        )

    async def _send_loop(self) -> None:
        seq = self._initial_seq
        timestamp = self._initial_timestamp
        offset = 0
        buf_len = len(self._audio_buf)
        first_packet = True

        next_send_time = time.monotonic()

        try:
            while offset + SAMPLES_PER_PACKET <= buf_len:
                if self.paused:
                    await self._resumed.wait()
                    next_send_time = time.monotonic()
                if self._session.disposed:
                    logger.info(
                        "Call %s disposed, stopping stream", self._session.call_id
                    )
                    break
                header = RtpHeader(
                    payload_type=PAYLOAD_TYPE_PCMU,
                    sequence_number=seq,
                    timestamp=timestamp,
                    ssrc=self._ssrc,
                    marker=first_packet,
                )
                payload = self._audio_buf[offset : offset + SAMPLES_PER_PACKET]
                self._session.media.encrypt_and_send(RtpPacket(header, payload))
                self.packets_sent += 1
                first_packet = False
                seq = (seq + 1) & 0xFFFF
                timestamp = (timestamp + SAMPLES_PER_PACKET) & 0xFFFFFFFF
                offset += SAMPLES_PER_PACKET

                # Wall-clock timing: sleep until absolute deadline
                next_send_time += PTIME_MS / 1000.0
                sleep_duration = next_send_time - time.monotonic()
                if sleep_duration > 0:
                    await asyncio.sleep(sleep_duration)
        except Exception:
            logger.exception(
                "Audio stream for call %s failed", self._session.call_id
            )
        finally:
            logger.info("Audio stream finished (%d packets sent)", self.packets_sent)
            self._task = None
            if not self.finished.done():
                self.finished.set_result(None)

    def pause(self) -> None:
        self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        # Resolve finished so awaiting callers don't hang
        if not self.finished.done():
            self.finished.set_result(None)
        logger.info("Audio stream stopped")
