"""Softphone demo: register, call CALLEE_FOR_TESTING and record the callee."""

import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

from softphone.config import load_settings
from softphone.phone import Softphone
from softphone.rtp.packet import RtpPacket
from softphone.rtp.pcmu import SILENCE, tone
from softphone.rtp.stream import SAMPLES_PER_PACKET

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def main() -> None:
    load_dotenv()
    settings = load_settings()
    callee = os.environ["CALLEE_FOR_TESTING"]
    caller_id = os.environ.get("CALLER_ID_FOR_TESTING") or None

    loop = asyncio.get_running_loop()
    silence_prefix = bytes([SILENCE]) * (SAMPLES_PER_PACKET * 4)
    greeting = silence_prefix + await loop.run_in_executor(
        None, lambda: tone(440.0, 2.0)
    )

    phone = Softphone(settings)
    await phone.connect()
    await phone.register()

    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    session = await phone.call(callee, caller_id)
    recording = open(f"{session.call_id}.raw", "ab")

    def on_audio(packet: RtpPacket) -> None:
        recording.write(packet.payload)

    def on_answered() -> None:
        logger.info("Callee answered, playing greeting")
        session.stream_audio(greeting)

    def on_disposed() -> None:
        recording.close()
        shutdown.set()

    session.on("audio_packet", on_audio)
    session.on("dtmf", lambda char: logger.info("DTMF %s", char))
    session.once("answered", on_answered)
    session.once("disposed", on_disposed)

    try:
        await shutdown.wait()
        logger.info("Shutting down...")
    finally:
        session.hangup()
        session.dispose()
        if not recording.closed:
            recording.close()
        await phone.close()


if __name__ == "__main__":
    asyncio.run(main())
