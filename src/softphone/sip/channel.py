"""Shared signaling channel with explicit per-listener subscriptions.

Every inbound SIP message is offered to each active subscription; a
subscription only sees messages its predicate accepts, so concurrent calls
multiplexed on one connection never observe each other's traffic.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Callable

from softphone.sip.message import SipMessage, content_length, parse_message

logger = logging.getLogger(__name__)

Predicate = Callable[[SipMessage], bool]
Handler = Callable[[SipMessage], None]


def for_call(call_id: str) -> Predicate:
    return lambda msg: msg.call_id == call_id


def is_request(method: str) -> Predicate:
    method = method.upper()
    return lambda msg: not msg.is_response and msg.method.upper() == method


def all_of(*predicates: Predicate) -> Predicate:
    return lambda msg: all(p(msg) for p in predicates)


class Subscription:
    """Handle returned by :meth:`SignalingChannel.subscribe`."""

    def __init__(
        self, channel: SignalingChannel, predicate: Predicate, callback: Handler
    ) -> None:
        self._channel = channel
        self.predicate = predicate
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._channel._remove(self)


class SignalingChannel:
    def __init__(self, send: Callable[[bytes], None]) -> None:
        self._send = send
        self._subscriptions: list[Subscription] = []

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def send(self, data: bytes) -> None:
        logger.debug("Sending:\n%s", data.decode("utf-8", errors="replace"))
        self._send(data)

    def subscribe(self, predicate: Predicate, callback: Handler) -> Subscription:
        subscription = Subscription(self, predicate, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def wait_for(self, predicate: Predicate) -> asyncio.Future[SipMessage]:
        """Future resolved by the next message matching ``predicate``."""
        future: asyncio.Future[SipMessage] = (
            asyncio.get_running_loop().create_future()
        )

        def _resolve(msg: SipMessage) -> None:
            subscription.unsubscribe()
            if not future.done():
                future.set_result(msg)

        subscription = self.subscribe(predicate, _resolve)
        # Cancelled or timed-out waiters must not leak their subscription
        future.add_done_callback(lambda _f: subscription.unsubscribe())
        return future

    def dispatch(self, msg: SipMessage) -> None:
        """Offer an inbound message to every matching subscription."""
        logger.info("Received %s (Call-ID %s)", msg.subject, msg.call_id)
        # Snapshot: callbacks may subscribe or unsubscribe while we iterate
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                if subscription.predicate(msg):
                    subscription.callback(msg)
            except Exception:
                logger.exception("Subscriber failed handling %s", msg.subject)


async def read_message(reader: asyncio.StreamReader) -> bytes:
    """Read one SIP message from a stream, skipping CRLF keepalives.

    Raises asyncio.IncompleteReadError when the stream ends.
    """
    while True:
        head = await reader.readuntil(b"\r\n\r\n")
        # RFC 5626 §4.4.1: bare CRLFs between messages are keepalives
        head = head.lstrip(b"\r\n")
        if head:
            break
    body = await reader.readexactly(content_length(head))
    return head + body


class SipConnection:
    """SIP over a TCP/TLS stream, framed by Content-Length (RFC 3261 §18.3)."""

    def __init__(self, on_message: Handler) -> None:
        self._on_message = on_message
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def local_address(self) -> str:
        if self._writer is None:
            raise RuntimeError("SIP connection is not open")
        return self._writer.get_extra_info("sockname")[0]

    async def open(
        self, host: str, port: int, *, ssl_context: ssl.SSLContext | None = None
    ) -> None:
        self._reader, self._writer = await asyncio.open_connection(
            host, port, ssl=ssl_context
        )
        self._task = asyncio.get_running_loop().create_task(self._read_loop())
        logger.info("SIP connection open to %s:%d", host, port)

    def write(self, data: bytes) -> None:
        if self._writer is None:
            raise RuntimeError("SIP connection is not open")
        self._writer.write(data)

    async def _read_loop(self) -> None:
        assert self._reader is not None
        while True:
            try:
                data = await read_message(self._reader)
            except asyncio.IncompleteReadError:
                logger.info("SIP connection closed by peer")
                return
            logger.debug("Raw:\n%s", data.decode("utf-8", errors="replace"))
            try:
                msg = parse_message(data)
            except Exception:
                logger.exception("Failed to parse SIP message")
                continue
            self._on_message(msg)

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, ssl.SSLError) as exc:
                logger.debug("Error while closing SIP connection: %s", exc)
            self._writer = None
