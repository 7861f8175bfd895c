"""User agent: one TLS signaling connection shared by every call."""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Callable, Mapping

from softphone.call.inbound import ALLOWED_METHODS, InboundCallSession
from softphone.call.outbound import OutboundCallSession
from softphone.config import Settings
from softphone.errors import CallFailedError, RegistrationError, SoftphoneError
from softphone.rtp.transport import Decoder
from softphone.sip.auth import digest_authorization
from softphone.sip.channel import (
    Predicate,
    SignalingChannel,
    SipConnection,
    all_of,
    for_call,
    is_request,
)
from softphone.sip.message import (
    SipMessage,
    build_request,
    build_response,
    generate_branch,
    generate_call_id,
    generate_tag,
)
from softphone.sip.sdp import build_sdp

logger = logging.getLogger(__name__)

REGISTER_EXPIRES = 600

InviteHandler = Callable[[SipMessage], None]

# RFC 3261 §22.2/§22.3: challenge header -> credentials header
_AUTH_HEADERS = {
    401: ("WWW-Authenticate", "Authorization"),
    407: ("Proxy-Authenticate", "Proxy-Authorization"),
}


def _response_to(call_id: str, cseq: int, method: str) -> Predicate:
    return all_of(
        for_call(call_id),
        lambda msg: msg.is_response and msg.cseq == (cseq, method),
    )


def _is_initial_invite(msg: SipMessage) -> bool:
    # re-INVITEs carry the dialog's To tag
    return ";tag=" not in (msg.header("To") or "")


def _status_of(response: SipMessage) -> int:
    if response.status_code is None:
        raise SoftphoneError(f"Expected a SIP response, got {response.subject}")
    return response.status_code


class Softphone:
    """Registers with the provider, places calls and accepts incoming ones.

    Usage::

        phone = Softphone(load_settings())
        await phone.connect()
        await phone.register()
        session = await phone.call("5551234")
    """

    def __init__(
        self,
        settings: Settings,
        *,
        decoders: Mapping[int, Decoder] | None = None,
    ) -> None:
        self.settings = settings
        self._decoders = decoders
        self.channel = SignalingChannel(self._write)
        self._connection = SipConnection(self.channel.dispatch)
        self._invite_handlers: list[InviteHandler] = []
        self._register_call_id = generate_call_id()
        self._register_tag = generate_tag()
        self._register_cseq = 0
        self.channel.subscribe(
            all_of(is_request("INVITE"), _is_initial_invite), self._on_invite
        )
        self.channel.subscribe(is_request("OPTIONS"), self._on_options)

    def _write(self, data: bytes) -> None:
        self._connection.write(data)

    @property
    def local_ip(self) -> str:
        """Address of our end of the signaling connection."""
        return self._connection.local_address

    @property
    def _address_of_record(self) -> str:
        return f"sip:{self.settings.username}@{self.settings.domain}"

    @property
    def _contact(self) -> str:
        return f"<sip:{self.settings.username}@{self.settings.via_host};transport=tls>"

    def _via(self) -> str:
        return f"SIP/2.0/TLS {self.settings.via_host};branch={generate_branch()}"

    # ------------------------------------------------------------------
    # Connection and registration
    # ------------------------------------------------------------------

    async def connect(self, ssl_context: ssl.SSLContext | None = None) -> None:
        host, port = self.settings.proxy_address
        if ssl_context is None:
            ssl_context = ssl.create_default_context()
        await self._connection.open(host, port, ssl_context=ssl_context)

    async def register(self, expires: int = REGISTER_EXPIRES) -> None:
        """Register our Contact; a digest challenge is answered once."""
        uri = f"sip:{self.settings.domain}"
        response = await self._register(uri, expires)
        status = _status_of(response)
        if status in _AUTH_HEADERS:
            credentials = self._answer_challenge(response, status, "REGISTER", uri)
            if credentials is None:
                raise RegistrationError(status, response.reason)
            response = await self._register(uri, expires, credentials)
            status = _status_of(response)
        if not 200 <= status < 300:
            raise RegistrationError(status, response.reason)
        logger.info("Registered %s for %ds", self._address_of_record, expires)

    async def _register(
        self,
        uri: str,
        expires: int,
        credentials: tuple[str, str] | None = None,
    ) -> SipMessage:
        self._register_cseq += 1
        final = self.channel.wait_for(
            all_of(
                _response_to(self._register_call_id, self._register_cseq, "REGISTER"),
                lambda msg: msg.status_code is not None and msg.status_code >= 200,
            )
        )
        headers = [
            ("Via", self._via()),
            ("From", f"<{self._address_of_record}>;tag={self._register_tag}"),
            ("To", f"<{self._address_of_record}>"),
            ("Call-ID", self._register_call_id),
            ("CSeq", f"{self._register_cseq} REGISTER"),
            ("Contact", self._contact),
            ("Expires", str(expires)),
            ("Max-Forwards", "70"),
            ("User-Agent", self.settings.user_agent),
        ]
        if credentials is not None:
            headers.append(credentials)
        self.channel.send(build_request("REGISTER", uri, headers=headers))
        return await final

    def _answer_challenge(
        self, response: SipMessage, status: int, method: str, uri: str
    ) -> tuple[str, str] | None:
        challenge_header, credentials_header = _AUTH_HEADERS[status]
        challenge = response.header(challenge_header)
        if challenge is None:
            logger.warning("%d without %s header", status, challenge_header)
            return None
        try:
            authorization = digest_authorization(
                challenge,
                method=method,
                uri=uri,
                username=self.settings.auth_username,
                password=self.settings.password,
            )
        except ValueError:
            logger.exception("Unusable %s challenge", method)
            return None
        return credentials_header, authorization

    # ------------------------------------------------------------------
    # Incoming calls
    # ------------------------------------------------------------------

    def on_invite(self, handler: InviteHandler) -> InviteHandler:
        """Register a callback for new incoming calls (usable as a decorator)."""
        self._invite_handlers.append(handler)
        return handler

    def _on_invite(self, msg: SipMessage) -> None:
        # RFC 3261 §8.2.6.1: 100 Trying stops the caller's retransmissions
        self.channel.send(build_response(msg, 100, "Trying"))
        if not self._invite_handlers:
            logger.warning("No handler for incoming call %s", msg.call_id)
            return
        for handler in list(self._invite_handlers):
            handler(msg)

    def _on_options(self, msg: SipMessage) -> None:
        self.channel.send(
            build_response(
                msg,
                200,
                "OK",
                to_tag=generate_tag(),
                extra_headers=[("Allow", ALLOWED_METHODS)],
            )
        )

    async def answer(self, invite: SipMessage) -> InboundCallSession:
        session = InboundCallSession(
            self.channel, invite, self.settings, decoders=self._decoders
        )
        await session.answer(self.local_ip)
        return session

    def decline(self, invite: SipMessage) -> None:
        self.channel.send(build_response(invite, 603, "Decline", to_tag=generate_tag()))
        logger.info("Declined call %s", invite.call_id)

    # ------------------------------------------------------------------
    # Outgoing calls
    # ------------------------------------------------------------------

    async def call(
        self, callee: str, caller_id: str | None = None
    ) -> OutboundCallSession:
        """Place a call and return once the callee's SDP is known.

        The session is returned in the ringing state when the SDP came in a
        provisional response; it emits ``answered`` on the 200 OK.
        Raises CallFailedError if the INVITE fails before that.
        """
        call_id = generate_call_id()
        uri = f"sip:{callee}@{self.settings.domain}"
        from_header = f"<{self._address_of_record}>;tag={generate_tag()}"
        if caller_id:
            from_header = f'"{caller_id}" {from_header}'
        to_header = f"<{uri}>"
        body = build_sdp(self.local_ip, self.settings.local_key)

        responses: asyncio.Queue[SipMessage] = asyncio.Queue()
        subscription = self.channel.subscribe(
            all_of(for_call(call_id), lambda msg: msg.is_response),
            responses.put_nowait,
        )
        cseq = 1
        authenticated = False
        try:
            self._invite(uri, call_id, cseq, from_header, to_header, body)
            while True:
                response = await responses.get()
                status = response.status_code
                if status is None or response.cseq != (cseq, "INVITE"):
                    continue
                if status >= 300:
                    self._ack_failure(response, uri)
                if status in _AUTH_HEADERS and not authenticated:
                    credentials = self._answer_challenge(
                        response, status, "INVITE", uri
                    )
                    if credentials is None:
                        raise CallFailedError(status, response.reason)
                    authenticated = True
                    cseq += 1
                    self._invite(
                        uri, call_id, cseq, from_header, to_header, body, credentials
                    )
                    continue
                if status >= 300:
                    raise CallFailedError(status, response.reason)
                if status >= 200 or response.body.strip():
                    break
                logger.debug("Call %s: %d %s", call_id, status, response.reason)
        finally:
            subscription.unsubscribe()

        session = OutboundCallSession(
            self.channel,
            response,
            self.settings,
            request_uri=uri,
            decoders=self._decoders,
        )
        await session.start_local_services()
        if status >= 200:
            # Answered before ringing: ACK once callers can attach listeners
            asyncio.get_running_loop().call_soon(session.handle_answer, response)
        return session

    def _invite(
        self,
        uri: str,
        call_id: str,
        cseq: int,
        from_header: str,
        to_header: str,
        body: str,
        credentials: tuple[str, str] | None = None,
    ) -> None:
        headers = [
            ("Via", self._via()),
            ("From", from_header),
            ("To", to_header),
            ("Call-ID", call_id),
            ("CSeq", f"{cseq} INVITE"),
            ("Contact", self._contact),
            ("Allow", ALLOWED_METHODS),
            ("Max-Forwards", "70"),
            ("User-Agent", self.settings.user_agent),
        ]
        if credentials is not None:
            headers.append(credentials)
        self.channel.send(build_request("INVITE", uri, headers=headers, body=body))
        logger.info("Call %s: INVITE %s", call_id, uri)

    def _ack_failure(self, response: SipMessage, uri: str) -> None:
        # RFC 3261 §17.1.1.3: same Via branch and CSeq number as the INVITE
        cseq, _ = response.cseq
        headers = [
            ("Via", response.header("Via") or self._via()),
            ("From", response.header("From") or ""),
            ("To", response.header("To") or ""),
            ("Call-ID", response.call_id),
            ("CSeq", f"{cseq} ACK"),
            ("Max-Forwards", "70"),
        ]
        self.channel.send(build_request("ACK", uri, headers=headers))

    async def close(self) -> None:
        await self._connection.close()
        logger.info("Softphone closed")
