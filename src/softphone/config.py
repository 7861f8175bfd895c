"""Softphone settings loaded from the environment (and ``.env``)."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping

from dotenv import load_dotenv

from softphone.errors import ConfigError
from softphone.rtp.srtp import MasterKey, generate_key
from softphone.sip.message import generate_tag

DEFAULT_SIP_PORT = 5061  # SIP over TLS
DEFAULT_USER_AGENT = "softphone/0.1"


def _default_via_host() -> str:
    # RFC 7118 §5: stream clients without a routable address use a .invalid host
    return f"{generate_tag()}.invalid"


@dataclasses.dataclass(frozen=True)
class Settings:
    domain: str
    outbound_proxy: str
    username: str
    password: str
    authorization_id: str = ""
    # Shared by every call this process makes; read-only once loaded
    local_key: str = dataclasses.field(default_factory=generate_key)
    user_agent: str = DEFAULT_USER_AGENT
    via_host: str = dataclasses.field(default_factory=_default_via_host)

    @property
    def auth_username(self) -> str:
        return self.authorization_id or self.username

    @property
    def proxy_address(self) -> tuple[str, int]:
        host, sep, port = self.outbound_proxy.rpartition(":")
        if not sep:
            return self.outbound_proxy, DEFAULT_SIP_PORT
        return host, int(port)


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from ``SIP_INFO_*`` variables.

    When ``environ`` is omitted, ``.env`` is loaded into ``os.environ`` first.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    missing = [
        name
        for name in ("SIP_INFO_DOMAIN", "SIP_INFO_USERNAME", "SIP_INFO_PASSWORD")
        if not environ.get(name)
    ]
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    domain = environ["SIP_INFO_DOMAIN"]
    local_key = environ.get("SRTP_LOCAL_KEY") or generate_key()
    try:
        MasterKey.from_base64(local_key)
    except ValueError as exc:
        raise ConfigError(f"SRTP_LOCAL_KEY is invalid: {exc}") from exc

    proxy = environ.get("SIP_INFO_OUTBOUND_PROXY") or f"{domain}:{DEFAULT_SIP_PORT}"
    _, sep, port = proxy.rpartition(":")
    if sep and not port.isdigit():
        raise ConfigError(f"SIP_INFO_OUTBOUND_PROXY is invalid: {proxy!r}")

    return Settings(
        domain=domain,
        outbound_proxy=proxy,
        username=environ["SIP_INFO_USERNAME"],
        password=environ["SIP_INFO_PASSWORD"],
        authorization_id=environ.get("SIP_INFO_AUTHORIZATION_ID", ""),
        local_key=local_key,
        user_agent=environ.get("SIP_USER_AGENT") or DEFAULT_USER_AGENT,
    )
