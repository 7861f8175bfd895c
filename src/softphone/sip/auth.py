"""SIP Digest authentication (RFC 3261 §22, RFC 2617)."""

from __future__ import annotations

import hashlib
import secrets


def parse_challenge(header: str) -> dict[str, str]:
    """Parse a WWW-Authenticate / Proxy-Authenticate header into parameters."""
    header = header.strip()
    if header.lower().startswith("digest "):
        header = header[len("digest ") :]
    params: dict[str, str] = {}
    for part in _split_params(header):
        key, sep, value = part.partition("=")
        if sep:
            params[key.strip().lower()] = value.strip().strip('"')
    return params


def _split_params(header: str) -> list[str]:
    # Commas may appear inside quoted values (e.g. qop="auth,auth-int")
    parts: list[str] = []
    current: list[str] = []
    quoted = False
    for ch in header:
        if ch == '"':
            quoted = not quoted
        if ch == "," and not quoted:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    if current:
        parts.append("".join(current).strip())
    return [p for p in parts if p]


def _md5(text: str) -> str:
    return hashlib.md5(text.encode()).hexdigest()


def digest_authorization(
    challenge: str,
    *,
    method: str,
    uri: str,
    username: str,
    password: str,
    cnonce: str | None = None,
    nonce_count: int = 1,
) -> str:
    """Build the Authorization value answering a Digest challenge.

    Supports the MD5 algorithm with and without ``qop=auth``.
    """
    params = parse_challenge(challenge)
    realm = params.get("realm")
    nonce = params.get("nonce")
    if not realm or not nonce:
        raise ValueError("Realm or nonce not found in auth header")

    ha1 = _md5(f"{username}:{realm}:{password}")
    ha2 = _md5(f"{method}:{uri}")

    qop_options = [q.strip() for q in params.get("qop", "").split(",") if q.strip()]
    parts = {
        "username": f'"{username}"',
        "realm": f'"{realm}"',
        "nonce": f'"{nonce}"',
        "uri": f'"{uri}"',
    }
    if "auth" in qop_options:
        cnonce = cnonce or secrets.token_hex(8)
        nc = f"{nonce_count:08x}"
        response = _md5(f"{ha1}:{nonce}:{nc}:{cnonce}:auth:{ha2}")
        parts.update({"qop": "auth", "nc": nc, "cnonce": f'"{cnonce}"'})
    else:
        response = _md5(f"{ha1}:{nonce}:{ha2}")
    parts["response"] = f'"{response}"'
    parts["algorithm"] = "MD5"
    if "opaque" in params:
        parts["opaque"] = f'"{params["opaque"]}"'
    return "Digest " + ", ".join(f"{k}={v}" for k, v in parts.items())
