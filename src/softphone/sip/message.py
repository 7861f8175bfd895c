"""SIP message parser and request/response builders."""

from __future__ import annotations

import dataclasses
import random
import re
import string

# RFC 3261 §7.3.3: compact header forms; implementations MUST accept
# both long and short forms of each header name (§20 defines the mappings)
_COMPACT_HEADERS = {
    "v": "Via",
    "f": "From",
    "t": "To",
    "i": "Call-ID",
    "m": "Contact",
    "l": "Content-Length",
    "c": "Content-Type",
}

SIP_VERSION = "SIP/2.0"


@dataclasses.dataclass
class SipMessage:
    """Parsed SIP request or response.

    Requests fill ``method`` and ``uri``; responses fill ``status_code``
    and ``reason`` and leave ``method`` empty.
    """

    headers: list[tuple[str, str]]
    body: str
    method: str = ""
    uri: str = ""
    status_code: int | None = None
    reason: str = ""
    version: str = SIP_VERSION

    @property
    def is_response(self) -> bool:
        return self.status_code is not None

    @property
    def subject(self) -> str:
        """The start line, e.g. ``INVITE sip:101@example.com SIP/2.0``."""
        if self.is_response:
            return f"{self.version} {self.status_code} {self.reason}"
        return f"{self.method} {self.uri} {self.version}"

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup (returns first match).

        RFC 3261 §7.3.1: header field names are always case-insensitive.
        """
        lower = name.lower()
        for key, value in self.headers:
            if key.lower() == lower:
                return value
        return None

    @property
    def call_id(self) -> str:
        return self.header("Call-ID") or ""

    @property
    def cseq(self) -> tuple[int, str]:
        """(sequence number, method) from the CSeq header (RFC 3261 §20.16)."""
        value = (self.header("CSeq") or "").split()
        if len(value) != 2 or not value[0].isdigit():
            return 0, ""
        return int(value[0]), value[1].upper()


def parse_message(data: bytes) -> SipMessage:
    """Parse a SIP message (request or response) from raw bytes."""
    # RFC 3261 §7: SIP is UTF-8 text; messages use CRLF line endings
    text = data.decode("utf-8", errors="replace")
    # RFC 3261 §7: empty line (CRLF CRLF) separates headers from body
    head, _, body = text.partition("\r\n\r\n")
    lines = head.split("\r\n")

    headers: list[tuple[str, str]] = []
    for line in lines[1:]:
        if ":" in line:
            key, _, value = line.partition(":")
            key = key.strip()
            # RFC 3261 §7.3.3: expand compact header forms to canonical names
            key = _COMPACT_HEADERS.get(key, key)
            headers.append((key, value.strip()))

    start_line = lines[0]
    parts = start_line.split(" ", 2)
    # RFC 3261 §7.2: Status-Line = SIP-Version SP Status-Code SP Reason-Phrase
    if parts[0].startswith("SIP/") and len(parts) > 1 and parts[1].isdigit():
        return SipMessage(
            headers=headers,
            body=body,
            status_code=int(parts[1]),
            reason=parts[2] if len(parts) > 2 else "",
            version=parts[0],
        )

    # RFC 3261 §7.1: Request-Line = Method SP Request-URI SP SIP-Version CRLF
    return SipMessage(
        headers=headers,
        body=body,
        method=parts[0],
        uri=parts[1] if len(parts) > 1 else "",
        version=parts[2] if len(parts) > 2 else SIP_VERSION,
    )


def _encode_message(lines: list[str], body: str, content_type: str) -> bytes:
    """Encode header lines + body into a complete SIP message."""
    body_bytes = body.encode("utf-8") if body else b""
    # RFC 3261 §7.4.1: Content-Type MUST indicate the media type of the body
    if body_bytes:
        lines.append(f"Content-Type: {content_type}")
    # RFC 3261 §7.4.2: Content-Length provides the body length in bytes
    lines.append(f"Content-Length: {len(body_bytes)}")
    # RFC 3261 §7: each line MUST be terminated by CRLF; the empty line
    # separating headers from body MUST be present even if body is empty
    lines.append("")
    msg_bytes = ("\r\n".join(lines) + "\r\n").encode("utf-8")
    if body_bytes:
        msg_bytes += body_bytes
    return msg_bytes


def build_response(
    request: SipMessage,
    status_code: int,
    reason: str,
    body: str = "",
    *,
    to_tag: str | None = None,
    extra_headers: list[tuple[str, str]] | None = None,
    content_type: str = "application/sdp",
) -> bytes:
    """Build a SIP response mirroring key headers from the request."""
    lines = [f"{SIP_VERSION} {status_code} {reason}"]

    # RFC 3261 §8.2.6.2: Via header field values in the response MUST equal
    # those in the request and MUST maintain the same ordering
    for key, value in request.headers:
        if key.lower() == "via":
            lines.append(f"Via: {value}")

    # RFC 3261 §8.2.6.2: From, Call-ID, and CSeq in response MUST equal
    # the corresponding fields from the request
    for hdr in ("From", "Call-ID", "CSeq"):
        value = request.header(hdr)
        if value is not None:
            lines.append(f"{hdr}: {value}")

    # RFC 3261 §8.2.6.2: if the request To has no tag, the UAS MUST add one
    # (except 100 Trying); an existing tag MUST be echoed unchanged
    to_value = request.header("To")
    if to_value is not None:
        if to_tag is not None and ";tag=" not in to_value:
            to_value = f"{to_value};tag={to_tag}"
        lines.append(f"To: {to_value}")

    if extra_headers:
        for hdr_name, hdr_value in extra_headers:
            lines.append(f"{hdr_name}: {hdr_value}")

    return _encode_message(lines, body, content_type)


def build_request(
    method: str,
    uri: str,
    *,
    headers: list[tuple[str, str]],
    body: str = "",
    content_type: str = "application/sdp",
) -> bytes:
    """Build a SIP request message.

    Parameters:
        method: SIP method (e.g. "BYE", "INVITE")
        uri: Request-URI
        headers: List of (name, value) header tuples
        body: Optional message body
        content_type: Content-Type when body is present
    """
    lines = [f"{method} {uri} {SIP_VERSION}"]
    for name, value in headers:
        lines.append(f"{name}: {value}")
    return _encode_message(lines, body, content_type)


# ---------------------------------------------------------------------------
# SIP header/parameter utilities
# ---------------------------------------------------------------------------

_TAG_CHARS = string.ascii_lowercase + string.digits
_ADDRESS_RE = re.compile(r"<sips?:([^>;]+)")


def generate_tag() -> str:
    """Generate a random SIP tag value.

    RFC 3261 §19.3: tags MUST be globally unique and cryptographically random
    with at least 32 bits of randomness.
    """
    return "".join(random.choices(_TAG_CHARS, k=8))


def generate_branch() -> str:
    """Generate a random Via branch parameter.

    RFC 3261 §8.1.1.7: the branch parameter MUST be unique across space and
    time for all requests.  It MUST begin with the magic cookie "z9hG4bK" so
    receivers can identify RFC 3261-compliant transaction IDs (§17.1.3).
    """
    return "z9hG4bK" + "".join(random.choices(_TAG_CHARS, k=8))


def generate_call_id() -> str:
    return "".join(random.choices(_TAG_CHARS, k=24))


def extract_address(peer: str) -> str:
    """Return ``user@host`` from a name-addr such as ``"Bob" <sip:101@x.com>;tag=a``."""
    match = _ADDRESS_RE.search(peer)
    if match is not None:
        return match.group(1)
    # addr-spec form without angle brackets
    value = peer.split(";")[0].strip()
    for scheme in ("sips:", "sip:"):
        if value.startswith(scheme):
            return value[len(scheme) :]
    return value


def content_length(head: bytes) -> int:
    """Read Content-Length (or compact ``l``) from a raw header block."""
    for line in head.split(b"\r\n")[1:]:
        key, sep, value = line.partition(b":")
        if sep and key.strip().lower() in (b"content-length", b"l"):
            return int(value.strip())
    return 0
