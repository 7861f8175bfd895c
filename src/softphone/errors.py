"""Exception taxonomy for call sessions and signaling."""

from __future__ import annotations


class SoftphoneError(Exception):
    """Base class for all softphone errors."""


class ConfigError(SoftphoneError):
    """Required configuration is missing or invalid."""


class MalformedOfferError(SoftphoneError, ValueError):
    """Session description lacks the connection address or audio port."""


class InvalidDtmfCharError(SoftphoneError, ValueError):
    """DTMF character outside 0-9, * and #."""


class TransportNotReadyError(SoftphoneError, RuntimeError):
    """Media operation attempted before the remote SRTP key is known."""


class RegistrationError(SoftphoneError):
    """REGISTER was rejected by the registrar."""

    def __init__(self, status_code: int, reason: str) -> None:
        super().__init__(f"Registration failed: {status_code} {reason}")
        self.status_code = status_code
        self.reason = reason


class CallFailedError(SoftphoneError):
    """Outbound INVITE got a final failure before any session existed."""

    def __init__(self, status_code: int, reason: str) -> None:
        super().__init__(f"Call failed: {status_code} {reason}")
        self.status_code = status_code
        self.reason = reason
