#!/usr/bin/env python3
"""
Error taxonomy for SEEDRELAY

Every failure the server can report maps to one exception class here. Each
class carries the HTTP status and the machine-readable code the browser
receives, so the UI can tell a wrong password apart from a misconfigured
server, an unreachable daemon, or a torrent the daemon refused.
"""

from enum import Enum
from typing import Any, Optional


class RelayError(Exception):
    """Base class for errors rendered as ``{error, code, details?}``"""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, details: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class BadRequestError(RelayError):
    """Malformed client input; no outbound call was made"""
    status_code = 400
    code = "bad_request"


class PayloadTooLargeError(RelayError):
    """Uploaded file exceeds the configured size limit"""
    status_code = 413
    code = "payload_too_large"


class UnauthenticatedError(RelayError):
    """Missing, malformed, or expired session token"""
    status_code = 401
    code = "unauthenticated"

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class ConfigError(RelayError):
    """Required server settings are absent"""
    status_code = 500
    code = "config_error"


class AuthErrorKind(Enum):
    """Why the identity provider did not yield a user"""
    REJECTED = "rejected"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INVALID_RESPONSE = "invalid_response"


class AuthError(RelayError):
    """Identity provider rejected the credentials or could not be used"""

    _CODES = {
        AuthErrorKind.REJECTED: ("auth_failed", 401),
        AuthErrorKind.UPSTREAM_UNAVAILABLE: ("identity_provider_unavailable", 500),
        AuthErrorKind.INVALID_RESPONSE: ("identity_provider_invalid_response", 502),
    }

    def __init__(self, kind: AuthErrorKind, message: str, details: Any = None,
                 status_code: Optional[int] = None):
        code, default_status = self._CODES[kind]
        super().__init__(message, details=details, status_code=status_code or default_status)
        self.kind = kind
        self.code = code


class SubmitErrorKind(Enum):
    """Why a torrent submission to the daemon failed"""
    HANDSHAKE_FAILED = "handshake_failed"
    PROTOCOL_VIOLATION = "protocol_violation"
    TRANSPORT_FAILURE = "transport_failure"


class SubmitError(RelayError):
    """
    The daemon handshake did not produce a result.

    ``upstream_status`` is the daemon's HTTP status when it answered at all;
    a transport failure without one means no response was received (connection
    refused, timeout) and is reported as a gateway timeout.
    """

    def __init__(self, kind: SubmitErrorKind, message: str, details: Any = None,
                 upstream_status: Optional[int] = None):
        super().__init__(message, details=details)
        self.kind = kind
        self.upstream_status = upstream_status

        if kind is SubmitErrorKind.TRANSPORT_FAILURE:
            if upstream_status is None:
                self.code, self.status_code = "daemon_unreachable", 504
            else:
                self.code, self.status_code = "daemon_error", 502
        else:
            self.code, self.status_code = kind.value, 502


class DaemonRejectedError(RelayError):
    """Daemon was reached and answered, but declined the torrent"""
    status_code = 400
    code = "daemon_rejected"
