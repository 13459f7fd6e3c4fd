"""Authentication error taxonomy.

Every provider reports failures through these types so callers see the
same errors regardless of grant type. Messages are sanitized on
construction and never carry tokens or client secrets.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any


class OAuth2ErrorCode(str, Enum):
    """Standard OAuth 2.0 error codes (RFC 6749 section 5.2)."""

    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_SCOPE = "invalid_scope"
    ACCESS_DENIED = "access_denied"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"


class AuthErrorCode(str, Enum):
    """Error codes beyond the OAuth 2.0 set."""

    CONFIGURATION_ERROR = "configuration_error"
    INVALID_STATE = "invalid_state"
    AUTHORIZATION_TIMEOUT = "authorization_timeout"
    STORAGE_INCONSISTENCY = "storage_inconsistency"
    PROVIDER_DESTROYED = "provider_destroyed"
    NETWORK_ERROR = "network_error"
    UNKNOWN_ERROR = "unknown_error"


ErrorCode = OAuth2ErrorCode | AuthErrorCode

_SANITIZE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bBearer\s+[A-Za-z0-9._~+/-]+=*", re.IGNORECASE), "Bearer [REDACTED]"),
    (re.compile(r"\baccess_token[=:]\s*[^\s&]+", re.IGNORECASE), "access_token=[REDACTED]"),
    (re.compile(r"\brefresh_token[=:]\s*[^\s&]+", re.IGNORECASE), "refresh_token=[REDACTED]"),
    (re.compile(r"\bclient_secret[=:]\s*[^\s&]+", re.IGNORECASE), "client_secret=[REDACTED]"),
    (re.compile(r"\bcode_verifier[=:]\s*[^\s&]+", re.IGNORECASE), "code_verifier=[REDACTED]"),
    (re.compile(r"\bpassword[=:]\s*[^\s&]+", re.IGNORECASE), "password=[REDACTED]"),
]


def sanitize_message(message: str) -> str:
    """Strip credential-looking fragments from an error message."""
    for pattern, replacement in _SANITIZE_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class AuthenticationError(Exception):
    """Base class for every authentication failure.

    Attributes:
        message: Sanitized human-readable message
        code: OAuth 2.0 or framework error code
        cause: Underlying exception, if any
    """

    default_code: ErrorCode = AuthErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.message = sanitize_message(message)
        self.code = code or self.default_code
        self.cause = cause
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Structured representation for logging."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "cause": sanitize_message(str(self.cause)) if self.cause else None,
        }


class ConfigurationError(AuthenticationError):
    """Provider configuration is missing a field or has a malformed URL."""

    default_code = AuthErrorCode.CONFIGURATION_ERROR


class InvalidStateError(AuthenticationError):
    """A callback presented an unknown, expired or already settled state."""

    default_code = AuthErrorCode.INVALID_STATE

    def __init__(
        self,
        message: str = "Invalid or expired OAuth state",
        code: ErrorCode | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, code, cause)


class AuthorizationTimeoutError(AuthenticationError):
    """No callback arrived before the flow's deadline."""

    default_code = AuthErrorCode.AUTHORIZATION_TIMEOUT


class TokenExchangeError(AuthenticationError):
    """The token endpoint rejected the request or answered with garbage.

    Attributes:
        status_code: HTTP status of the token endpoint response, if any
        description: ``error_description`` reported by the server
        retryable: True when the failure was a transport error
    """

    default_code = OAuth2ErrorCode.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        cause: BaseException | None = None,
        status_code: int | None = None,
        description: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, code, cause)
        self.status_code = status_code
        self.description = sanitize_message(description) if description else None
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["retryable"] = self.retryable
        return data


class StorageInconsistencyError(AuthenticationError):
    """Token acquisition succeeded but storage does not return the token."""

    default_code = AuthErrorCode.STORAGE_INCONSISTENCY


class FlowTeardownError(AuthenticationError):
    """The provider was destroyed while the flow was still pending."""

    default_code = AuthErrorCode.PROVIDER_DESTROYED
