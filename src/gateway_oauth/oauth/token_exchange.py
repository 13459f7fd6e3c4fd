"""Token endpoint wire protocol.

Builds form-encoded token requests (RFC 6749 sections 4.1.3 and 4.4.2),
sends them with httpx, and turns every failure into a TokenExchangeError
so callers never see raw HTTP or parse exceptions.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from gateway_oauth.errors import (
    AuthenticationError,
    AuthErrorCode,
    OAuth2ErrorCode,
    TokenExchangeError,
)
from gateway_oauth.logging_config import get_logger
from gateway_oauth.security import mask_sensitive_data

logger = get_logger(__name__)

# Lifetime applied when the token endpoint omits expires_in
DEFAULT_EXPIRES_IN = 3600

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass(frozen=True)
class TokenData:
    """Most recent token issued to a provider.

    ``expires_at`` is always set; a default lifetime is applied when the
    server does not report one.
    """

    access_token: str = field(repr=False)
    token_type: str
    expires_at: datetime
    refresh_token: str | None = field(default=None, repr=False)
    scope: str | None = None

    def is_expired(self, buffer: timedelta = timedelta(0)) -> bool:
        """Check if the token is expired, optionally ahead of time."""
        return datetime.now(UTC) >= (self.expires_at - buffer)

    @property
    def authorization_header(self) -> str:
        """Value for the Authorization header."""
        return f"{self.token_type} {self.access_token}"


def _expires_in_seconds(raw: Any, default: int) -> float:
    if isinstance(raw, bool):
        return float(default)
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return float(default)
    if not math.isfinite(seconds):
        return float(default)
    return max(seconds, 0.0)


def parse_token_response(
    payload: Any,
    default_expires_in: int = DEFAULT_EXPIRES_IN,
) -> TokenData:
    """Validate a token endpoint response and convert it to TokenData.

    Args:
        payload: Decoded JSON body of the token response
        default_expires_in: Lifetime to use if expires_in is absent

    Returns:
        TokenData with an absolute expiry

    Raises:
        TokenExchangeError: If access_token or token_type is missing
    """
    if not isinstance(payload, dict):
        raise TokenExchangeError("OAuth2 token response is not a JSON object")

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise TokenExchangeError("OAuth2 token response missing access_token field")

    token_type = payload.get("token_type")
    if not isinstance(token_type, str) or not token_type:
        raise TokenExchangeError("OAuth2 token response missing token_type field")
    if token_type.lower() == "bearer":
        token_type = "Bearer"

    expires_in = _expires_in_seconds(payload.get("expires_in"), default_expires_in)

    return TokenData(
        access_token=access_token,
        token_type=token_type,
        expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        refresh_token=payload.get("refresh_token") or None,
        scope=payload.get("scope") or None,
    )


def build_authorization_code_body(
    code: str,
    code_verifier: str,
    redirect_uri: str,
    client_id: str,
    client_secret: str | None = None,
) -> dict[str, str]:
    """Form fields for exchanging an authorization code (RFC 6749 4.1.3)."""
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": code_verifier,
    }
    if client_secret:
        data["client_secret"] = client_secret
    return data


def build_client_credentials_body(
    client_id: str,
    client_secret: str,
    scope: str | None = None,
    audience: str | None = None,
) -> dict[str, str]:
    """Form fields for the client credentials grant (RFC 6749 4.4.2)."""
    data = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
    }
    if scope:
        data["scope"] = scope
    if audience:
        data["audience"] = audience
    return data


def build_token_request_headers(request_id: str | None = None) -> dict[str, str]:
    """Headers for a token endpoint POST."""
    headers = {
        "Content-Type": FORM_CONTENT_TYPE,
        "Accept": "application/json",
    }
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


def _status_error_code(status_code: int) -> OAuth2ErrorCode:
    if status_code == 401:
        return OAuth2ErrorCode.INVALID_CLIENT
    if status_code == 503:
        return OAuth2ErrorCode.TEMPORARILY_UNAVAILABLE
    if status_code >= 500:
        return OAuth2ErrorCode.SERVER_ERROR
    return OAuth2ErrorCode.INVALID_REQUEST


def token_error_from_response(
    response: httpx.Response,
    cause: BaseException | None = None,
) -> TokenExchangeError:
    """Map a non-success token endpoint response to a TokenExchangeError.

    Uses the RFC 6749 section 5.2 ``error`` code when the body carries
    one, otherwise derives a code from the HTTP status.
    """
    error_name: str | None = None
    description: str | None = None
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        if isinstance(body.get("error"), str):
            error_name = body["error"]
        if isinstance(body.get("error_description"), str):
            description = body["error_description"]
        logger.debug("Token endpoint error body: %s", mask_sensitive_data(body))

    try:
        code = OAuth2ErrorCode(error_name) if error_name else _status_error_code(
            response.status_code
        )
    except ValueError:
        code = _status_error_code(response.status_code)

    message = f"Token exchange failed: {response.status_code}"
    if error_name:
        message += f" {error_name}"
    if description:
        message += f" - {description}"

    return TokenExchangeError(
        message,
        code,
        cause=cause,
        status_code=response.status_code,
        description=description,
    )


def map_token_error(
    error: BaseException,
    response: httpx.Response | None = None,
) -> AuthenticationError:
    """Normalize any token endpoint failure into the shared taxonomy.

    Args:
        error: Exception raised while talking to the token endpoint
        response: Response received before the failure, if any

    Returns:
        AuthenticationError to raise in place of ``error``
    """
    if isinstance(error, AuthenticationError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        return token_error_from_response(error.response, cause=error)

    if isinstance(error, httpx.TransportError):
        return TokenExchangeError(
            f"Network error during token request: {error}",
            AuthErrorCode.NETWORK_ERROR,
            cause=error,
            retryable=True,
        )

    if isinstance(error, ValueError):
        return TokenExchangeError(
            "Failed to parse OAuth2 token response: invalid JSON",
            AuthErrorCode.UNKNOWN_ERROR,
            cause=error,
            status_code=response.status_code if response is not None else None,
        )

    return TokenExchangeError(
        f"Token request error: {error}",
        AuthErrorCode.UNKNOWN_ERROR,
        cause=error,
    )


async def request_token(
    client: httpx.AsyncClient,
    token_endpoint: str,
    data: dict[str, str],
    headers: dict[str, str],
) -> dict[str, Any]:
    """POST a token request and return the decoded JSON body.

    Args:
        client: HTTP client to send the request with
        token_endpoint: Token endpoint URL
        data: Form fields
        headers: Request headers

    Returns:
        Decoded token response

    Raises:
        TokenExchangeError: On any HTTP, transport or parse failure
    """
    response: httpx.Response | None = None
    try:
        response = await client.post(token_endpoint, data=data, headers=headers)
        response.raise_for_status()
        payload = response.json()
    except Exception as e:
        mapped = map_token_error(e, response)
        if response is not None:
            logger.error(
                "Token request to %s failed: %s %s",
                token_endpoint,
                response.status_code,
                response.reason_phrase,
            )
        else:
            logger.error("Token request to %s failed: %s", token_endpoint, mapped)
        raise mapped from e

    if not isinstance(payload, dict):
        raise TokenExchangeError(
            "OAuth2 token response is not a JSON object",
            status_code=response.status_code,
        )

    logger.debug(
        "Token endpoint %s answered (scope: %s)",
        token_endpoint,
        payload.get("scope", "N/A"),
    )
    return payload
