"""Tests for the token endpoint wire protocol."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest
import respx

from gateway_oauth.errors import (
    AuthErrorCode,
    InvalidStateError,
    OAuth2ErrorCode,
    TokenExchangeError,
)
from gateway_oauth.oauth.token_exchange import (
    DEFAULT_EXPIRES_IN,
    TokenData,
    build_authorization_code_body,
    build_client_credentials_body,
    build_token_request_headers,
    map_token_error,
    parse_token_response,
    request_token,
)

TOKEN_URL = "https://auth.example.com/token"


class TestTokenData:
    """Tests for TokenData dataclass."""

    def test_authorization_header(self) -> None:
        """Test header value formatting."""
        token = TokenData("abc", "Bearer", datetime.now(UTC) + timedelta(hours=1))
        assert token.authorization_header == "Bearer abc"

    def test_is_expired(self) -> None:
        """Test expiration check with and without buffer."""
        token = TokenData("abc", "Bearer", datetime.now(UTC) + timedelta(minutes=2))
        assert token.is_expired() is False
        assert token.is_expired(timedelta(minutes=5)) is True

    def test_repr_hides_secrets(self) -> None:
        """Test that repr never shows the token values."""
        token = TokenData("secret-access", "Bearer", datetime.now(UTC), "secret-refresh")
        assert "secret-access" not in repr(token)
        assert "secret-refresh" not in repr(token)


class TestParseTokenResponse:
    """Tests for parse_token_response function."""

    def test_full_response(self) -> None:
        """Test parsing a response with every field."""
        before = datetime.now(UTC)
        token = parse_token_response({
            "access_token": "access123",
            "token_type": "Bearer",
            "expires_in": 120,
            "refresh_token": "refresh123",
            "scope": "read write",
        })

        assert token.access_token == "access123"
        assert token.refresh_token == "refresh123"
        assert token.scope == "read write"
        assert before + timedelta(seconds=119) <= token.expires_at
        assert token.expires_at <= datetime.now(UTC) + timedelta(seconds=120)

    def test_default_expiry_applied(self) -> None:
        """Test that a missing expires_in still yields an expiry."""
        token = parse_token_response({"access_token": "a", "token_type": "Bearer"})

        remaining = (token.expires_at - datetime.now(UTC)).total_seconds()
        assert DEFAULT_EXPIRES_IN - 5 < remaining <= DEFAULT_EXPIRES_IN

    @pytest.mark.parametrize("expires_in", ["soon", None, True])
    def test_invalid_expires_in_uses_default(self, expires_in: object) -> None:
        """Test that unusable expires_in values fall back to the default."""
        token = parse_token_response(
            {"access_token": "a", "token_type": "Bearer", "expires_in": expires_in},
            default_expires_in=60,
        )
        remaining = (token.expires_at - datetime.now(UTC)).total_seconds()
        assert 55 < remaining <= 60

    @pytest.mark.parametrize("expires_in", [0, -10, "0"])
    def test_non_positive_expires_in_is_expired(self, expires_in: object) -> None:
        """Test that a zero or negative lifetime yields an already expired token."""
        token = parse_token_response(
            {"access_token": "a", "token_type": "Bearer", "expires_in": expires_in},
            default_expires_in=60,
        )
        assert token.expires_at <= datetime.now(UTC)
        assert token.is_expired()

    def test_numeric_string_expires_in(self) -> None:
        """Test that servers sending expires_in as a string are accepted."""
        token = parse_token_response(
            {"access_token": "a", "token_type": "Bearer", "expires_in": "600"}
        )
        remaining = (token.expires_at - datetime.now(UTC)).total_seconds()
        assert 595 < remaining <= 600

    def test_normalizes_bearer(self) -> None:
        """Test that lowercase bearer is normalized."""
        token = parse_token_response({"access_token": "a", "token_type": "bearer"})
        assert token.token_type == "Bearer"
        assert token.authorization_header == "Bearer a"

    def test_keeps_other_token_types(self) -> None:
        """Test that non-bearer token types are preserved."""
        token = parse_token_response({"access_token": "a", "token_type": "DPoP"})
        assert token.token_type == "DPoP"

    @pytest.mark.parametrize(
        "payload",
        [
            {"token_type": "Bearer"},
            {"access_token": "", "token_type": "Bearer"},
            {"access_token": "a"},
            ["not", "an", "object"],
        ],
    )
    def test_rejects_incomplete(self, payload: object) -> None:
        """Test that missing required fields raise TokenExchangeError."""
        with pytest.raises(TokenExchangeError):
            parse_token_response(payload)


class TestRequestBuilders:
    """Tests for form body and header builders."""

    def test_authorization_code_body(self) -> None:
        """Test the authorization code grant fields."""
        body = build_authorization_code_body(
            code="code123",
            code_verifier="verifier",
            redirect_uri="http://localhost:8765/oauth/callback",
            client_id="client",
        )
        assert body == {
            "grant_type": "authorization_code",
            "code": "code123",
            "redirect_uri": "http://localhost:8765/oauth/callback",
            "client_id": "client",
            "code_verifier": "verifier",
        }

    def test_authorization_code_body_with_secret(self) -> None:
        """Test that a confidential client sends its secret."""
        body = build_authorization_code_body("c", "v", "http://x/cb", "client", "s3cret")
        assert body["client_secret"] == "s3cret"

    def test_client_credentials_body(self) -> None:
        """Test the client credentials grant fields."""
        body = build_client_credentials_body("client", "secret", scope="a b", audience="api")
        assert body == {
            "grant_type": "client_credentials",
            "client_id": "client",
            "client_secret": "secret",
            "scope": "a b",
            "audience": "api",
        }

    def test_client_credentials_body_minimal(self) -> None:
        """Test that optional fields are omitted."""
        body = build_client_credentials_body("client", "secret")
        assert "scope" not in body
        assert "audience" not in body

    def test_headers(self) -> None:
        """Test request headers."""
        headers = build_token_request_headers("req-1")
        assert headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert headers["Accept"] == "application/json"
        assert headers["X-Request-ID"] == "req-1"
        assert "X-Request-ID" not in build_token_request_headers()


class TestMapTokenError:
    """Tests for map_token_error function."""

    def _status_error(self, status: int, **kwargs: object) -> httpx.HTTPStatusError:
        request = httpx.Request("POST", TOKEN_URL)
        response = httpx.Response(status, request=request, **kwargs)  # type: ignore[arg-type]
        return httpx.HTTPStatusError("error", request=request, response=response)

    def test_oauth_error_body(self) -> None:
        """Test that the RFC 6749 error code and description are kept."""
        error = map_token_error(
            self._status_error(
                400, json={"error": "invalid_grant", "error_description": "Code expired"}
            )
        )

        assert isinstance(error, TokenExchangeError)
        assert error.code == OAuth2ErrorCode.INVALID_GRANT
        assert error.status_code == 400
        assert error.description == "Code expired"
        assert "invalid_grant" in error.message
        assert error.retryable is False

    def test_unknown_error_code(self) -> None:
        """Test that unknown error names fall back to the status mapping."""
        error = map_token_error(self._status_error(401, json={"error": "weird"}))
        assert error.code == OAuth2ErrorCode.INVALID_CLIENT

    def test_non_json_server_error(self) -> None:
        """Test a 5xx with an HTML body."""
        error = map_token_error(self._status_error(502, text="<html>bad gateway</html>"))
        assert error.code == OAuth2ErrorCode.SERVER_ERROR
        assert error.status_code == 502

    def test_transport_error_is_retryable(self) -> None:
        """Test that network failures are marked retryable."""
        error = map_token_error(httpx.ConnectError("connection refused"))
        assert isinstance(error, TokenExchangeError)
        assert error.code == AuthErrorCode.NETWORK_ERROR
        assert error.retryable is True

    def test_invalid_json(self) -> None:
        """Test that parse failures are mapped."""
        error = map_token_error(ValueError("Expecting value"))
        assert isinstance(error, TokenExchangeError)
        assert "invalid JSON" in error.message

    def test_passes_through_auth_errors(self) -> None:
        """Test that taxonomy errors are returned unchanged."""
        original = InvalidStateError()
        assert map_token_error(original) is original

    def test_sanitizes_secrets(self) -> None:
        """Test that token values never reach the message."""
        error = map_token_error(
            self._status_error(
                400,
                json={"error": "invalid_request", "error_description": "bad access_token=abc123"},
            )
        )
        assert "abc123" not in error.message
        assert error.description is not None
        assert "abc123" not in error.description


class TestRequestToken:
    """Tests for request_token function."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        """Test a successful form POST."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200, json={"access_token": "abc", "token_type": "Bearer"}
            )
        )

        async with httpx.AsyncClient() as client:
            payload = await request_token(
                client,
                TOKEN_URL,
                {"grant_type": "client_credentials", "client_id": "c"},
                build_token_request_headers("req-1"),
            )

        assert payload["access_token"] == "abc"
        sent = route.calls.last.request
        assert sent.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert sent.headers["X-Request-ID"] == "req-1"
        assert parse_qs(sent.content.decode()) == {
            "grant_type": ["client_credentials"],
            "client_id": ["c"],
        }

    @respx.mock
    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        """Test that a 400 raises TokenExchangeError."""
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(400, json={"error": "invalid_grant"})
        )

        async with httpx.AsyncClient() as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await request_token(client, TOKEN_URL, {}, build_token_request_headers())

        assert exc_info.value.code == OAuth2ErrorCode.INVALID_GRANT
        assert exc_info.value.status_code == 400

    @respx.mock
    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        """Test that a non-JSON success body raises TokenExchangeError."""
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, text="not json"))

        async with httpx.AsyncClient() as client:
            with pytest.raises(TokenExchangeError, match="invalid JSON"):
                await request_token(client, TOKEN_URL, {}, build_token_request_headers())

    @respx.mock
    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        """Test that transport failures raise a retryable error."""
        respx.post(TOKEN_URL).mock(side_effect=httpx.ConnectError("refused"))

        async with httpx.AsyncClient() as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await request_token(client, TOKEN_URL, {}, build_token_request_headers())

        assert exc_info.value.retryable is True
