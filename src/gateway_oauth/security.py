"""Security utilities and the auth provider contract.

Provides secret redaction, secure token generation, the AuthProvider
interface every grant type implements, and a factory that builds the
right provider for a parsed configuration.
"""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from gateway_oauth.errors import ConfigurationError
from gateway_oauth.logging_config import get_logger

if TYPE_CHECKING:
    from types import TracebackType

    import httpx

    from gateway_oauth.config import BearerTokenConfig, ProviderConfig
    from gateway_oauth.oauth.flow_registry import FlowRegistry
    from gateway_oauth.oauth.token_store import TokenStorage

logger = get_logger(__name__)


def redact(value: str | None) -> str:
    """Redact a potentially sensitive value for safe logging.

    Args:
        value: The value to redact

    Returns:
        "***" if value is non-empty, "<empty>" if empty/None
    """
    if value is None or value == "":
        return "<empty>"
    return "***"


def redact_state(state: str) -> str:
    """Shorten an OAuth state for log correlation without exposing it."""
    return f"{state[:8]}..."


def generate_secure_token(nbytes: int = 32) -> str:
    """Generate a cryptographically secure random token.

    Args:
        nbytes: Number of random bytes (default 32 = 256 bits)

    Returns:
        URL-safe base64-encoded token string
    """
    return secrets.token_urlsafe(nbytes)


def mask_sensitive_data(
    data: dict[str, Any], sensitive_keys: set[str] | None = None
) -> dict[str, Any]:
    """Mask sensitive data in a dictionary for logging.

    Args:
        data: Dictionary potentially containing sensitive data
        sensitive_keys: Set of keys to mask (uses defaults if not provided)

    Returns:
        Copy of dictionary with sensitive values masked
    """
    if sensitive_keys is None:
        sensitive_keys = {
            "access_token",
            "refresh_token",
            "id_token",
            "token",
            "secret",
            "password",
            "client_secret",
            "code_verifier",
            "authorization",
        }

    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = mask_sensitive_data(value, sensitive_keys)
        elif any(sensitive in key.lower() for sensitive in sensitive_keys):
            result[key] = "***"
        else:
            result[key] = value

    return result


class AuthProvider(ABC):
    """Capability contract shared by every authentication variant.

    Providers are scoped resources: use them as async context managers
    or call ``aclose()`` on every exit path.
    """

    @abstractmethod
    async def get_headers(self) -> dict[str, str]:
        """Get headers to attach to an outbound request.

        May suspend while a token is acquired.
        """

    @abstractmethod
    def is_valid(self) -> bool:
        """Best-effort check that current credentials are usable."""

    async def refresh(self) -> None:
        """Obtain fresh credentials, if the variant supports it."""
        msg = f"{type(self).__name__} does not support refresh"
        raise NotImplementedError(msg)

    async def aclose(self) -> None:
        """Release resources held by the provider."""

    async def __aenter__(self) -> AuthProvider:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


class NoAuthProvider(AuthProvider):
    """Provider for downstream servers that need no authentication."""

    async def get_headers(self) -> dict[str, str]:
        """Return empty headers."""
        return {}

    def is_valid(self) -> bool:
        return True


class BearerTokenProvider(AuthProvider):
    """Provider using a static bearer token.

    Suitable for personal access tokens or API keys.
    """

    def __init__(self, token: str, header_name: str = "Authorization") -> None:
        """Initialize with a token value.

        Args:
            token: Raw token (without the "Bearer " prefix)
            header_name: Name of the header to populate
        """
        if not token or not token.strip():
            raise ConfigurationError("Bearer token must not be empty")
        self._token = token.strip()
        self._header_name = header_name

    async def get_headers(self) -> dict[str, str]:
        """Return the static token header."""
        return {self._header_name: f"Bearer {self._token}"}

    def is_valid(self) -> bool:
        return True

    @classmethod
    def from_config(cls, config: BearerTokenConfig) -> BearerTokenProvider:
        return cls(config.token.get_secret_value(), header_name=config.header_name)


def build_auth_provider(
    config: ProviderConfig | dict[str, Any],
    storage: TokenStorage | None = None,
    flow_registry: FlowRegistry | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AuthProvider:
    """Build the AuthProvider matching a provider configuration.

    Args:
        config: Parsed provider config, or a raw mapping with a ``type`` key
        storage: Token storage (a fresh MemoryTokenStorage if omitted)
        flow_registry: Registry for authorization-code callbacks
        http_client: Optional shared HTTP client

    Returns:
        Configured AuthProvider instance

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    from gateway_oauth.config import (
        AuthorizationCodeConfig,
        BearerTokenConfig,
        ClientCredentialsConfig,
        NoAuthConfig,
        parse_provider_config,
    )
    from gateway_oauth.oauth.authorization_code import AuthorizationCodeProvider
    from gateway_oauth.oauth.client_credentials import ClientCredentialsProvider

    if isinstance(config, dict):
        config = parse_provider_config(config)

    if isinstance(config, ClientCredentialsConfig):
        logger.debug("Using ClientCredentialsProvider for client %s", config.client_id)
        return ClientCredentialsProvider(config, storage, http_client=http_client)

    if isinstance(config, AuthorizationCodeConfig):
        logger.debug("Using AuthorizationCodeProvider for client %s", config.client_id)
        return AuthorizationCodeProvider(
            config,
            storage,
            flow_registry=flow_registry,
            http_client=http_client,
        )

    if isinstance(config, BearerTokenConfig):
        logger.debug("Using BearerTokenProvider")
        return BearerTokenProvider.from_config(config)

    if isinstance(config, NoAuthConfig):
        logger.debug("Using NoAuthProvider")
        return NoAuthProvider()

    raise ConfigurationError(f"Unsupported provider configuration: {type(config).__name__}")
