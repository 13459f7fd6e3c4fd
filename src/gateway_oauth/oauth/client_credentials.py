"""OAuth 2.0 client credentials provider (RFC 6749 section 4.4).

Machine-to-machine grant: no user interaction and no pending-flow
bookkeeping. Refreshing simply exchanges the credentials again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from gateway_oauth.config import ClientCredentialsConfig, coerce_config
from gateway_oauth.logging_config import get_logger
from gateway_oauth.oauth.base import BaseOAuthProvider, new_request_id
from gateway_oauth.oauth.token_exchange import (
    build_client_credentials_body,
    build_token_request_headers,
    request_token,
)

if TYPE_CHECKING:
    import httpx

    from gateway_oauth.oauth.token_store import TokenStorage

logger = get_logger(__name__)


class ClientCredentialsProvider(BaseOAuthProvider):
    """Provider for the client credentials grant.

    Example:
        >>> config = ClientCredentialsConfig(
        ...     client_id="svc",
        ...     client_secret="secret",
        ...     token_endpoint="https://auth.example.com/oauth/token",
        ... )
        >>> async with ClientCredentialsProvider(config) as provider:
        ...     headers = await provider.get_headers()
    """

    proactive_refresh = True

    def __init__(
        self,
        config: ClientCredentialsConfig | dict[str, Any],
        storage: TokenStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            config: Configuration model or raw mapping
            storage: Token storage (memory storage if omitted)
            http_client: Optional shared HTTP client

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        super().__init__(coerce_config(ClientCredentialsConfig, config), storage, http_client)

    @property
    def config(self) -> ClientCredentialsConfig:
        return self._config  # type: ignore[return-value]

    async def _send_token_request(self, request_id: str) -> dict[str, Any]:
        config = self.config
        data = build_client_credentials_body(
            client_id=config.client_id,
            client_secret=config.client_secret.get_secret_value(),
            scope=config.scope,
            audience=config.audience,
        )
        return await request_token(
            self._get_client(),
            config.token_endpoint,
            data,
            build_token_request_headers(request_id),
        )

    async def acquire_token(self) -> None:
        """Exchange the client credentials for a token and store it.

        Raises:
            TokenExchangeError: If the token endpoint rejects the request,
                answers with an invalid body, or the audience does not match
        """
        self._ensure_open()
        request_id = new_request_id()
        logger.debug(
            "Requesting client credentials token %s from %s (client %s)",
            request_id,
            self.config.token_endpoint,
            self.config.client_id,
        )

        payload = await self.request_token_with_retry(
            lambda: self._send_token_request(request_id),
            request_id,
        )
        self.process_token_response(
            payload,
            request_id,
            expected_audience=self.config.audience,
        )
        logger.info("Acquired client credentials token for client %s", self.config.client_id)
