"""Shared token lifecycle for OAuth 2.0 providers.

BaseOAuthProvider implements the ensure-valid-token algorithm,
single-flight refresh, proactive refresh scheduling, retry with
exponential backoff and token response processing. Grant types only
implement ``acquire_token``.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from gateway_oauth.errors import (
    FlowTeardownError,
    OAuth2ErrorCode,
    StorageInconsistencyError,
    TokenExchangeError,
)
from gateway_oauth.logging_config import get_logger
from gateway_oauth.oauth.token_exchange import (
    TokenData,
    map_token_error,
    parse_token_response,
)
from gateway_oauth.oauth.token_store import MemoryTokenStorage, TokenStorage
from gateway_oauth.security import AuthProvider

if TYPE_CHECKING:
    from gateway_oauth.config import OAuth2ProviderConfig

logger = get_logger(__name__)

# Proactive refresh fires this long before expiry
REFRESH_BUFFER = timedelta(minutes=5)


def new_request_id() -> str:
    """Correlation id sent as X-Request-ID and used in log lines."""
    return uuid.uuid4().hex


class BaseOAuthProvider(AuthProvider):
    """Base class for OAuth 2.0 providers.

    Attributes:
        proactive_refresh: Whether to refresh ahead of expiry. Interactive
            grants disable this because a refresh needs the user.
    """

    proactive_refresh: ClassVar[bool] = True

    def __init__(
        self,
        config: OAuth2ProviderConfig,
        storage: TokenStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            config: Validated provider configuration
            storage: Token storage (memory storage if omitted)
            http_client: Optional shared HTTP client; not closed by aclose()
        """
        self._config = config
        self._storage = storage if storage is not None else MemoryTokenStorage()
        self._http_client = http_client
        self._owns_client = http_client is None
        self._refresh_task: asyncio.Task[None] | None = None
        self._refresh_waiters = 0
        self._proactive_handle: asyncio.TimerHandle | None = None
        self._proactive_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def config(self) -> OAuth2ProviderConfig:
        return self._config

    @property
    def storage(self) -> TokenStorage:
        return self._storage

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.request_timeout),
            )
            self._owns_client = True
        return self._http_client

    def _ensure_open(self) -> None:
        if self._closed:
            msg = f"{type(self).__name__} has been closed"
            raise FlowTeardownError(msg)

    @abstractmethod
    async def acquire_token(self) -> None:
        """Obtain a new token and store it.

        Raises:
            AuthenticationError: If the grant fails
        """

    async def ensure_valid_token(self) -> TokenData:
        """Return a valid token, acquiring one if necessary.

        Returns:
            Unexpired TokenData from storage

        Raises:
            StorageInconsistencyError: If acquisition succeeded but storage
                holds no token afterwards
            AuthenticationError: If acquisition fails
        """
        token = self._storage.retrieve()
        if token is not None and not self._storage.is_expired():
            if self._proactive_handle is None and self._proactive_task is None:
                self._schedule_proactive_refresh(token)
            return token

        await self.refresh()

        token = self._storage.retrieve()
        if token is None:
            msg = "Token acquisition succeeded but no token was found in storage"
            raise StorageInconsistencyError(msg)
        return token

    async def get_headers(self) -> dict[str, str]:
        """Return the Authorization header for the current token."""
        token = await self.ensure_valid_token()
        return {"Authorization": token.authorization_header}

    def is_valid(self) -> bool:
        """True if a token is stored and has not expired."""
        try:
            return not self._storage.is_expired()
        except Exception as e:
            logger.warning("Token validation failed: %s", e)
            return False

    async def refresh(self) -> None:
        """Acquire a new token, sharing one acquisition between callers.

        Concurrent callers await the same in-flight ``acquire_token``. If
        every waiter is cancelled, the acquisition is cancelled too.
        """
        self._ensure_open()

        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self.acquire_token())
            self._refresh_task = task

        self._refresh_waiters += 1
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            caller_cancelled = current is not None and current.cancelling() > 0
            if self._closed and task.cancelled() and not caller_cancelled:
                msg = f"{type(self).__name__} was closed during token acquisition"
                raise FlowTeardownError(msg) from None
            raise
        finally:
            self._refresh_waiters -= 1
            if not task.done() and self._refresh_waiters == 0:
                task.cancel()
            if self._refresh_task is task and task.done():
                self._refresh_task = None

    def _schedule_proactive_refresh(self, token: TokenData) -> None:
        """Arm a refresh REFRESH_BUFFER before the token expires."""
        if not self.proactive_refresh or self._closed:
            return

        self._cancel_proactive_refresh()
        refresh_at = token.expires_at - REFRESH_BUFFER
        delay = (refresh_at - datetime.now(UTC)).total_seconds()
        if delay <= 0:
            return

        loop = asyncio.get_running_loop()
        self._proactive_handle = loop.call_later(delay, self._start_proactive_refresh, token)
        logger.debug("Proactive refresh scheduled in %.0fs", delay)

    def _start_proactive_refresh(self, token: TokenData) -> None:
        self._proactive_handle = None
        if self._closed:
            return
        self._proactive_task = asyncio.get_running_loop().create_task(
            self._run_proactive_refresh(token)
        )

    async def _run_proactive_refresh(self, token: TokenData) -> None:
        logger.info(
            "Refreshing token proactively (expires at %s)", token.expires_at.isoformat()
        )
        try:
            await self.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Proactive token refresh failed: %s", e)
        finally:
            if self._proactive_task is asyncio.current_task():
                self._proactive_task = None

    def _cancel_proactive_refresh(self) -> None:
        if self._proactive_handle is not None:
            self._proactive_handle.cancel()
            self._proactive_handle = None

    async def request_token_with_retry(
        self,
        send: Callable[[], Awaitable[dict[str, Any]]],
        request_id: str,
    ) -> dict[str, Any]:
        """Run a token request, retrying network failures with backoff.

        Args:
            send: Coroutine factory performing one token request
            request_id: Correlation id for logging

        Returns:
            Decoded token response

        Raises:
            TokenExchangeError: For protocol errors, or when retries run out
        """
        max_attempts = self._config.max_retries
        attempt = 1
        while True:
            try:
                return await send()
            except (TokenExchangeError, httpx.HTTPError) as e:
                error = map_token_error(e)
                retryable = isinstance(error, TokenExchangeError) and error.retryable
                if not retryable or attempt >= max_attempts:
                    if error is e:
                        raise
                    raise error from e

            delay = self._config.retry_delay * 2 ** (attempt - 1)
            logger.warning(
                "Token request %s attempt %d failed; retrying in %.2fs",
                request_id,
                attempt,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1

    def process_token_response(
        self,
        payload: dict[str, Any],
        request_id: str,
        expected_audience: str | None = None,
    ) -> TokenData:
        """Parse, validate and store a token response.

        Args:
            payload: Decoded token endpoint response
            request_id: Correlation id for logging
            expected_audience: Audience the token must have, if the server
                reports one

        Returns:
            The stored TokenData

        Raises:
            TokenExchangeError: If required fields are missing or the
                audience does not match
        """
        token = parse_token_response(payload, self._config.default_expires_in)

        audience = payload.get("audience")
        if expected_audience and audience and audience != expected_audience:
            msg = "Audience validation failed: token audience does not match requested audience"
            raise TokenExchangeError(msg, OAuth2ErrorCode.INVALID_GRANT)

        try:
            self._storage.store(token)
        except Exception as e:
            logger.warning("Token request %s: failed to store token: %s", request_id, e)
        else:
            logger.info(
                "Token stored for request %s (expires %s, scope %s)",
                request_id,
                token.expires_at.isoformat(),
                token.scope or "N/A",
            )

        self._schedule_proactive_refresh(token)
        return token

    async def aclose(self) -> None:
        """Cancel background work and close the owned HTTP client.

        Idempotent. Later calls to ``refresh`` raise FlowTeardownError.
        """
        if self._closed:
            return
        self._closed = True
        await self._shutdown()

    async def _shutdown(self) -> None:
        self._cancel_proactive_refresh()
        for task in (self._proactive_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
        self._proactive_task = None

        if self._http_client is not None and self._owns_client:
            try:
                await self._http_client.aclose()
            except Exception as e:
                logger.warning("Failed to close HTTP client: %s", e)
        self._http_client = None
