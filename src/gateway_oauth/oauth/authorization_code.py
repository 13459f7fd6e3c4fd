"""OAuth 2.0 authorization code provider with PKCE.

Implements RFC 6749 section 4.1 with RFC 7636. ``acquire_token`` emits
an authorization URL to the operator and suspends until the hosting
gateway's callback route calls ``complete_oauth_flow``, the per-flow
timer fires, the stale-state sweep expires the flow, or the provider is
destroyed. Whichever happens first settles the flow; later arrivals for
the same state are rejected as invalid.

The provider never opens a browser itself.
"""

from __future__ import annotations

import asyncio
import sys
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from gateway_oauth.config import AuthorizationCodeConfig, coerce_config
from gateway_oauth.errors import (
    AuthenticationError,
    AuthErrorCode,
    AuthorizationTimeoutError,
    FlowTeardownError,
    InvalidStateError,
    OAuth2ErrorCode,
    StorageInconsistencyError,
    TokenExchangeError,
)
from gateway_oauth.logging_config import get_logger
from gateway_oauth.oauth.base import BaseOAuthProvider, new_request_id
from gateway_oauth.oauth.flow_registry import FlowRegistry, PendingAuthorization
from gateway_oauth.oauth.pkce import CODE_CHALLENGE_METHOD, create_pkce_pair, generate_state
from gateway_oauth.oauth.token_exchange import (
    TokenData,
    build_authorization_code_body,
    build_token_request_headers,
    map_token_error,
    request_token,
)
from gateway_oauth.security import redact_state

if TYPE_CHECKING:
    import httpx

    from gateway_oauth.oauth.token_store import TokenStorage

logger = get_logger(__name__)

TIMEOUT_MESSAGE = "Authorization timeout - please try again"

# Called with the authorization URL and the flow timeout in seconds
AuthorizationPrompt = Callable[[str, float], None]


def console_prompt(url: str, timeout: float) -> None:
    """Show the authorization URL to the operator on stderr.

    Output is informational only and never parsed.
    """
    print("\nPlease open this URL in your browser to authorize:", file=sys.stderr)
    print(url, file=sys.stderr)
    print("\nWaiting for authorization callback...", file=sys.stderr)
    print(f"Timeout in {timeout:.0f} seconds\n", file=sys.stderr, flush=True)


def build_authorization_url(
    config: AuthorizationCodeConfig,
    state: str,
    code_challenge: str,
) -> str:
    """Build the authorization request URL (RFC 6749 4.1.1, RFC 7636 4.3).

    Query parameters already present on the endpoint are preserved.
    """
    params: list[tuple[str, str]] = [
        ("response_type", "code"),
        ("client_id", config.client_id),
        ("redirect_uri", config.redirect_uri),
        ("state", state),
        ("code_challenge", code_challenge),
        ("code_challenge_method", CODE_CHALLENGE_METHOD),
    ]
    if config.scope:
        params.append(("scope", config.scope))
    if config.audience:
        params.append(("audience", config.audience))

    parts = urlsplit(config.authorization_endpoint)
    query = parse_qsl(parts.query, keep_blank_values=True) + params
    return urlunsplit(parts._replace(query=urlencode(query)))


class AuthorizationCodeProvider(BaseOAuthProvider):
    """Provider for the interactive authorization code grant.

    Proactive refresh is disabled since a new token needs the user.

    Example:
        >>> registry = FlowRegistry()
        >>> provider = AuthorizationCodeProvider(config, flow_registry=registry)
        >>> # callback route: registry.get_provider_for_state(state)
        >>> #                 .complete_oauth_flow(state, code)
        >>> headers = await provider.get_headers()
        >>> await provider.destroy()
    """

    proactive_refresh = False

    def __init__(
        self,
        config: AuthorizationCodeConfig | dict[str, Any],
        storage: TokenStorage | None = None,
        flow_registry: FlowRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
        prompt: AuthorizationPrompt | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            config: Configuration model or raw mapping
            storage: Token storage (memory storage if omitted)
            flow_registry: Registry shared with the callback route
                (``FlowRegistry.default()`` if omitted)
            http_client: Optional shared HTTP client
            prompt: Callable that shows the authorization URL to the operator

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        super().__init__(coerce_config(AuthorizationCodeConfig, config), storage, http_client)
        self._registry = flow_registry if flow_registry is not None else FlowRegistry.default()
        self._prompt = prompt or console_prompt
        self._pending: dict[str, PendingAuthorization] = {}
        self._exchanging: dict[str, PendingAuthorization] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> AuthorizationCodeConfig:
        return self._config  # type: ignore[return-value]

    @property
    def flow_registry(self) -> FlowRegistry:
        return self._registry

    @property
    def pending_states(self) -> list[str]:
        """States of flows still waiting for a callback."""
        return list(self._pending)

    @classmethod
    def get_provider_for_state(
        cls,
        state: str,
        registry: FlowRegistry | None = None,
    ) -> AuthorizationCodeProvider | None:
        """Find the provider that issued ``state``.

        Args:
            state: State from the callback query string
            registry: Registry to search (the default registry if omitted)

        Returns:
            The owning provider, or None for unknown states
        """
        provider = (registry or FlowRegistry.default()).get_provider_for_state(state)
        return provider if isinstance(provider, cls) else None

    async def acquire_token(self) -> None:
        """Run one interactive authorization flow.

        Raises:
            AuthorizationTimeoutError: If no callback arrives in time
            TokenExchangeError: If the code exchange fails
            FlowTeardownError: If the provider is destroyed meanwhile
        """
        self._ensure_open()

        while not self.config.allow_concurrent_flows:
            existing = next(
                iter([*self._pending.values(), *self._exchanging.values()]), None
            )
            if existing is None:
                break
            logger.debug("Joining pending OAuth flow %s", redact_state(existing.state))
            try:
                await asyncio.shield(existing.future)
                return
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not existing.future.cancelled() or (
                    current is not None and current.cancelling() > 0
                ):
                    raise
            # The initiating caller was cancelled; run a flow of our own
            logger.debug(
                "Joined OAuth flow %s was abandoned, starting a new one",
                redact_state(existing.state),
            )
            self._ensure_open()

        flow, url = self._start_flow()
        try:
            self._prompt(url, self.config.authorization_timeout)
            token = await flow.future
        finally:
            self._discard_flow(flow)
            if not flow.future.done():
                flow.future.cancel()

        logger.debug(
            "OAuth flow %s delivered token expiring %s",
            redact_state(flow.state),
            token.expires_at.isoformat(),
        )

    def _start_flow(self) -> tuple[PendingAuthorization, str]:
        """Register a new flow and arm its timer, without suspending."""
        loop = asyncio.get_running_loop()
        config = self.config

        state = generate_state()
        pkce = create_pkce_pair()
        flow = PendingAuthorization(
            state=state,
            code_verifier=pkce.code_verifier,
            future=loop.create_future(),
        )

        self._registry.register(state, self)
        self._pending[state] = flow
        flow.timer = loop.call_later(config.authorization_timeout, self._expire_flow, state)
        self._ensure_sweep()

        logger.info(
            "OAuth flow initiated (state %s, endpoint %s, redirect %s, scope %s)",
            redact_state(state),
            config.authorization_endpoint,
            config.redirect_uri,
            config.scope or "N/A",
        )
        return flow, build_authorization_url(config, state, pkce.code_challenge)

    def _discard_flow(self, flow: PendingAuthorization) -> None:
        """Drop a flow's registry entries and cancel its timer.

        Failures are logged and never raised.
        """
        if self._pending.get(flow.state) is flow:
            del self._pending[flow.state]
        try:
            if flow.timer is not None:
                flow.timer.cancel()
                flow.timer = None
            self._registry.unregister(flow.state, self)
        except Exception as e:
            logger.warning("Failed to clean up OAuth state %s: %s", redact_state(flow.state), e)

    def _settle(
        self,
        flow: PendingAuthorization,
        token: TokenData | None = None,
        error: BaseException | None = None,
    ) -> bool:
        """Remove a flow and settle its waiter.

        Returns:
            False if the flow had already been settled
        """
        self._discard_flow(flow)
        if flow.future.done():
            return False
        if error is not None:
            flow.future.set_exception(error)
        else:
            flow.future.set_result(token)
        return True

    def _expire_flow(self, state: str) -> None:
        flow = self._pending.get(state)
        if flow is None:
            return
        flow.timer = None
        logger.info("OAuth flow %s timed out", redact_state(state))
        self._settle(flow, error=AuthorizationTimeoutError(TIMEOUT_MESSAGE))

    async def complete_oauth_flow(self, state: str, code: str) -> None:
        """Finish a pending flow with the code from the callback.

        The flow is claimed before the exchange starts, so a replayed
        callback for the same state is rejected.

        Args:
            state: State from the callback query string
            code: Authorization code from the callback query string

        Raises:
            InvalidStateError: If the state is unknown, expired or settled
            TokenExchangeError: If the exchange fails; the waiting
                ``acquire_token`` call fails with the same error
            StorageInconsistencyError: If the token is missing after storing
        """
        flow = self._pending.pop(state, None)
        if flow is None:
            logger.warning("Callback for unknown OAuth state %s", redact_state(state))
            raise InvalidStateError()

        self._exchanging[state] = flow
        self._discard_flow(flow)

        request_id = new_request_id()
        try:
            payload = await self._exchange_code(code, flow.code_verifier, request_id)
            self.process_token_response(payload, request_id)
            token = self._storage.retrieve()
            if token is None:
                msg = "Failed to retrieve stored token after OAuth flow completion"
                raise StorageInconsistencyError(msg)
        except asyncio.CancelledError:
            self._finish_exchange(
                flow,
                error=TokenExchangeError(
                    "Token exchange was cancelled", AuthErrorCode.UNKNOWN_ERROR
                ),
            )
            raise
        except Exception as e:
            error = map_token_error(e)
            logger.error("OAuth flow %s failed: %s", redact_state(state), error)
            self._finish_exchange(flow, error=error)
            if error is e:
                raise
            raise error from e

        logger.info(
            "OAuth flow %s completed (expires %s, scope %s)",
            redact_state(state),
            token.expires_at.isoformat(),
            token.scope or "N/A",
        )
        self._finish_exchange(flow, token=token)

    def abort_oauth_flow(
        self,
        state: str,
        error: str,
        description: str | None = None,
    ) -> None:
        """Fail a pending flow after the authorization server reported an error.

        Args:
            state: State from the callback query string
            error: ``error`` parameter of the error redirect (RFC 6749 4.1.2.1)
            description: ``error_description`` parameter, if any

        Raises:
            InvalidStateError: If the state is unknown, expired or settled
        """
        flow = self._pending.get(state)
        if flow is None:
            raise InvalidStateError()

        try:
            code: OAuth2ErrorCode | AuthErrorCode = OAuth2ErrorCode(error)
        except ValueError:
            code = AuthErrorCode.UNKNOWN_ERROR

        message = f"Authorization failed: {error}"
        if description:
            message += f" - {description}"
        logger.warning(
            "OAuth flow %s rejected by authorization server: %s", redact_state(state), error
        )
        self._settle(flow, error=AuthenticationError(message, code))

    def _finish_exchange(
        self,
        flow: PendingAuthorization,
        token: TokenData | None = None,
        error: AuthenticationError | None = None,
    ) -> None:
        if self._exchanging.get(flow.state) is flow:
            del self._exchanging[flow.state]
        if not self._settle(flow, token=token, error=error):
            logger.debug("OAuth flow %s was already settled", redact_state(flow.state))

    async def _exchange_code(
        self, code: str, code_verifier: str, request_id: str
    ) -> dict[str, Any]:
        config = self.config
        secret = config.client_secret.get_secret_value() if config.client_secret else None
        data = build_authorization_code_body(
            code=code,
            code_verifier=code_verifier,
            redirect_uri=config.redirect_uri,
            client_id=config.client_id,
            client_secret=secret,
        )
        return await request_token(
            self._get_client(),
            config.token_endpoint,
            data,
            build_token_request_headers(request_id),
        )

    def cleanup_expired_states(self) -> int:
        """Expire pending flows older than ``state_expiry``.

        Returns:
            Number of flows expired
        """
        now = time.monotonic()
        expired = [
            flow for flow in self._pending.values()
            if flow.age(now) > self.config.state_expiry
        ]

        for flow in expired:
            logger.info("OAuth state %s expired", redact_state(flow.state))
            self._settle(flow, error=AuthorizationTimeoutError(TIMEOUT_MESSAGE))

        return len(expired)

    def _ensure_sweep(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        """Periodically expire stale flows until none are pending."""
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                removed = self.cleanup_expired_states()
            except Exception as e:
                logger.warning("Stale OAuth state sweep failed: %s", e)
            else:
                if removed:
                    logger.debug("Swept %d stale OAuth states", removed)
            if not self._pending:
                self._sweep_task = None
                return

    async def destroy(self) -> None:
        """Tear the provider down.

        Rejects every pending and in-exchange flow with FlowTeardownError,
        removes this provider's registry entries and stops background
        work. Idempotent.
        """
        await self.aclose()

    async def _shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

        flows = [*self._pending.values(), *self._exchanging.values()]
        for flow in flows:
            self._settle(
                flow,
                error=FlowTeardownError("Provider was destroyed before authorization completed"),
            )
        self._exchanging.clear()

        for state in self._registry.states_for(self):
            self._registry.unregister(state, self)

        if flows:
            logger.info("Rejected %d pending OAuth flows on teardown", len(flows))

        await super()._shutdown()
