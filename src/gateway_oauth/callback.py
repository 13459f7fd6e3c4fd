"""OAuth callback route for hosting gateways.

The authorization server redirects the operator's browser here with
``state`` and ``code``. The handler finds the provider that issued the
state through the FlowRegistry and completes its flow. Unknown states
are answered as invalid without touching any provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route

from gateway_oauth.errors import AuthenticationError, InvalidStateError
from gateway_oauth.logging_config import get_logger
from gateway_oauth.oauth.authorization_code import AuthorizationCodeProvider
from gateway_oauth.oauth.flow_registry import FlowRegistry
from gateway_oauth.security import redact_state

if TYPE_CHECKING:
    from starlette.requests import Request

logger = get_logger(__name__)

DEFAULT_CALLBACK_PATH = "/oauth/callback"


@dataclass(frozen=True)
class CallbackResult:
    """HTTP answer for one callback request."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code < 400


def _invalid_state() -> CallbackResult:
    return CallbackResult(
        400,
        {"error": "invalid_state", "description": InvalidStateError().message},
    )


async def handle_oauth_callback(
    registry: FlowRegistry,
    state: str | None,
    code: str | None,
    error: str | None = None,
    error_description: str | None = None,
) -> CallbackResult:
    """Route a callback to the provider that issued ``state``.

    Args:
        registry: Registry the providers registered their flows in
        state: ``state`` query parameter
        code: ``code`` query parameter
        error: ``error`` query parameter of an error redirect
        error_description: ``error_description`` query parameter

    Returns:
        CallbackResult describing the HTTP response
    """
    if not state:
        return CallbackResult(
            400, {"error": "invalid_request", "description": "Missing state parameter"}
        )

    provider = registry.get_provider_for_state(state)
    if not isinstance(provider, AuthorizationCodeProvider):
        logger.warning("Callback with invalid or expired OAuth state %s", redact_state(state))
        return _invalid_state()

    if error:
        description = error_description or "Unknown error"
        logger.error("OAuth error: %s - %s", error, description)
        try:
            provider.abort_oauth_flow(state, error, error_description)
        except InvalidStateError:
            return _invalid_state()
        return CallbackResult(400, {"error": error, "description": description})

    if not code:
        return CallbackResult(
            400, {"error": "invalid_request", "description": "Missing code parameter"}
        )

    try:
        await provider.complete_oauth_flow(state, code)
    except InvalidStateError:
        return _invalid_state()
    except AuthenticationError as e:
        logger.error("OAuth callback error: %s", e)
        return CallbackResult(
            500,
            {"error": e.code.value, "description": "Authentication failed"},
        )

    return CallbackResult(
        200,
        {
            "status": "authenticated",
            "message": "Authorization successful. You can close this window.",
        },
    )


def create_callback_routes(
    registry: FlowRegistry | None = None,
    path: str = DEFAULT_CALLBACK_PATH,
) -> list[Route]:
    """Build the starlette route for the OAuth callback.

    Args:
        registry: Registry to resolve states in (default registry if omitted)
        path: Route path; must match the configured redirect URI

    Returns:
        Routes to mount in the hosting application
    """
    flow_registry = registry if registry is not None else FlowRegistry.default()

    async def oauth_callback(request: Request) -> JSONResponse:
        """Handle OAuth callback."""
        params = request.query_params
        result = await handle_oauth_callback(
            flow_registry,
            state=params.get("state"),
            code=params.get("code"),
            error=params.get("error"),
            error_description=params.get("error_description"),
        )
        return JSONResponse(result.body, status_code=result.status_code)

    return [Route(path, oauth_callback, methods=["GET"])]


def create_callback_app(
    registry: FlowRegistry | None = None,
    path: str = DEFAULT_CALLBACK_PATH,
    app_name: str = "gateway-oauth",
) -> Starlette:
    """Create a standalone Starlette app serving the callback route.

    Args:
        registry: Registry to resolve states in
        path: Callback route path
        app_name: Name reported by the health endpoint

    Returns:
        Starlette application with ``/health`` and the callback route
    """
    flow_registry = registry if registry is not None else FlowRegistry.default()

    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse({
            "status": "ok",
            "app_name": app_name,
            "pending_flows": len(flow_registry),
        })

    routes = [Route("/health", health_check, methods=["GET"])]
    routes.extend(create_callback_routes(flow_registry, path))
    return Starlette(routes=routes)
