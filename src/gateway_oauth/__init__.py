"""gateway-oauth.

OAuth 2.0 credential providers for the outbound calls of an MCP gateway:
client credentials, authorization code with PKCE, and static tokens.
"""

__version__ = "0.1.0"

from gateway_oauth.config import (
    AuthorizationCodeConfig,
    BearerTokenConfig,
    ClientCredentialsConfig,
    Settings,
    load_config,
    parse_provider_config,
)
from gateway_oauth.errors import (
    AuthenticationError,
    AuthorizationTimeoutError,
    ConfigurationError,
    FlowTeardownError,
    InvalidStateError,
    StorageInconsistencyError,
    TokenExchangeError,
)
from gateway_oauth.security import (
    AuthProvider,
    BearerTokenProvider,
    NoAuthProvider,
    build_auth_provider,
)

__all__ = [
    "AuthProvider",
    "AuthenticationError",
    "AuthorizationCodeConfig",
    "AuthorizationTimeoutError",
    "BearerTokenConfig",
    "BearerTokenProvider",
    "ClientCredentialsConfig",
    "ConfigurationError",
    "FlowTeardownError",
    "InvalidStateError",
    "NoAuthProvider",
    "Settings",
    "StorageInconsistencyError",
    "TokenExchangeError",
    "__version__",
    "build_auth_provider",
    "load_config",
    "parse_provider_config",
]
