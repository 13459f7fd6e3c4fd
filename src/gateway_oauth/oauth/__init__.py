"""OAuth 2.0 providers for gateway-oauth.

Provides the Client Credentials grant for service-to-service calls and
the Authorization Code grant with PKCE for interactive authorization,
plus token storage and the flow registry used by callback routes.
"""

from gateway_oauth.oauth.authorization_code import (
    AuthorizationCodeProvider,
    build_authorization_url,
    console_prompt,
)
from gateway_oauth.oauth.base import REFRESH_BUFFER, BaseOAuthProvider
from gateway_oauth.oauth.client_credentials import ClientCredentialsProvider
from gateway_oauth.oauth.flow_registry import FlowRegistry, PendingAuthorization
from gateway_oauth.oauth.pkce import (
    PKCEPair,
    create_pkce_pair,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
    validate_code_verifier,
)
from gateway_oauth.oauth.token_exchange import DEFAULT_EXPIRES_IN, TokenData
from gateway_oauth.oauth.token_store import (
    EncryptedFileTokenStorage,
    MemoryTokenStorage,
    TokenStorage,
    TokenStoreError,
    create_token_storage,
)

__all__ = [
    "DEFAULT_EXPIRES_IN",
    "REFRESH_BUFFER",
    "AuthorizationCodeProvider",
    "BaseOAuthProvider",
    "ClientCredentialsProvider",
    "EncryptedFileTokenStorage",
    "FlowRegistry",
    "MemoryTokenStorage",
    "PKCEPair",
    "PendingAuthorization",
    "TokenData",
    "TokenStorage",
    "TokenStoreError",
    "build_authorization_url",
    "console_prompt",
    "create_pkce_pair",
    "create_token_storage",
    "generate_code_challenge",
    "generate_code_verifier",
    "generate_state",
    "validate_code_verifier",
]
