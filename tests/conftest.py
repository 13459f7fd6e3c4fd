"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest

from gateway_oauth.config import AuthorizationCodeConfig, ClientCredentialsConfig
from gateway_oauth.logging_config import reset_logging
from gateway_oauth.oauth.flow_registry import FlowRegistry


class PromptRecorder:
    """Stands in for the operator console and remembers every URL shown."""

    def __init__(self) -> None:
        self.urls: list[str] = []
        self.timeouts: list[float] = []

    def __call__(self, url: str, timeout: float) -> None:
        self.urls.append(url)
        self.timeouts.append(timeout)


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Give every test a fresh package logger."""
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def client_credentials_config() -> ClientCredentialsConfig:
    """Create a client credentials configuration for testing."""
    return ClientCredentialsConfig(
        client_id="test-client-id",
        client_secret="test-client-secret",
        token_endpoint="https://auth.example.com/oauth/token",
        scope="api:read api:write",
        retry_delay=0.0,
    )


@pytest.fixture
def make_auth_code_config() -> Callable[..., AuthorizationCodeConfig]:
    """Factory for authorization code configurations with overrides."""

    def factory(**overrides: Any) -> AuthorizationCodeConfig:
        values: dict[str, Any] = {
            "client_id": "test-client-id",
            "authorization_endpoint": "https://auth.example.com/oauth/authorize",
            "token_endpoint": "https://auth.example.com/oauth/token",
            "redirect_uri": "http://127.0.0.1:8765/oauth/callback",
            "scope": "read write",
        }
        values.update(overrides)
        return AuthorizationCodeConfig(**values)

    return factory


@pytest.fixture
def auth_code_config(
    make_auth_code_config: Callable[..., AuthorizationCodeConfig],
) -> AuthorizationCodeConfig:
    """Create an authorization code configuration for testing."""
    return make_auth_code_config()


@pytest.fixture
def registry() -> FlowRegistry:
    """Create an isolated flow registry."""
    return FlowRegistry()


@pytest.fixture
def prompt() -> PromptRecorder:
    """Record authorization URLs instead of printing them."""
    return PromptRecorder()
