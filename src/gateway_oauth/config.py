"""Configuration management for gateway-oauth.

Provides validated, immutable provider configurations for every grant
type, plus application settings loaded from environment variables,
.env files, and optional configuration files with proper precedence.
"""

from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, TypeVar
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from gateway_oauth.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "GATEWAY_OAUTH_"

ModelT = TypeVar("ModelT", bound=BaseModel)


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class GrantType(str, Enum):
    """Discriminator values for provider configurations."""

    CLIENT_CREDENTIALS = "oauth2-client"
    AUTHORIZATION_CODE = "oauth2-code"
    BEARER = "bearer"
    NONE = "none"


def _validate_http_url(value: str, field_name: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        msg = f"{field_name} must be an absolute http(s) URL, got {value!r}"
        raise ValueError(msg)
    return value


def _normalize_aliases(data: Any, renames: dict[str, str]) -> Any:
    """Accept alternate key spellings used by older gateway configs.

    ``tokenUrl``/``authUrl`` map onto the endpoint fields and a ``scopes``
    list is joined into a space separated ``scope``.
    """
    if not isinstance(data, dict):
        return data

    result = dict(data)
    for old, new in renames.items():
        if old in result:
            value = result.pop(old)
            if new not in result and to_camel(new) not in result:
                result[new] = value

    if "scopes" in result:
        scopes = result.pop("scopes")
        result["scope"] = " ".join(scopes) if isinstance(scopes, list | tuple) else scopes

    return result


class _FrozenConfig(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class OAuth2ProviderConfig(_FrozenConfig):
    """Fields shared by every OAuth 2.0 grant configuration."""

    client_id: str = Field(min_length=1, description="OAuth client identifier")
    token_endpoint: str = Field(min_length=1, description="OAuth token endpoint URL")
    scope: str | None = Field(default=None, description="Space-separated scopes")
    audience: str | None = Field(default=None, description="Requested token audience")

    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout (seconds)")
    max_retries: int = Field(default=3, ge=1, description="Attempts for network failures")
    retry_delay: float = Field(default=1.0, ge=0, description="Initial retry backoff (seconds)")
    default_expires_in: int = Field(
        default=3600, gt=0, description="Token lifetime when expires_in is omitted"
    )

    @field_validator("token_endpoint")
    @classmethod
    def validate_token_endpoint(cls, v: str) -> str:
        """Require an absolute http(s) token endpoint."""
        return _validate_http_url(v, "token_endpoint")


class ClientCredentialsConfig(OAuth2ProviderConfig):
    """Machine-to-machine client credentials grant (RFC 6749 section 4.4)."""

    type: Literal["oauth2-client"] = "oauth2-client"
    client_secret: SecretStr = Field(description="OAuth client secret")

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        return _normalize_aliases(data, {"tokenUrl": "token_endpoint"})

    @field_validator("client_secret")
    @classmethod
    def validate_client_secret(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            msg = "client_secret must not be empty"
            raise ValueError(msg)
        return v


class AuthorizationCodeConfig(OAuth2ProviderConfig):
    """Interactive authorization code grant with PKCE (RFC 6749 4.1, RFC 7636)."""

    type: Literal["oauth2-code"] = "oauth2-code"
    client_secret: SecretStr | None = Field(
        default=None, description="OAuth client secret (confidential clients only)"
    )
    authorization_endpoint: str = Field(min_length=1, description="Authorization endpoint URL")
    redirect_uri: str = Field(min_length=1, description="Registered redirect/callback URI")

    authorization_timeout: float = Field(
        default=300.0, gt=0, description="Seconds to wait for the callback of one flow"
    )
    state_expiry: float = Field(
        default=600.0, gt=0, description="Age after which the sweep expires a pending state"
    )
    cleanup_interval: float = Field(
        default=120.0, gt=0, description="Seconds between stale-state sweeps"
    )
    allow_concurrent_flows: bool = Field(
        default=True,
        description="Open a new flow per acquire call instead of joining the pending one",
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        return _normalize_aliases(
            data,
            {"tokenUrl": "token_endpoint", "authUrl": "authorization_endpoint"},
        )

    @field_validator("authorization_endpoint")
    @classmethod
    def validate_authorization_endpoint(cls, v: str) -> str:
        return _validate_http_url(v, "authorization_endpoint")

    @field_validator("redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, v: str) -> str:
        return _validate_http_url(v, "redirect_uri")

    @model_validator(mode="after")
    def validate_timers(self) -> AuthorizationCodeConfig:
        """The sweep is a backstop, so its threshold must outlast the flow timeout."""
        if self.state_expiry <= self.authorization_timeout:
            msg = (
                f"state_expiry ({self.state_expiry}s) must be longer than "
                f"authorization_timeout ({self.authorization_timeout}s)"
            )
            raise ValueError(msg)
        return self


class BearerTokenConfig(_FrozenConfig):
    """Static bearer token."""

    type: Literal["bearer"] = "bearer"
    token: SecretStr
    header_name: str = "Authorization"


class NoAuthConfig(_FrozenConfig):
    """Downstream server without authentication."""

    type: Literal["none"] = "none"


ProviderConfig = Annotated[
    ClientCredentialsConfig | AuthorizationCodeConfig | BearerTokenConfig | NoAuthConfig,
    Field(discriminator="type"),
]

_provider_config_adapter: TypeAdapter[Any] = TypeAdapter(ProviderConfig)


def format_validation_error(error: ValidationError) -> str:
    """Summarize a pydantic error without echoing (possibly secret) input values."""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "config"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def parse_provider_config(data: dict[str, Any]) -> Any:
    """Validate a raw provider mapping into its typed configuration.

    Args:
        data: Mapping with a ``type`` discriminator

    Returns:
        One of the provider configuration models

    Raises:
        ConfigurationError: If the mapping is invalid
    """
    try:
        return _provider_config_adapter.validate_python(data)
    except ValidationError as e:
        msg = f"Invalid provider configuration: {format_validation_error(e)}"
        raise ConfigurationError(msg, cause=e) from e


def coerce_config(model: type[ModelT], config: ModelT | dict[str, Any]) -> ModelT:
    """Return ``config`` as an instance of ``model``, validating mappings.

    Raises:
        ConfigurationError: If validation fails or the type is wrong
    """
    if isinstance(config, model):
        return config
    if not isinstance(config, dict):
        msg = f"Expected {model.__name__} or mapping, got {type(config).__name__}"
        raise ConfigurationError(msg)
    try:
        return model.model_validate(config)
    except ValidationError as e:
        msg = f"Invalid {model.__name__}: {format_validation_error(e)}"
        raise ConfigurationError(msg, cause=e) from e


class Settings(BaseModel):
    """Application settings for hosts embedding gateway-oauth.

    Settings can be loaded from:
    - Environment variables with GATEWAY_OAUTH_ prefix
    - Optional .env file in the working directory
    - Optional configuration file passed via CLI
    """

    app_name: str = Field(default="gateway-oauth", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")

    callback_host: str = Field(default="127.0.0.1", description="Callback server bind host")
    callback_port: int = Field(
        default=8765, ge=1, le=65535, description="Callback server bind port"
    )
    callback_path: str = Field(default="/oauth/callback", description="Callback route path")

    token_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet encryption key for token storage"
    )
    token_store_dir: str | None = Field(
        default=None, description="Directory for encrypted per-provider token files"
    )

    providers: dict[str, ProviderConfig] = Field(
        default_factory=dict, description="Provider configurations by name"
    )

    model_config = {
        "validate_assignment": True,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("callback_path")
    @classmethod
    def validate_callback_path(cls, v: str) -> str:
        if not v.startswith("/"):
            msg = "callback_path must start with '/'"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_token_store(self) -> Settings:
        """Validate token store configuration."""
        if self.token_store_dir and not self.token_encryption_key:
            msg = "token_encryption_key is required when token_store_dir is set"
            raise ValueError(msg)
        return self


def _get_env_value(key: str, prefix: str = ENV_PREFIX) -> str | None:
    """Get environment variable value with prefix."""
    return os.environ.get(f"{prefix}{key.upper()}")


def _load_env_config() -> dict[str, Any]:
    """Load settings from environment variables."""
    env_mapping = {
        "app_name": "APP_NAME",
        "log_level": "LOG_LEVEL",
        "callback_host": "CALLBACK_HOST",
        "callback_port": "CALLBACK_PORT",
        "callback_path": "CALLBACK_PATH",
        "token_encryption_key": "TOKEN_ENCRYPTION_KEY",
        "token_store_dir": "TOKEN_STORE_DIR",
    }

    config: dict[str, Any] = {}
    for field_name, env_suffix in env_mapping.items():
        value = _get_env_value(env_suffix)
        if value is not None:
            config[field_name] = value

    return config


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load settings from a file (JSON or YAML)."""
    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigurationError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    try:
        if suffix == ".json":
            data = json.loads(content)
        elif suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        else:
            msg = f"Unsupported configuration file format: {suffix}"
            raise ConfigurationError(msg)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        msg = f"Failed to parse configuration file {path}: {e}"
        raise ConfigurationError(msg, cause=e) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Configuration file {path} must contain a mapping"
        raise ConfigurationError(msg)
    return data


def _redact_for_log(key: str, value: Any) -> str:
    """Redact sensitive values for logging."""
    if key == "token_encryption_key" and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Settings:
    """Load and validate settings.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Args:
        path: Optional path to configuration file
        cli_args: Optional CLI argument overrides

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    load_dotenv()

    config_dict: dict[str, Any] = {}
    if path:
        logger.debug("Loading configuration from file: %s", path)
        config_dict.update(_load_file_config(path))

    for key, value in _load_env_config().items():
        config_dict[key] = value
        logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_dict[key] = value
                logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

    try:
        return Settings(**config_dict)
    except ValidationError as e:
        msg = f"Configuration validation failed: {format_validation_error(e)}"
        raise ConfigurationError(msg, cause=e) from e
