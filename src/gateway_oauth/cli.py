"""Command-line interface for gateway-oauth.

Lets operators inspect configured providers and acquire a token by hand,
serving the OAuth callback locally for interactive providers.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer

from gateway_oauth import __version__
from gateway_oauth.config import Settings, load_config
from gateway_oauth.errors import AuthenticationError, ConfigurationError
from gateway_oauth.logging_config import get_logger, setup_logging
from gateway_oauth.oauth.token_store import TokenStorage, TokenStoreError, create_token_storage

if TYPE_CHECKING:
    from gateway_oauth.security import AuthProvider

app = typer.Typer(
    name="gateway-oauth",
    help="gateway-oauth - OAuth 2.0 credentials for MCP gateway upstreams",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"gateway-oauth version {__version__}")
        typer.echo(f"Python {sys.version}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """gateway-oauth CLI."""


def _load_settings(config_path: str | None, log_level: str | None) -> Settings:
    cli_args: dict[str, Any] = {}
    if log_level:
        cli_args["log_level"] = log_level
    settings = load_config(path=config_path, cli_args=cli_args)
    setup_logging(settings)
    return settings


def _describe_provider(config: Any) -> str:
    parts = [config.type]
    client_id = getattr(config, "client_id", None)
    if client_id:
        parts.append(f"client={client_id}")
    endpoint = getattr(config, "token_endpoint", None)
    if endpoint:
        parts.append(f"token_endpoint={endpoint}")
    return " ".join(parts)


def redact_header_value(value: str) -> str:
    """Keep the scheme and a short token prefix of an Authorization value."""
    scheme, _, token = value.partition(" ")
    if not token:
        return f"{value[:4]}..."
    return f"{scheme} {token[:6]}..."


def _storage_for(settings: Settings, name: str) -> TokenStorage:
    """Per-provider storage: an encrypted file if a store dir is configured."""
    if settings.token_store_dir and settings.token_encryption_key:
        return create_token_storage(
            encryption_key=settings.token_encryption_key.get_secret_value(),
            file_path=Path(settings.token_store_dir) / f"{name}.token",
        )
    return create_token_storage()


async def _acquire_headers(settings: Settings, name: str) -> dict[str, str]:
    """Build the named provider and fetch its headers.

    For authorization code providers the callback app is served with
    uvicorn until the flow settles.
    """
    from gateway_oauth.callback import create_callback_app
    from gateway_oauth.oauth.authorization_code import AuthorizationCodeProvider
    from gateway_oauth.oauth.flow_registry import FlowRegistry
    from gateway_oauth.security import build_auth_provider

    logger = get_logger(__name__)

    provider_config = settings.providers.get(name)
    if provider_config is None:
        msg = f"Unknown provider: {name}"
        raise ConfigurationError(msg)

    registry = FlowRegistry()
    provider: AuthProvider = build_auth_provider(
        provider_config,
        storage=_storage_for(settings, name),
        flow_registry=registry,
    )

    server = None
    server_task: asyncio.Task[None] | None = None
    if isinstance(provider, AuthorizationCodeProvider):
        import uvicorn

        callback_app = create_callback_app(registry, settings.callback_path, settings.app_name)
        server = uvicorn.Server(
            uvicorn.Config(
                app=callback_app,
                host=settings.callback_host,
                port=settings.callback_port,
                log_level="warning",
            )
        )
        server_task = asyncio.create_task(server.serve())
        logger.info(
            "Serving OAuth callback on http://%s:%d%s",
            settings.callback_host,
            settings.callback_port,
            settings.callback_path,
        )

    try:
        async with provider:
            return await provider.get_headers()
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task


@app.command()
def providers(
    config_path: str = typer.Option(
        ...,
        "--config",
        "-c",
        help="Path to configuration file (JSON or YAML)",
    ),
) -> None:
    """List configured providers."""
    try:
        settings = _load_settings(config_path, None)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None

    if not settings.providers:
        typer.echo("No providers configured")
        return

    for name, config in sorted(settings.providers.items()):
        typer.echo(f"{name}: {_describe_provider(config)}")


@app.command()
def token(
    name: str = typer.Argument(..., help="Provider name from the configuration file"),
    config_path: str = typer.Option(
        ...,
        "--config",
        "-c",
        help="Path to configuration file (JSON or YAML)",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
    reveal: bool = typer.Option(
        False,
        "--reveal",
        help="Print the full header value instead of a redacted prefix",
    ),
) -> None:
    """Acquire a token for a provider and print its headers."""
    try:
        settings = _load_settings(config_path, log_level)
        headers = asyncio.run(_acquire_headers(settings, name))
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except AuthenticationError as e:
        typer.echo(f"Authentication failed: {e}", err=True)
        raise typer.Exit(code=1) from None
    except TokenStoreError as e:
        typer.echo(f"Token storage error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        typer.echo("Interrupted", err=True)
        raise typer.Exit(code=130) from None

    if not headers:
        typer.echo("(no headers)")
    for header, value in headers.items():
        typer.echo(f"{header}: {value if reveal else redact_header_value(value)}")


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"gateway-oauth version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
