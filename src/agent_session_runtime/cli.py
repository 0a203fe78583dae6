"""Agent Session Runtime CLI.

Usage:
    agent-session-runtime serve --session-factory mypkg.agent:create
    agent-session-runtime serve --port 8080 --token s3cret --allowed-origin "http://localhost:*"
    agent-session-runtime rpc --session-factory mypkg.agent:create   # JSON lines on stdio
    agent-session-runtime health --url http://localhost:4096

Every option falls back to its AGENT_RUNTIME_* environment variable.
"""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import httpx

from .config import RuntimeConfig
from .errors import SessionFactoryError


def _configure_logging(level: str) -> None:
    # stdout carries the protocol in rpc mode
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load_config(**overrides: object) -> RuntimeConfig:
    try:
        config = RuntimeConfig.from_env()
    except ValueError as e:
        raise click.UsageError(f"Invalid AGENT_RUNTIME_* environment value: {e}") from e
    return config.with_overrides(**overrides)


def _session_options(func):  # type: ignore[no-untyped-def]
    func = click.option(
        "--log-level",
        type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
        help="Log level (logs go to stderr)",
    )(func)
    func = click.option(
        "--dialog-timeout",
        type=float,
        help="Seconds before an unanswered extension dialog resolves to its default",
    )(func)
    func = click.option(
        "--session-factory",
        help="Session factory as module:attribute (e.g. mypkg.agent:create_session)",
    )(func)
    return func


@click.group()
def main() -> None:
    """Agent Session Runtime - serve an agent session to remote clients."""


@main.command()
@click.option("--host", help="Host to bind to")
@click.option("--port", type=int, help="Port to bind to")
@click.option("--token", help="Shared secret clients must present")
@click.option(
    "--allowed-origin",
    "allowed_origins",
    multiple=True,
    help="Allowed WebSocket origin pattern (repeatable, * wildcards allowed)",
)
@click.option("--static-dir", type=click.Path(exists=True, file_okay=False), help="Serve UI assets from here")
@_session_options
def serve(
    host: str | None,
    port: int | None,
    token: str | None,
    allowed_origins: tuple[str, ...],
    static_dir: str | None,
    session_factory: str | None,
    dialog_timeout: float | None,
    log_level: str | None,
) -> None:
    """Serve the session over HTTP and WebSocket."""
    config = _load_config(
        host=host,
        port=port,
        token=token,
        allowed_origins=list(allowed_origins) or None,
        static_dir=static_dir,
        session_factory=session_factory,
        dialog_timeout=dialog_timeout,
        log_level=log_level.upper() if log_level else None,
    )
    _configure_logging(config.log_level)

    click.echo(f"Starting agent session runtime on http://{config.host}:{config.port}", err=True)
    if config.token:
        click.echo("  Clients must present the configured token", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    try:
        asyncio.run(_run_http_server(config))
    except SessionFactoryError as e:
        raise click.ClickException(str(e)) from e
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


async def _run_http_server(config: RuntimeConfig) -> None:
    import uvicorn

    from .app import create_app_from_config

    app = await create_app_from_config(config)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
        )
    )
    await server.serve()


@main.command()
@_session_options
def rpc(session_factory: str | None, dialog_timeout: float | None, log_level: str | None) -> None:
    """Serve the session as JSON lines over stdin/stdout."""
    config = _load_config(
        session_factory=session_factory,
        dialog_timeout=dialog_timeout,
        log_level=log_level.upper() if log_level else None,
    )
    _configure_logging(config.log_level)

    try:
        asyncio.run(_run_stdio_server(config))
    except SessionFactoryError as e:
        raise click.ClickException(str(e)) from e
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


async def _run_stdio_server(config: RuntimeConfig) -> None:
    from .server import ProtocolServer
    from .session import create_session
    from .transport.stdio import StdioServer

    if not config.session_factory:
        raise SessionFactoryError(
            "No session factory configured. Set AGENT_RUNTIME_SESSION_FACTORY "
            "or pass --session-factory module:attribute"
        )
    session = await create_session(config.session_factory)
    server = ProtocolServer(session, dialog_timeout=config.dialog_timeout)
    await server.bind()
    try:
        await StdioServer(server).run()
    finally:
        await server.shutdown()


@main.command()
@click.option("--url", default=None, help="Server URL (default: from host/port config)")
def health(url: str | None) -> None:
    """Check a running server and exit non-zero if it is unhealthy."""
    config = _load_config()
    if url is None:
        url = f"http://{config.client_host}:{config.port}"
    _do_health_check(url.rstrip("/"), timeout=config.request_timeout)


def _do_health_check(url: str, timeout: float) -> None:
    """Check server health, giving up after `timeout` seconds."""

    async def check() -> None:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(f"{url}/health")
                if response.status_code == 200:
                    data = response.json()
                    click.echo(f"Server is healthy: {data}")
                else:
                    click.echo(f"Server returned {response.status_code}", err=True)
                    sys.exit(1)
        except httpx.ConnectError:
            click.echo(f"Cannot connect to server at {url}", err=True)
            sys.exit(1)
        except httpx.TimeoutException:
            click.echo(f"Server at {url} did not answer within {timeout}s", err=True)
            sys.exit(1)

    asyncio.run(check())


if __name__ == "__main__":
    main()
