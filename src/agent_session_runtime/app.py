"""Agent Session Runtime application.

Creates the Starlette ASGI application around a protocol server.

Routes:
- /health - Liveness check with the attached client count
- /ws - WebSocket transport for the session protocol
- / - Static UI assets, when a static directory is configured
"""

from __future__ import annotations

import contextlib
import fnmatch
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route, WebSocketRoute
from starlette.staticfiles import StaticFiles
from starlette.websockets import WebSocket

from .config import RuntimeConfig
from .errors import SessionFactoryError
from .server import ProtocolServer
from .session import create_session
from .transport.websocket import AccessPolicy, serve_websocket

LOCAL_ORIGINS = ["http://localhost:*", "http://127.0.0.1:*"]


def create_app(server: ProtocolServer, config: RuntimeConfig | None = None) -> Starlette:
    """Create the application serving `server`.

    The lifespan binds the server to its session on startup and shuts it
    down on exit.
    """
    config = config or RuntimeConfig()
    policy = AccessPolicy(allowed_origins=list(config.allowed_origins), token=config.token)

    async def health(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "clients": server.hub.client_count,
                "sessionId": server.session.session_id,
            }
        )

    async def websocket_endpoint(websocket: WebSocket) -> None:
        await serve_websocket(websocket, server, policy)

    routes: list[Route | WebSocketRoute | Mount] = [
        Route("/health", health, methods=["GET"]),
        WebSocketRoute("/ws", websocket_endpoint),
    ]
    if config.static_dir:
        routes.append(Mount("/", app=StaticFiles(directory=config.static_dir, html=True), name="static"))

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await server.bind()
        try:
            yield
        finally:
            await server.shutdown()

    # CORS for the health check; same origin patterns as the WebSocket policy
    origin_patterns = config.allowed_origins or LOCAL_ORIGINS
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origin_regex="|".join(fnmatch.translate(p) for p in origin_patterns),
            allow_methods=["GET"],
            allow_headers=["*"],
        ),
    ]

    return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)


async def create_app_from_config(config: RuntimeConfig) -> Starlette:
    """Build the session from the configured factory and wrap it in an app.

    Raises:
        SessionFactoryError: If no factory is configured or it fails
    """
    if not config.session_factory:
        raise SessionFactoryError(
            "No session factory configured. Set AGENT_RUNTIME_SESSION_FACTORY "
            "or pass --session-factory module:attribute"
        )
    session = await create_session(config.session_factory)
    server = ProtocolServer(session, dialog_timeout=config.dialog_timeout)
    return create_app(server, config)
