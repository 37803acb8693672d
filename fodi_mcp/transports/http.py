"""HTTP and SSE transport implementation."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Mapping

import uvicorn
from fastmcp.utilities.logging import temporary_log_level
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.routing import BaseRoute, Route

from .. import metrics
from ..catalog import list_tools
from ..errors import FodiError
from ..logging import get_logger
from ..models import FileChangeEvent, FileMeta
from ..rpc import RpcError, handle_message, parse_envelope
from ..sse import REASON_DISCONNECTED, QueueChannel

if TYPE_CHECKING:
    from ..server import AppState

logger = get_logger(__name__)

OAUTH_CALLBACK_PATH = "/oauth/callback"
SIMULATE_CHANGE_PATH = "/simulate-change"
HEALTH_PATH = "/healthz"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SSE_DISABLED_BODY = {"error": "SSE is disabled"}


@dataclass(slots=True)
class HttpTransportConfig:
    """Configuration for the HTTP/SSE transport layer."""

    host: str
    port: int
    http_path: str
    sse_path: str
    metrics_path: str
    enable_metrics: bool
    enable_sse: bool
    socket_path: Path | None = None


def describe_routes(config: HttpTransportConfig) -> Mapping[str, str]:
    """Return a mapping of logical endpoints to their configured paths."""

    routes: dict[str, str] = {"http": _normalise_path(config.http_path)}
    if config.enable_sse:
        sse_path = _normalise_path(config.sse_path)
        routes["sse"] = sse_path
        routes["sse_status"] = _status_path(sse_path)
        routes["simulate_change"] = SIMULATE_CHANGE_PATH
    routes["oauth_callback"] = OAUTH_CALLBACK_PATH
    routes["health"] = HEALTH_PATH
    if config.enable_metrics:
        routes["metrics"] = _normalise_path(config.metrics_path)
    return routes


def run_http(state: AppState, config: HttpTransportConfig) -> None:
    """Serve the Starlette application with uvicorn until interrupted."""

    routes = describe_routes(config)
    context = {
        "host": config.host,
        "port": config.port,
        "routes": routes,
        "socket_path": str(config.socket_path) if config.socket_path else None,
    }

    async def _serve() -> None:
        app = build_transport_app(state, config)
        log_level = logger.level if isinstance(logger.level, int) else None

        uvicorn_kwargs: dict[str, object] = {
            "timeout_graceful_shutdown": 0,
            "lifespan": "on",
        }
        if config.socket_path is not None:
            uvicorn_kwargs["uds"] = str(config.socket_path)

        uvicorn_config = uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            **uvicorn_kwargs,
        )
        server_instance = uvicorn.Server(uvicorn_config)

        logger.info("transport.http.serve", extra={"context": context})
        with temporary_log_level(level=log_level):
            await server_instance.serve()

    logger.info("transport.http.start", extra={"context": context})
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("transport.http.interrupted", extra={"context": context})
        raise
    except Exception:
        logger.exception("transport.http.failed", extra={"context": context})
        raise
    else:
        logger.info("transport.http.stop", extra={"context": context})


def build_transport_app(state: AppState, config: HttpTransportConfig) -> Starlette:
    """Create the Starlette application exposing JSON-RPC, SSE, and admin routes."""

    http_path = _normalise_path(config.http_path)
    sse_path = _normalise_path(config.sse_path)
    registry = state.registry
    app_config = state.config

    async def mcp_endpoint(request: Request) -> Response:
        body = await request.body()
        try:
            message = parse_envelope(body)
        except RpcError as exc:
            return JSONResponse(exc.to_response(), status_code=400)
        response = await handle_message(
            state.dispatcher,
            message,
            server_name=app_config.server_name,
            server_version=app_config.server_version,
        )
        if response is None:
            return Response(status_code=202)
        return JSONResponse(response)

    async def sse_endpoint(request: Request) -> Response:
        if not config.enable_sse:
            return JSONResponse(SSE_DISABLED_BODY, status_code=501)
        client_id = registry.new_client_id()
        channel = QueueChannel(app_config.sse_queue_size)
        registry.add_client(client_id, channel)
        return StreamingResponse(
            _stream_channel(state, client_id, channel),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    async def sse_status_endpoint(_request: Request) -> Response:
        if not config.enable_sse:
            return JSONResponse(SSE_DISABLED_BODY, status_code=501)
        return JSONResponse(registry.status())

    async def simulate_change_endpoint(request: Request) -> Response:
        if not config.enable_sse:
            return JSONResponse(SSE_DISABLED_BODY, status_code=501)
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"error": "Request body must be valid JSON"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)
        try:
            event = FileChangeEvent(
                kind=str(body.get("kind") or body.get("type") or ""),
                file=FileMeta.from_dict(body.get("file") or {}),
            )
        except FodiError as exc:
            return JSONResponse({"error": exc.to_dict()}, status_code=400)
        delivered = registry.notify_file_change(event)
        return JSONResponse(
            {"success": True, "message": "Change event broadcasted", "delivered": delivered}
        )

    async def oauth_callback_endpoint(request: Request) -> Response:
        error = request.query_params.get("error")
        if error:
            return JSONResponse({"error": "OAuth failed", "details": error}, status_code=400)
        code = request.query_params.get("code")
        if not code:
            return JSONResponse({"error": "Authorization code missing"}, status_code=400)
        try:
            tokens = await state.auth.exchange_code(code)
        except FodiError as exc:
            metrics.record_error(exc.code)
            logger.warning("auth.callback.failed", extra={"context": {"code": exc.code}})
            return JSONResponse({"error": "Token exchange failed", "details": exc.message}, status_code=500)
        set_token = getattr(state.store, "set_access_token", None)
        if callable(set_token):
            set_token(tokens.access_token)
        logger.info("auth.callback.completed")
        return JSONResponse({"success": True, **tokens.to_dict()})

    async def health_endpoint(_request: Request) -> Response:
        return JSONResponse({"status": "ok"})

    async def root_endpoint(_request: Request) -> Response:
        return JSONResponse(
            {
                "name": app_config.server_name,
                "version": app_config.server_version,
                "description": "FODI OneDrive MCP Server with SSE support",
                "environment": app_config.environment,
                "transport": app_config.transport,
                "sse_enabled": config.enable_sse,
                "tools": [tool.name for tool in list_tools()],
                "endpoints": dict(describe_routes(config)),
            }
        )

    async def metrics_endpoint(_request: Request) -> Response:
        registry_metrics = metrics.get_registry_optional()
        if registry_metrics is None:
            return PlainTextResponse("metrics unavailable\n", status_code=503)
        body = metrics.format_prometheus(
            registry_metrics.snapshot(),
            sse_clients_current=registry.client_count(),
        )
        return PlainTextResponse(body, media_type="text/plain; version=0.0.4")

    routes: list[BaseRoute] = [
        Route(http_path, endpoint=mcp_endpoint, methods=["POST"]),
        Route(sse_path, endpoint=sse_endpoint, methods=["GET"]),
        Route(_status_path(sse_path), endpoint=sse_status_endpoint, methods=["GET"]),
        Route(SIMULATE_CHANGE_PATH, endpoint=simulate_change_endpoint, methods=["POST"]),
        Route(OAUTH_CALLBACK_PATH, endpoint=oauth_callback_endpoint, methods=["GET"]),
        Route(HEALTH_PATH, endpoint=health_endpoint, methods=["GET"]),
        Route("/", endpoint=root_endpoint, methods=["GET"]),
    ]
    if config.enable_metrics:
        routes.append(Route(_normalise_path(config.metrics_path), endpoint=metrics_endpoint, methods=["GET"]))

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "Mcp-Session-Id"],
        )
    ]

    @asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncIterator[None]:
        state.sweeper.start()
        try:
            yield
        finally:
            await state.aclose()

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.fodi = state
    app.state.path = http_path
    return app


async def _stream_channel(state: AppState, client_id: str, channel: QueueChannel) -> AsyncIterator[bytes]:
    try:
        async for frame in channel:
            yield frame
    finally:
        # No-op when the registry already dropped the client.
        state.registry.remove_client(client_id, reason=REASON_DISCONNECTED)


def _status_path(sse_path: str) -> str:
    return "/status" if sse_path == "/" else f"{sse_path}/status"


def _normalise_path(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path