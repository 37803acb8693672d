"""Server entrypoint wiring the dispatcher, SSE registry, and transports."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from fastmcp import FastMCP
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import ToolResult
from mcp import types as mcp_types

from . import metrics
from .auth import AuthProvider, OneDriveOAuth
from .catalog import get_tool
from .config import Config, ConfigError, load_config
from .dispatcher import ServerInfo, ToolDispatcher
from .errors import CONFIG_ERROR, FodiError
from .eviction import LivenessSweeper
from .logging import configure_logging, get_logger
from .models import ToolCallRequest
from .sse import ConnectionRegistry
from .storage import FileStore, GraphFileStore
from .transports import HttpTransportConfig, describe_routes, run_http, run_stdio

LOGGER = get_logger(__name__)
SERVER = FastMCP(name="fodi-mcp")
# ToolDispatcher validates arguments against the catalog schemas.
SERVER._mcp_server.call_tool(validate_input=False)(SERVER._mcp_call_tool)


@dataclass(slots=True)
class AppState:
    config: Config
    store: FileStore
    auth: AuthProvider
    registry: ConnectionRegistry
    dispatcher: ToolDispatcher
    sweeper: LivenessSweeper

    async def aclose(self) -> None:
        await self.sweeper.stop()
        self.registry.close_all()
        await self.store.aclose()
        await self.auth.aclose()


APP_STATE: AppState | None = None


def http_transport_config(config: Config) -> HttpTransportConfig:
    return HttpTransportConfig(
        host=config.http_host,
        port=config.http_port,
        http_path=config.http_path,
        sse_path=config.sse_path,
        metrics_path=config.metrics_path,
        enable_metrics=config.enable_metrics,
        enable_sse=config.enable_sse,
        socket_path=config.http_socket_path,
    )


def build_state(
    config: Config,
    *,
    store: FileStore | None = None,
    auth: AuthProvider | None = None,
) -> AppState:
    """Assemble collaborators and core components for one process."""

    timeout = config.request_timeout.total_seconds()
    if store is None:
        store = GraphFileStore(
            api_host=config.api_host,
            exposed_path=config.exposed_path,
            access_token=config.access_token,
            timeout=timeout,
        )
    if auth is None:
        auth = OneDriveOAuth(
            client_id=config.onedrive_client_id,
            client_secret=config.onedrive_client_secret,
            redirect_uri=config.onedrive_redirect_uri,
            oauth_url=config.oauth_url,
            scope=config.oauth_scope,
            timeout=timeout,
        )
    registry = ConnectionRegistry(timeout=config.client_timeout)
    info = ServerInfo(
        name="FODI",
        version=config.server_version,
        exposed_path=config.exposed_path,
        api_host=config.api_host,
        endpoints=describe_routes(http_transport_config(config)),
    )
    dispatcher = ToolDispatcher(
        store,
        auth,
        info=info,
        status_provider=registry.status if config.enable_sse else None,
    )
    sweeper = LivenessSweeper(registry, interval=config.ping_interval)
    return AppState(
        config=config,
        store=store,
        auth=auth,
        registry=registry,
        dispatcher=dispatcher,
        sweeper=sweeper,
    )


def initialize_app(
    config: Config,
    *,
    store: FileStore | None = None,
    auth: AuthProvider | None = None,
) -> AppState:
    """Initialise application state for tool handlers and transports."""

    global APP_STATE
    state = build_state(config, store=store, auth=auth)
    metrics.install_registry(metrics.MetricsRegistry() if config.enable_metrics else None)
    APP_STATE = state
    return state


def shutdown_app() -> None:
    """Clear application state; async resources are released by the transport that owns them."""

    global APP_STATE
    if APP_STATE is None:
        return
    APP_STATE.registry.close_all()
    metrics.install_registry(None)
    APP_STATE = None


def get_state() -> AppState:
    if APP_STATE is None:
        raise FodiError(CONFIG_ERROR, "Server is not initialised")
    return APP_STATE


async def _call_tool(name: str, arguments: dict[str, Any]) -> str:
    present = {key: value for key, value in arguments.items() if value is not None}
    result = await get_state().dispatcher.call(ToolCallRequest(name=name, arguments=present))
    return result.text


class UnknownToolMiddleware(Middleware):
    """Answer calls for tools outside the catalog through the dispatcher."""

    async def on_call_tool(
        self,
        context: MiddlewareContext[mcp_types.CallToolRequestParams],
        call_next: CallNext[mcp_types.CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        if get_tool(context.message.name) is not None:
            return await call_next(context)
        text = await _call_tool(context.message.name, dict(context.message.arguments or {}))
        return ToolResult(content=[mcp_types.TextContent(type="text", text=text)])


SERVER.add_middleware(UnknownToolMiddleware())


def _register(name: str, impl):
    descriptor = get_tool(name)
    if descriptor is None:  # pragma: no cover - guarded by catalog tests
        raise FodiError(CONFIG_ERROR, f"Tool {name} is missing from the catalog")
    tool = SERVER.tool(name=name, description=descriptor.description)(impl)
    tool.parameters = descriptor.to_dict()["inputSchema"]
    return tool


async def _list_files_impl(path: str | None = None) -> str:
    return await _call_tool("list_files", {"path": path})


async def _search_files_impl(query: str | None = None, path: str | None = None) -> str:
    return await _call_tool("search_files", {"query": query, "path": path})


async def _get_file_info_impl(path: str | None = None) -> str:
    return await _call_tool("get_file_info", {"path": path})


async def _get_download_url_impl(path: str | None = None) -> str:
    return await _call_tool("get_download_url", {"path": path})


async def _get_auth_url_impl() -> str:
    return await _call_tool("get_auth_url", {})


async def _get_fodi_info_impl() -> str:
    return await _call_tool("get_fodi_info", {})


list_files = _register("list_files", _list_files_impl)
search_files = _register("search_files", _search_files_impl)
get_file_info = _register("get_file_info", _get_file_info_impl)
get_download_url = _register("get_download_url", _get_download_url_impl)
get_auth_url = _register("get_auth_url", _get_auth_url_impl)
get_fodi_info = _register("get_fodi_info", _get_fodi_info_impl)


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for running the FODI MCP server."""

    configure_logging()
    try:
        config = load_config(argv)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc
    configure_logging(config.log_level)
    LOGGER.info(
        "Configuration loaded",
        extra={
            "context": {
                "transport": config.transport,
                "environment": config.environment,
                "enable_sse": config.enable_sse,
                "enable_metrics": config.enable_metrics,
                "exposed_path": config.exposed_path,
            }
        },
    )

    try:
        state = initialize_app(config)
    except FodiError as exc:
        LOGGER.error("Failed to initialise server", exc_info=exc, extra={"context": exc.details or {}})
        raise SystemExit(1) from exc

    try:
        if config.transport == "stdio":
            try:
                run_stdio(SERVER)
            finally:
                asyncio.run(state.aclose())
        else:
            run_http(state, http_transport_config(config))
    finally:
        shutdown_app()


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    main()
