"""Tool dispatcher: validates ``tools/call`` requests and routes them to handlers.

Every call produces a ``ToolCallResult`` with a single text item. Failures are
folded into that same envelope as ``"Error: <message>"`` text so a failing
tool never surfaces as a transport fault.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Mapping

from jsonschema import exceptions as jsonschema_exceptions, validators as jsonschema_validators

from . import metrics
from .auth import AuthProvider
from .catalog import check_routing, list_tools
from .errors import INTERNAL_ERROR, UNKNOWN_TOOL, VALIDATION_ERROR, FodiError
from .logging import get_logger
from .models import FileMeta, ToolCallRequest, ToolCallResult
from .storage import FileStore

LOGGER = get_logger(__name__)

SEARCH_FALLBACK_NOTE = (
    "Search is limited to case-insensitive filename matching in a single directory; "
    "it is neither recursive nor full-text."
)
SEARCH_PATH_IGNORED_NOTE = "Search covers the whole exposed drive; 'path' only scopes the filename fallback."

FODI_FEATURES = (
    "File browsing and downloading",
    "MCP protocol support",
    "Server-Sent Events (SSE)",
    "OAuth authorization flow",
)


@dataclass(frozen=True, slots=True)
class ListFilesArgs:
    path: str = "/"


@dataclass(frozen=True, slots=True)
class SearchFilesArgs:
    query: str
    path: str = "/"


@dataclass(frozen=True, slots=True)
class PathArgs:
    path: str


@dataclass(frozen=True, slots=True)
class NoArgs:
    pass


@dataclass(frozen=True, slots=True)
class ServerInfo:
    name: str = "FODI"
    version: str = "1.0.0"
    description: str = "OneDrive Directory Index"
    exposed_path: str = "/"
    api_host: str = ""
    endpoints: Mapping[str, str] | None = None


ToolHandler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class _Route:
    handler: ToolHandler
    args_type: type
    operation: str | None


class ToolDispatcher:
    """Routes tool calls to handlers backed by the drive and OAuth collaborators."""

    def __init__(
        self,
        store: FileStore,
        auth: AuthProvider,
        *,
        info: ServerInfo | None = None,
        status_provider: Callable[[], Mapping[str, Any]] | None = None,
    ) -> None:
        self._store = store
        self._auth = auth
        self._info = info or ServerInfo()
        self._status_provider = status_provider
        self._routes: dict[str, _Route] = {
            "list_files": _Route(self._list_files, ListFilesArgs, "list files"),
            "search_files": _Route(self._search_files, SearchFilesArgs, "search files"),
            "get_file_info": _Route(self._get_file_info, PathArgs, "get file info"),
            "get_download_url": _Route(self._get_download_url, PathArgs, "get download URL"),
            "get_auth_url": _Route(self._get_auth_url, NoArgs, "get auth URL"),
            "get_fodi_info": _Route(self._get_fodi_info, NoArgs, None),
        }
        check_routing(tuple(self._routes))
        self._validators: dict[str, Any] = {}
        for tool in list_tools():
            schema = tool.to_dict()["inputSchema"]
            validator_cls = jsonschema_validators.validator_for(schema)
            validator_cls.check_schema(schema)
            self._validators[tool.name] = validator_cls(schema)

    @property
    def handler_names(self) -> tuple[str, ...]:
        return tuple(self._routes)

    async def call(self, request: ToolCallRequest) -> ToolCallResult:
        route = self._routes.get(request.name)
        if route is None:
            metrics.record_error(UNKNOWN_TOOL)
            return ToolCallResult.error_result(f"Unknown tool: {request.name}")

        metrics.record_tool_call(request.name)
        try:
            args = self._parse_arguments(request.name, route.args_type, request.arguments)
            try:
                payload = await route.handler(args)
            except FodiError as exc:
                raise exc.wrap(route.operation) if route.operation else exc
            except Exception as exc:
                if route.operation is None:
                    raise
                raise FodiError(INTERNAL_ERROR, f"Failed to {route.operation}: {exc}") from exc
        except FodiError as exc:
            metrics.record_error(exc.code)
            LOGGER.info(
                "tool.call.failed",
                extra={"context": {"tool": request.name, "code": exc.code, "message": exc.message}},
            )
            return ToolCallResult.error_result(exc.message)
        except Exception as exc:
            metrics.record_error(INTERNAL_ERROR)
            LOGGER.exception("tool.call.crashed", extra={"context": {"tool": request.name}})
            return ToolCallResult.error_result(str(exc) or exc.__class__.__name__)
        return ToolCallResult.text_result(payload)

    def _parse_arguments(self, name: str, args_type: type, arguments: Any) -> Any:
        validator = self._validators[name]
        error = jsonschema_exceptions.best_match(validator.iter_errors(arguments))
        if error is not None:
            raise FodiError(VALIDATION_ERROR, f"Invalid arguments for {name}: {error.message}")
        known = {item.name for item in fields(args_type)}
        return args_type(**{key: value for key, value in arguments.items() if key in known})

    async def _list_files(self, args: ListFilesArgs) -> dict[str, Any]:
        listing = await self._store.list(args.path or "/")
        files = [item.to_dict() for item in listing.files]
        return {
            "path": listing.path,
            "files": files,
            "total": len(files),
            "hasMore": listing.has_more,
        }

    async def _search_files(self, args: SearchFilesArgs) -> dict[str, Any]:
        if getattr(self._store, "supports_search", False):
            found = await self._store.search(args.query)
            results = [item.to_dict() for item in found.files]
            payload: dict[str, Any] = {"query": args.query, "results": results, "total": len(results)}
            if args.path and args.path != "/":
                payload["note"] = SEARCH_PATH_IGNORED_NOTE
            return payload

        listing = await self._store.list(args.path or "/")
        needle = args.query.lower()
        matches = [item.to_dict() for item in listing.files if needle in item.name.lower()]
        return {
            "query": args.query,
            "path": listing.path,
            "results": matches,
            "total": len(matches),
            "note": SEARCH_FALLBACK_NOTE,
        }

    async def _get_file_info(self, args: PathArgs) -> dict[str, Any]:
        meta: FileMeta = await self._store.info(args.path)
        return {**meta.to_dict(), "path": args.path}

    async def _get_download_url(self, args: PathArgs) -> dict[str, Any]:
        meta = await self._store.info(args.path)
        url = await self._store.download_url(args.path)
        return {"path": args.path, "download_url": url, "name": meta.name, "size": meta.size}

    async def _get_auth_url(self, _args: NoArgs) -> dict[str, Any]:
        return {
            "auth_url": self._auth.authorization_url(),
            "client_id": self._auth.client_id,
            "redirect_uri": self._auth.redirect_uri,
            "scope": self._auth.scope,
        }

    async def _get_fodi_info(self, _args: NoArgs) -> dict[str, Any]:
        info = self._info
        payload: dict[str, Any] = {
            "name": info.name,
            "version": info.version,
            "description": info.description,
            "features": list(FODI_FEATURES),
            "configuration": {
                "exposed_path": info.exposed_path,
                "api_host": info.api_host,
                "native_search": bool(getattr(self._store, "supports_search", False)),
            },
            "endpoints": dict(info.endpoints or {}),
        }
        if self._status_provider is not None:
            payload["sse"] = dict(self._status_provider())
        return payload
