"""Static catalog of the tools advertised through ``tools/list``."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .errors import CONFIG_ERROR, FodiError

__all__ = ["ToolDescriptor", "TOOL_CATALOG", "list_tools", "get_tool", "check_routing"]


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": _thaw(self.input_schema),
        }


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


def _tool(name: str, description: str, schema: dict[str, Any]) -> ToolDescriptor:
    return ToolDescriptor(name=name, description=description, input_schema=_freeze(schema))


_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

TOOL_CATALOG: tuple[ToolDescriptor, ...] = (
    _tool(
        "list_files",
        "List files and folders in a OneDrive directory",
        {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory path to list (default: root)",
                    "default": "/",
                },
            },
        },
    ),
    _tool(
        "search_files",
        "Search for files in OneDrive. Without native drive search this matches "
        "file names in a single directory only (not recursive, not full-text).",
        {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "minLength": 1,
                    "description": "Search query",
                },
                "path": {
                    "type": "string",
                    "description": "Directory scanned when falling back to name matching (default: root)",
                    "default": "/",
                },
            },
            "required": ["query"],
        },
    ),
    _tool(
        "get_file_info",
        "Get detailed information about a specific file",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "minLength": 1, "description": "File path"},
            },
            "required": ["path"],
        },
    ),
    _tool(
        "get_download_url",
        "Get download URL for a file",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "minLength": 1, "description": "File path"},
            },
            "required": ["path"],
        },
    ),
    _tool("get_auth_url", "Get OneDrive OAuth authorization URL", _EMPTY_SCHEMA),
    _tool("get_fodi_info", "Get FODI configuration and status information", _EMPTY_SCHEMA),
)

_BY_NAME: Mapping[str, ToolDescriptor] = MappingProxyType({tool.name: tool for tool in TOOL_CATALOG})


def list_tools() -> tuple[ToolDescriptor, ...]:
    """Return the advertised tools in listing order."""

    return TOOL_CATALOG


def get_tool(name: str) -> ToolDescriptor | None:
    return _BY_NAME.get(name)


def check_routing(handler_names: Iterable[str]) -> None:
    """Fail fast unless every catalog entry has exactly one handler and vice versa."""

    counts = Counter(list(handler_names))
    catalog_names = {tool.name for tool in TOOL_CATALOG}
    duplicated = sorted(name for name, count in counts.items() if count > 1)
    missing = sorted(catalog_names.difference(counts))
    unexpected = sorted(set(counts).difference(catalog_names))
    if duplicated or missing or unexpected or len(_BY_NAME) != len(TOOL_CATALOG):
        raise FodiError(
            CONFIG_ERROR,
            "Tool catalog and dispatch table are out of sync",
            details={"missing": missing, "unexpected": unexpected, "duplicated": duplicated},
        )
