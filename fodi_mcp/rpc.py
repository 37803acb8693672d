"""JSON-RPC 2.0 envelope handling for the tool endpoint."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Mapping

from .catalog import list_tools
from .models import ToolCallRequest

if TYPE_CHECKING:
    from .dispatcher import ToolDispatcher

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

PROTOCOL_VERSION = "2025-06-18"


class RpcError(Exception):
    def __init__(self, code: int, message: str, *, request_id: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.request_id = request_id

    def to_response(self) -> dict[str, Any]:
        return error_response(self.request_id, self.code, self.message)


def error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def parse_envelope(body: bytes | str) -> dict[str, Any]:
    """Decode a single JSON-RPC request object or raise ``RpcError``."""

    try:
        message = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RpcError(PARSE_ERROR, "Parse error") from exc
    if not isinstance(message, dict):
        raise RpcError(INVALID_REQUEST, "Invalid Request: expected a JSON object")
    request_id = message.get("id")
    if message.get("jsonrpc") != "2.0":
        raise RpcError(INVALID_REQUEST, "Invalid Request: jsonrpc must be '2.0'", request_id=request_id)
    if not isinstance(message.get("method"), str):
        raise RpcError(INVALID_REQUEST, "Invalid Request: method must be a string", request_id=request_id)
    return message


async def handle_message(
    dispatcher: ToolDispatcher,
    message: Mapping[str, Any],
    *,
    server_name: str,
    server_version: str,
) -> dict[str, Any] | None:
    """Answer one request; returns ``None`` for notifications."""

    method = message["method"]
    if "id" not in message:
        return None
    request_id = message["id"]
    params = message.get("params") or {}

    if method == "initialize":
        result: dict[str, Any] = {
            "protocolVersion": _negotiate_version(params),
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": server_name, "version": server_version},
        }
    elif method == "ping":
        result = {}
    elif method == "tools/list":
        result = {"tools": [tool.to_dict() for tool in list_tools()]}
    elif method == "tools/call":
        if not isinstance(params, Mapping) or not isinstance(params.get("name"), str):
            return error_response(request_id, INVALID_PARAMS, "Invalid params: 'name' must be a string")
        outcome = await dispatcher.call(ToolCallRequest.from_params(params))
        result = outcome.to_dict()
    else:
        return error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _negotiate_version(params: Any) -> str:
    if isinstance(params, Mapping):
        requested = params.get("protocolVersion")
        if isinstance(requested, str) and requested:
            return requested
    return PROTOCOL_VERSION
