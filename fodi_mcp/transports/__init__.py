"""Transports for the FODI MCP server."""

from __future__ import annotations

from .http import HttpTransportConfig, build_transport_app, describe_routes, run_http
from .stdio import run_stdio

__all__ = [
    "HttpTransportConfig",
    "build_transport_app",
    "describe_routes",
    "run_http",
    "run_stdio",
]
