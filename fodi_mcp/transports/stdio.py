"""Stdio transport: the FastMCP server speaks MCP over stdin/stdout."""

from __future__ import annotations

from fastmcp import FastMCP

from ..catalog import list_tools
from ..logging import get_logger

logger = get_logger(__name__)


def run_stdio(server: FastMCP, *, show_banner: bool = False) -> None:
    """Run the server until stdin closes.

    The banner is off by default because stdout carries protocol frames.
    """

    context = {"server": server.name, "tools": [tool.name for tool in list_tools()]}
    logger.info("transport.stdio.start", extra={"context": context})
    try:
        server.run(transport="stdio", show_banner=show_banner)
    except KeyboardInterrupt:
        logger.info("transport.stdio.interrupted", extra={"context": context})
        raise
    except Exception:
        logger.exception("transport.stdio.failed", extra={"context": context})
        raise
    else:
        logger.info("transport.stdio.stop", extra={"context": context})
