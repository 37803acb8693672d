from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

from .logging import get_logger

if TYPE_CHECKING:
    from .sse import ConnectionRegistry

LOGGER = get_logger(__name__)

DEFAULT_PING_INTERVAL = timedelta(seconds=15)


class LivenessSweeper:
    """Background task that pings SSE clients and evicts stale ones."""

    def __init__(self, registry: ConnectionRegistry, *, interval: timedelta = DEFAULT_PING_INTERVAL) -> None:
        self._registry = registry
        minimum_interval = max(interval.total_seconds(), 0.01)
        self._interval = timedelta(seconds=minimum_interval)
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""

        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="fodi-mcp-liveness-sweeper")

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval.total_seconds())
            try:
                evicted = self._registry.sweep()
                if evicted:
                    LOGGER.info(
                        "sse.sweep.evicted",
                        extra={
                            "context": {
                                "client_ids": evicted,
                                "remaining": self._registry.client_count(),
                            }
                        },
                    )
            except Exception:
                LOGGER.exception("Liveness sweep failed")
