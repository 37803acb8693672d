from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import RecordingChannel
from fodi_mcp.eviction import LivenessSweeper
from fodi_mcp.sse import ConnectionRegistry


class _CountingRegistry:
    def __init__(self, *, fail_first: bool = False) -> None:
        self.sweeps = 0
        self.fail_first = fail_first

    def sweep(self) -> list[str]:
        self.sweeps += 1
        if self.fail_first and self.sweeps == 1:
            raise RuntimeError("sweep exploded")
        return []

    def client_count(self) -> int:
        return 0


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.mark.anyio
async def test_sweeper_runs_periodically_until_stopped() -> None:
    registry = _CountingRegistry()
    sweeper = LivenessSweeper(registry, interval=timedelta(milliseconds=10))

    sweeper.start()
    assert sweeper.running
    await _wait_for(lambda: registry.sweeps >= 3)
    await sweeper.stop()

    assert not sweeper.running
    count = registry.sweeps
    await asyncio.sleep(0.05)
    assert registry.sweeps == count


@pytest.mark.anyio
async def test_sweeper_survives_a_failing_pass() -> None:
    registry = _CountingRegistry(fail_first=True)
    sweeper = LivenessSweeper(registry, interval=timedelta(milliseconds=10))

    sweeper.start()
    try:
        await _wait_for(lambda: registry.sweeps >= 2)
    finally:
        await sweeper.stop()


@pytest.mark.anyio
async def test_start_twice_keeps_single_task() -> None:
    registry = _CountingRegistry()
    sweeper = LivenessSweeper(registry, interval=timedelta(seconds=60))

    sweeper.start()
    first = sweeper._task  # type: ignore[attr-defined]
    sweeper.start()

    assert sweeper._task is first  # type: ignore[attr-defined]
    await sweeper.stop()


@pytest.mark.anyio
async def test_stop_without_start_is_noop() -> None:
    sweeper = LivenessSweeper(_CountingRegistry())

    await sweeper.stop()

    assert not sweeper.running


@pytest.mark.anyio
async def test_sweeper_evicts_silent_clients_from_real_registry() -> None:
    now = [0.0]
    registry = ConnectionRegistry(timeout=timedelta(seconds=30), clock=lambda: now[0])
    channel = RecordingChannel()
    registry.add_client("idle", channel)
    now[0] = 45.0
    sweeper = LivenessSweeper(registry, interval=timedelta(milliseconds=10))

    sweeper.start()
    try:
        await _wait_for(lambda: registry.client_count() == 0)
    finally:
        await sweeper.stop()

    assert channel.closed is True
