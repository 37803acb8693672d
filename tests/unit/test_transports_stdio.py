from __future__ import annotations

from typing import Any

import pytest
from fastmcp import Client

from conftest import FakeAuth, FakeFileStore
from fodi_mcp import load_config
from fodi_mcp.config import ConfigError
from fodi_mcp.server import SERVER, AppState, build_state, initialize_app, shutdown_app
from fodi_mcp.server import main as run_main
from fodi_mcp.transports.stdio import run_stdio


class _DummyServer:
    name = "dummy"

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def run(self, *, transport: str, show_banner: bool) -> None:
        self.calls.append({"transport": transport, "show_banner": show_banner})


def test_run_stdio_invokes_fastmcp_without_banner() -> None:
    dummy = _DummyServer()

    run_stdio(dummy)

    assert dummy.calls == [{"transport": "stdio", "show_banner": False}]


def test_run_stdio_propagates_keyboard_interrupt() -> None:
    class InterruptingServer:
        name = "interrupting"

        def run(self, *, transport: str, show_banner: bool) -> None:  # noqa: D401 - simple stub
            raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        run_stdio(InterruptingServer())


def _patch_main(monkeypatch: pytest.MonkeyPatch, argv: list[str], calls: list[tuple[str, Any]]) -> AppState:
    config = load_config(argv=argv, environ={})
    state = build_state(config, store=FakeFileStore(), auth=FakeAuth())
    monkeypatch.setattr("fodi_mcp.server.configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr("fodi_mcp.server.load_config", lambda argv: config)
    monkeypatch.setattr("fodi_mcp.server.initialize_app", lambda cfg: state)
    monkeypatch.setattr("fodi_mcp.server.shutdown_app", lambda: calls.append(("shutdown", None)))
    monkeypatch.setattr("fodi_mcp.server.run_http", lambda *args, **kwargs: calls.append(("http", args)))
    monkeypatch.setattr("fodi_mcp.server.run_stdio", lambda *args, **kwargs: calls.append(("stdio", args)))
    return state


def test_main_runs_stdio_transport(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, Any]] = []
    state = _patch_main(monkeypatch, ["--transport", "stdio"], calls)

    run_main([])

    assert calls == [("stdio", (SERVER,)), ("shutdown", None)]
    assert state.store.closed
    assert state.auth.closed


def test_main_runs_http_transport(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, Any]] = []
    state = _patch_main(monkeypatch, [], calls)

    run_main([])

    assert [call[0] for call in calls] == ["http", "shutdown"]
    passed_state, transport_config = calls[0][1]
    assert passed_state is state
    assert not state.store.closed
    assert transport_config.http_path == "/mcp"


def test_main_exits_on_invalid_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise(argv):
        raise ConfigError("bad value")

    monkeypatch.setattr("fodi_mcp.server.configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr("fodi_mcp.server.load_config", _raise)

    with pytest.raises(SystemExit) as excinfo:
        run_main([])

    assert excinfo.value.code == 2


def test_main_closes_collaborators_when_stdio_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, Any]] = []
    state = _patch_main(monkeypatch, ["--transport", "stdio"], calls)

    def _interrupt(*args, **kwargs):
        raise KeyboardInterrupt

    monkeypatch.setattr("fodi_mcp.server.run_stdio", _interrupt)

    with pytest.raises(KeyboardInterrupt):
        run_main([])

    assert state.store.closed
    assert calls == [("shutdown", None)]


@pytest.fixture
def stdio_state():
    state = initialize_app(load_config(argv=[], environ={}), store=FakeFileStore(), auth=FakeAuth())
    try:
        yield state
    finally:
        shutdown_app()


async def _call_text(name: str, arguments: dict[str, Any]) -> str:
    async with Client(SERVER) as client:
        result = await client.call_tool_mcp(name, arguments)
    assert len(result.content) == 1
    return result.content[0].text


@pytest.mark.anyio
async def test_stdio_tool_reports_missing_argument_through_dispatcher(stdio_state: AppState) -> None:
    text = await _call_text("get_file_info", {})

    assert text.startswith("Error: Invalid arguments for get_file_info")
    assert "'path' is a required property" in text
    assert stdio_state.store.calls == []


@pytest.mark.anyio
async def test_stdio_unknown_tool_uses_error_prefix(stdio_state: AppState) -> None:
    text = await _call_text("nope", {})

    assert text == "Error: Unknown tool: nope"


@pytest.mark.anyio
async def test_stdio_tool_call_reaches_store(stdio_state: AppState) -> None:
    text = await _call_text("get_file_info", {"path": "/notes.txt"})

    assert not text.startswith("Error: ")
    assert stdio_state.store.calls == [("info", "/notes.txt")]


@pytest.mark.anyio
async def test_stdio_list_files_defaults_to_root(stdio_state: AppState) -> None:
    await _call_text("list_files", {})

    assert stdio_state.store.calls == [("list", "/")]
