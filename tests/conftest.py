from __future__ import annotations

from typing import Any

import pytest

from fodi_mcp import metrics
from fodi_mcp.errors import NOT_FOUND, FodiError
from fodi_mcp.models import FileList, FileMeta, TokenPair
from fodi_mcp.sse import ChannelClosedError


class FakeFileStore:
    """In-memory drive keyed by directory path."""

    def __init__(
        self,
        tree: dict[str, list[FileMeta]] | None = None,
        *,
        supports_search: bool = False,
        failures: dict[str, Exception] | None = None,
    ) -> None:
        self.supports_search = supports_search
        self.tree = tree if tree is not None else _default_tree()
        self.failures = failures or {}
        self.calls: list[tuple[str, Any]] = []
        self.access_token: str | None = None
        self.closed = False

    def set_access_token(self, token: str) -> None:
        self.access_token = token

    def _maybe_fail(self, operation: str) -> None:
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    async def list(self, path: str) -> FileList:
        self.calls.append(("list", path))
        self._maybe_fail("list")
        if path not in self.tree:
            raise FodiError(NOT_FOUND, "File not found")
        return FileList(path=path, files=list(self.tree[path]))

    async def search(self, query: str) -> FileList:
        self.calls.append(("search", query))
        self._maybe_fail("search")
        needle = query.lower()
        found = [item for items in self.tree.values() for item in items if needle in item.name.lower()]
        return FileList(path="/", files=found)

    async def info(self, path: str) -> FileMeta:
        self.calls.append(("info", path))
        self._maybe_fail("info")
        for items in self.tree.values():
            for item in items:
                if item.path == path:
                    return item
        raise FodiError(NOT_FOUND, "File not found")

    async def download_url(self, path: str) -> str:
        self.calls.append(("download_url", path))
        self._maybe_fail("download_url")
        meta = await self.info(path)
        return meta.download_url or f"https://download.example/{meta.id}"

    async def aclose(self) -> None:
        self.closed = True


class FakeAuth:
    client_id = "client-123"
    redirect_uri = "http://localhost/onedrive-login"
    scope = "offline_access Files.ReadWrite.All"

    def __init__(self, *, failure: Exception | None = None) -> None:
        self.failure = failure
        self.codes: list[str] = []
        self.closed = False

    def authorization_url(self) -> str:
        return f"https://login.example/authorize?client_id={self.client_id}"

    async def exchange_code(self, code: str) -> TokenPair:
        self.codes.append(code)
        if self.failure is not None:
            raise self.failure
        return TokenPair(access_token=f"access-{code}", refresh_token="refresh-1", expires_in=3600)

    async def aclose(self) -> None:
        self.closed = True


class RecordingChannel:
    def __init__(self) -> None:
        self.frames: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ChannelClosedError("closed")
        self.frames.append(data)

    def close(self) -> None:
        self.closed = True


class FailingChannel(RecordingChannel):
    """Accepts the first ``accept`` frames, then fails every write."""

    def __init__(self, accept: int = 0) -> None:
        super().__init__()
        self.accept = accept

    def write(self, data: bytes) -> None:
        if len(self.frames) >= self.accept:
            raise ChannelClosedError("peer went away")
        super().write(data)


def _default_tree() -> dict[str, list[FileMeta]]:
    return {
        "/": [
            FileMeta(id="1", name="Documents", path="/Documents", is_folder=True),
            FileMeta(
                id="2",
                name="Report.pdf",
                path="/Report.pdf",
                size=2048,
                mime_type="application/pdf",
                download_url="https://download.example/report",
            ),
            FileMeta(id="3", name="notes.txt", path="/notes.txt", size=12),
        ],
        "/Documents": [
            FileMeta(id="4", name="annual-report.docx", path="/Documents/annual-report.docx", size=4096),
        ],
    }


@pytest.fixture
def store() -> FakeFileStore:
    return FakeFileStore()


@pytest.fixture
def auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def metrics_registry():
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        yield registry
    finally:
        metrics.install_registry(None)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
