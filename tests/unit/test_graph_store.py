from __future__ import annotations

import httpx
import pytest

from fodi_mcp.errors import AUTH_REQUIRED, NOT_FOUND, UPSTREAM_ERROR, VALIDATION_ERROR, FodiError
from fodi_mcp.storage import FileStore, GraphFileStore, normalize_path

API_HOST = "https://graph.example"


def _store(handler, *, exposed_path: str = "/", token: str | None = "tok") -> tuple[GraphFileStore, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(_record))
    store = GraphFileStore(api_host=API_HOST, exposed_path=exposed_path, access_token=token, client=client)
    return store, seen


def _item(name: str, *, folder: bool = False, parent: str = "/drive/root:", **extra) -> dict:
    item = {
        "id": f"id-{name}",
        "name": name,
        "size": 10,
        "lastModifiedDateTime": "2024-05-01T10:00:00Z",
        "webUrl": f"https://onedrive.example/{name}",
        "parentReference": {"path": parent},
    }
    if folder:
        item["folder"] = {"childCount": 1}
    else:
        item["file"] = {"mimeType": "text/plain"}
    item.update(extra)
    return item


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, "/"),
        ("", "/"),
        ("docs", "/docs"),
        ("/docs/", "/docs"),
        ("/docs/./a/../b", "/docs/b"),
        ("\\docs\\b", "/docs/b"),
    ],
)
def test_normalize_path(raw, expected) -> None:
    assert normalize_path(raw) == expected


@pytest.mark.parametrize("raw", ["..", "/docs/../../etc", "../secret"])
def test_normalize_path_rejects_escapes(raw: str) -> None:
    with pytest.raises(FodiError) as excinfo:
        normalize_path(raw)
    assert excinfo.value.code == VALIDATION_ERROR


def test_graph_store_satisfies_file_store_protocol() -> None:
    store, _ = _store(lambda request: httpx.Response(200, json={}))
    assert isinstance(store, FileStore)


@pytest.mark.anyio
async def test_list_children_of_root() -> None:
    payload = {"value": [_item("Docs", folder=True), _item("a.txt")], "@odata.nextLink": "https://next"}
    store, seen = _store(lambda request: httpx.Response(200, json=payload))

    listing = await store.list("/")

    assert seen[0].url.path == "/v1.0/me/drive/root/children"
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert listing.path == "/"
    assert listing.has_more is True
    assert [item.name for item in listing.files] == ["Docs", "a.txt"]
    assert listing.files[0].is_folder is True
    assert listing.files[1].path == "/a.txt"
    assert listing.files[1].mime_type == "text/plain"


@pytest.mark.anyio
async def test_list_uses_path_addressing_under_exposed_root() -> None:
    store, seen = _store(lambda request: httpx.Response(200, json={"value": [_item("b.txt")]}), exposed_path="/Public")

    listing = await store.list("/Docs")

    assert seen[0].url.path == "/v1.0/me/drive/root:/Public/Docs:/children"
    assert listing.path == "/Docs"
    assert listing.files[0].path == "/Docs/b.txt"
    assert listing.has_more is False


@pytest.mark.anyio
async def test_search_maps_parent_references_to_display_paths() -> None:
    payload = {"value": [_item("report.pdf", parent="/drive/root:/Public/Reports")]}
    store, seen = _store(lambda request: httpx.Response(200, json=payload), exposed_path="/Public")

    found = await store.search("report")

    assert "search(q='report')" in str(seen[0].url.path)
    assert found.files[0].path == "/Reports/report.pdf"


@pytest.mark.anyio
async def test_info_and_download_url() -> None:
    item = _item("a.txt", **{"@microsoft.graph.downloadUrl": "https://dl.example/a"})
    store, _ = _store(lambda request: httpx.Response(200, json=item))

    meta = await store.info("/a.txt")
    url = await store.download_url("/a.txt")

    assert meta.name == "a.txt"
    assert meta.path == "/a.txt"
    assert meta.download_url == "https://dl.example/a"
    assert url == "https://dl.example/a"


@pytest.mark.anyio
async def test_download_url_rejects_folders() -> None:
    store, _ = _store(lambda request: httpx.Response(200, json=_item("Docs", folder=True)))

    with pytest.raises(FodiError) as excinfo:
        await store.download_url("/Docs")
    assert excinfo.value.code == VALIDATION_ERROR


@pytest.mark.anyio
async def test_download_url_missing_link_is_not_found() -> None:
    store, _ = _store(lambda request: httpx.Response(200, json=_item("a.txt")))

    with pytest.raises(FodiError) as excinfo:
        await store.download_url("/a.txt")
    assert excinfo.value.code == NOT_FOUND


@pytest.mark.anyio
async def test_missing_token_requires_auth_without_calling_api() -> None:
    store, seen = _store(lambda request: httpx.Response(200, json={}), token=None)

    with pytest.raises(FodiError) as excinfo:
        await store.list("/")

    assert excinfo.value.code == AUTH_REQUIRED
    assert seen == []

    store.set_access_token("fresh")
    assert store.has_access_token


@pytest.mark.anyio
@pytest.mark.parametrize(
    "status, code",
    [(401, AUTH_REQUIRED), (404, NOT_FOUND), (500, UPSTREAM_ERROR), (429, UPSTREAM_ERROR)],
)
async def test_http_errors_are_mapped(status: int, code: str) -> None:
    store, _ = _store(lambda request: httpx.Response(status, json={"error": {}}))

    with pytest.raises(FodiError) as excinfo:
        await store.info("/a.txt")

    assert excinfo.value.code == code


@pytest.mark.anyio
async def test_transport_failure_is_upstream_error() -> None:
    def _boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    store, _ = _store(_boom)

    with pytest.raises(FodiError) as excinfo:
        await store.list("/")

    assert excinfo.value.code == UPSTREAM_ERROR


@pytest.mark.anyio
async def test_non_json_body_is_upstream_error() -> None:
    store, _ = _store(lambda request: httpx.Response(200, text="<html>"))

    with pytest.raises(FodiError) as excinfo:
        await store.list("/")

    assert excinfo.value.code == UPSTREAM_ERROR


@pytest.mark.anyio
async def test_injected_client_is_not_closed() -> None:
    store, _ = _store(lambda request: httpx.Response(200, json={"value": []}))

    await store.aclose()
    listing = await store.list("/")

    assert listing.files == []
