"""Drive access used by the file tools.

``FileStore`` is the collaborator interface the dispatcher depends on;
``GraphFileStore`` implements it on top of the Microsoft Graph drive API.
"""

from __future__ import annotations

import posixpath
from typing import Any, Mapping, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from .errors import AUTH_REQUIRED, NOT_FOUND, UPSTREAM_ERROR, VALIDATION_ERROR, FodiError
from .logging import get_logger
from .models import FileList, FileMeta

LOGGER = get_logger(__name__)

_SELECT_FIELDS = "id,name,size,lastModifiedDateTime,webUrl,parentReference,file,folder"
_DOWNLOAD_URL_KEY = "@microsoft.graph.downloadUrl"
_NEXT_LINK_KEY = "@odata.nextLink"


@runtime_checkable
class FileStore(Protocol):
    """Read-only view of a remote drive."""

    supports_search: bool

    async def list(self, path: str) -> FileList: ...

    async def search(self, query: str) -> FileList: ...

    async def info(self, path: str) -> FileMeta: ...

    async def download_url(self, path: str) -> str: ...

    async def aclose(self) -> None: ...


def normalize_path(path: str | None) -> str:
    """Collapse a user supplied path to an absolute POSIX path.

    Raises ``FodiError`` when ``..`` segments climb above the root.
    """

    raw = (path or "/").strip().replace("\\", "/")
    depth = 0
    for segment in raw.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            depth -= 1
            if depth < 0:
                raise FodiError(VALIDATION_ERROR, f"Path escapes the exposed root: {path}")
        else:
            depth += 1
    normalized = posixpath.normpath("/" + raw.lstrip("/"))
    return "/" if normalized in ("", ".") else normalized


class GraphFileStore:
    """``FileStore`` backed by the Microsoft Graph ``/me/drive`` endpoints."""

    supports_search = True

    def __init__(
        self,
        *,
        api_host: str,
        exposed_path: str = "/",
        access_token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_host = api_host.rstrip("/")
        self._root = normalize_path(exposed_path)
        self._access_token = access_token or None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def has_access_token(self) -> bool:
        return self._access_token is not None

    @property
    def exposed_path(self) -> str:
        return self._root

    def set_access_token(self, token: str) -> None:
        self._access_token = token or None

    async def list(self, path: str) -> FileList:
        display = normalize_path(path)
        payload = await self._get(f"{self._item_url(display)}/children", params={"$select": _SELECT_FIELDS})
        files = [self._to_meta(item, parent=display) for item in payload.get("value", [])]
        return FileList(path=display, files=files, has_more=bool(payload.get(_NEXT_LINK_KEY)))

    async def search(self, query: str) -> FileList:
        escaped = query.replace("'", "''")
        root_url = self._item_url("/")
        url = f"{root_url}/search(q='{quote(escaped, safe='')}')"
        payload = await self._get(url, params={"$select": _SELECT_FIELDS})
        files = [self._to_meta(item) for item in payload.get("value", [])]
        return FileList(path="/", files=files, has_more=bool(payload.get(_NEXT_LINK_KEY)))

    async def info(self, path: str) -> FileMeta:
        display = normalize_path(path)
        payload = await self._get(self._item_url(display))
        return self._to_meta(payload, parent=posixpath.dirname(display))

    async def download_url(self, path: str) -> str:
        display = normalize_path(path)
        payload = await self._get(self._item_url(display))
        if payload.get("folder") is not None:
            raise FodiError(VALIDATION_ERROR, f"Folders cannot be downloaded: {display}")
        url = payload.get(_DOWNLOAD_URL_KEY)
        if not url:
            raise FodiError(NOT_FOUND, f"No download URL available for {display}")
        return str(url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _item_url(self, display_path: str) -> str:
        remote = posixpath.normpath(posixpath.join(self._root, display_path.lstrip("/")))
        base = f"{self._api_host}/v1.0/me/drive/root"
        if remote == "/":
            return base
        return f"{base}:{quote(remote)}:"

    async def _get(self, url: str, *, params: Mapping[str, str] | None = None) -> dict[str, Any]:
        if self._access_token is None:
            raise FodiError(AUTH_REQUIRED, "Access token not set; complete the OAuth flow from get_auth_url")
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            response = await self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            LOGGER.warning("storage.graph.transport_error", extra={"context": {"url": url, "error": str(exc)}})
            raise FodiError(UPSTREAM_ERROR, f"Drive request failed: {exc}") from exc
        if response.status_code == 401:
            raise FodiError(AUTH_REQUIRED, "Access token rejected by the drive API")
        if response.status_code == 404:
            raise FodiError(NOT_FOUND, "File not found")
        if response.is_error:
            raise FodiError(
                UPSTREAM_ERROR,
                f"Drive API responded with {response.status_code} {response.reason_phrase}",
                details={"status": response.status_code},
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise FodiError(UPSTREAM_ERROR, "Drive API returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise FodiError(UPSTREAM_ERROR, "Drive API returned an unexpected payload")
        return data

    def _to_meta(self, item: Mapping[str, Any], *, parent: str | None = None) -> FileMeta:
        name = str(item.get("name", ""))
        if parent is None:
            parent = self._display_parent(item)
        file_facet = item.get("file") or {}
        return FileMeta(
            id=str(item.get("id", "")),
            name=name,
            path=posixpath.join(parent or "/", name),
            size=int(item.get("size") or 0),
            last_modified=item.get("lastModifiedDateTime"),
            is_folder=item.get("folder") is not None,
            mime_type=file_facet.get("mimeType"),
            web_url=item.get("webUrl"),
            download_url=item.get(_DOWNLOAD_URL_KEY),
        )

    def _display_parent(self, item: Mapping[str, Any]) -> str:
        reference = item.get("parentReference") or {}
        remote = str(reference.get("path") or "")
        # Graph reports parents as ``/drive/root:/a/b``.
        _, _, remote = remote.partition("root:")
        remote = posixpath.normpath("/" + remote.lstrip("/"))
        if self._root != "/" and (remote == self._root or remote.startswith(self._root + "/")):
            remote = remote[len(self._root):] or "/"
        return remote
