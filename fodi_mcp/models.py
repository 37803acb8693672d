"""Domain models for files, change events, and tool call envelopes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import ERROR_PREFIX, VALIDATION_ERROR, FodiError

CHANGE_KINDS: tuple[str, ...] = ("created", "updated", "deleted")


def utc_timestamp(moment: datetime | None = None) -> str:
    """Return an ISO-8601 UTC timestamp with millisecond precision."""

    value = moment or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class FileMeta:
    """Metadata describing a single drive item."""

    id: str
    name: str
    path: str = "/"
    size: int = 0
    last_modified: str | None = None
    is_folder: bool = False
    mime_type: str | None = None
    web_url: str | None = None
    download_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "lastModified": self.last_modified,
            "isFolder": self.is_folder,
            "mimeType": self.mime_type,
            "webUrl": self.web_url,
            "downloadUrl": self.download_url,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> FileMeta:
        if not isinstance(payload, Mapping):
            raise FodiError(VALIDATION_ERROR, "File metadata must be an object")
        name = payload.get("name")
        if not isinstance(name, str) or not name:
            raise FodiError(VALIDATION_ERROR, "File metadata requires a non-empty 'name'")
        try:
            size = int(payload.get("size") or 0)
        except (TypeError, ValueError) as exc:
            raise FodiError(VALIDATION_ERROR, "File size must be an integer") from exc
        return cls(
            id=str(payload.get("id") or name),
            name=name,
            path=str(payload.get("path") or "/"),
            size=size,
            last_modified=payload.get("lastModified") or payload.get("lastModifiedDateTime"),
            is_folder=bool(payload.get("isFolder", False)),
            mime_type=payload.get("mimeType"),
            web_url=payload.get("webUrl"),
            download_url=payload.get("downloadUrl"),
        )


@dataclass(slots=True)
class FileList:
    path: str
    files: list[FileMeta] = field(default_factory=list)
    has_more: bool = False


@dataclass(slots=True)
class TokenPair:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
        }


@dataclass(slots=True)
class FileChangeEvent:
    """A created/updated/deleted notification fanned out to SSE subscribers."""

    kind: str
    file: FileMeta
    timestamp: str = field(default_factory=utc_timestamp)

    def __post_init__(self) -> None:
        if self.kind not in CHANGE_KINDS:
            raise FodiError(
                VALIDATION_ERROR,
                f"Change kind must be one of: {', '.join(CHANGE_KINDS)}",
                details={"kind": self.kind},
            )

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "file_change",
            "kind": self.kind,
            "file": self.file.to_dict(),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class TextContent:
    text: str
    type: str = "text"

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True, slots=True)
class ToolCallResult:
    """Protocol content envelope; always holds exactly one text item."""

    content: tuple[TextContent, ...]

    def __post_init__(self) -> None:
        if len(self.content) != 1:
            raise ValueError("ToolCallResult must carry exactly one content item")

    @classmethod
    def text_result(cls, payload: Any) -> ToolCallResult:
        text = json.dumps(payload, indent=2, ensure_ascii=False, default=str)
        return cls(content=(TextContent(text=text),))

    @classmethod
    def error_result(cls, message: str) -> ToolCallResult:
        return cls(content=(TextContent(text=f"{ERROR_PREFIX}{message}"),))

    @property
    def text(self) -> str:
        return self.content[0].text

    @property
    def is_error(self) -> bool:
        return self.text.startswith(ERROR_PREFIX)

    def to_dict(self) -> dict[str, Any]:
        return {"content": [item.to_dict() for item in self.content]}


@dataclass(slots=True)
class ToolCallRequest:
    name: str
    arguments: Any = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ToolCallRequest:
        arguments = params.get("arguments")
        return cls(name=str(params["name"]), arguments={} if arguments is None else arguments)
