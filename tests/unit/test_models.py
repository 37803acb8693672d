from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from fodi_mcp.errors import VALIDATION_ERROR, FodiError
from fodi_mcp.models import (
    FileMeta,
    ToolCallRequest,
    ToolCallResult,
    TextContent,
    utc_timestamp,
)


def test_utc_timestamp_uses_millisecond_z_format() -> None:
    moment = datetime(2024, 3, 1, 12, 30, 5, 123456, tzinfo=timezone.utc)

    assert utc_timestamp(moment) == "2024-03-01T12:30:05.123Z"


def test_file_meta_to_dict_uses_camel_case() -> None:
    meta = FileMeta(id="1", name="a.txt", path="/a.txt", size=5, is_folder=False, mime_type="text/plain")

    payload = meta.to_dict()

    assert payload["isFolder"] is False
    assert payload["mimeType"] == "text/plain"
    assert payload["lastModified"] is None


def test_file_meta_from_dict_defaults_id_to_name() -> None:
    meta = FileMeta.from_dict({"name": "b.txt", "size": "7", "lastModifiedDateTime": "2024-01-01T00:00:00Z"})

    assert meta.id == "b.txt"
    assert meta.size == 7
    assert meta.path == "/"
    assert meta.last_modified == "2024-01-01T00:00:00Z"


@pytest.mark.parametrize("payload", [{}, {"name": ""}, {"name": "x", "size": "big"}, ["x"]])
def test_file_meta_from_dict_rejects_invalid(payload) -> None:
    with pytest.raises(FodiError) as excinfo:
        FileMeta.from_dict(payload)
    assert excinfo.value.code == VALIDATION_ERROR


def test_text_result_pretty_prints_json() -> None:
    result = ToolCallResult.text_result({"name": "Résumé.pdf", "size": 1})

    assert result.text == json.dumps({"name": "Résumé.pdf", "size": 1}, indent=2, ensure_ascii=False)
    assert result.is_error is False
    assert result.to_dict() == {"content": [{"type": "text", "text": result.text}]}


def test_error_result_is_prefixed() -> None:
    result = ToolCallResult.error_result("File not found")

    assert result.text == "Error: File not found"
    assert result.is_error is True


def test_result_requires_exactly_one_item() -> None:
    with pytest.raises(ValueError):
        ToolCallResult(content=())
    with pytest.raises(ValueError):
        ToolCallResult(content=(TextContent("a"), TextContent("b")))


def test_tool_call_request_defaults_missing_arguments() -> None:
    request = ToolCallRequest.from_params({"name": "list_files", "arguments": None})

    assert request.arguments == {}
    assert ToolCallRequest.from_params({"name": "x"}).arguments == {}
