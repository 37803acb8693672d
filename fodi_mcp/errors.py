"""Centralized error codes and helper utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "UNKNOWN_TOOL",
    "VALIDATION_ERROR",
    "NOT_FOUND",
    "AUTH_REQUIRED",
    "UPSTREAM_ERROR",
    "CONFIG_ERROR",
    "INTERNAL_ERROR",
    "ERROR_PREFIX",
    "FodiError",
    "error_payload",
]

UNKNOWN_TOOL = "UNKNOWN_TOOL"
VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
AUTH_REQUIRED = "AUTH_REQUIRED"
UPSTREAM_ERROR = "UPSTREAM_ERROR"
CONFIG_ERROR = "CONFIG_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"

# Marker that starts the text of every failed tool call.
ERROR_PREFIX = "Error: "


@dataclass(slots=True)
class FodiError(Exception):
    """Recoverable error carrying a code and a human-readable message."""

    code: str
    message: str
    details: Mapping[str, Any] | None = None

    def __str__(self) -> str:  # pragma: no cover - delegation to message
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, details=self.details)

    def wrap(self, operation: str) -> FodiError:
        """Return a copy whose message names the failed operation."""

        return FodiError(self.code, f"Failed to {operation}: {self.message}", self.details)


def error_payload(code: str, message: str, *, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build a structured error payload used in HTTP error responses."""

    payload: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = dict(details)
    return payload
