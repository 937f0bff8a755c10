"""Centralized error codes and helper utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "FETCH_FAILURE",
    "MALFORMED_RESPONSE",
    "PARTIAL_BATCH_FAILURE",
    "INVALID_PAGE_REQUEST",
    "LOST_RACE",
    "VERSION_CONFLICT",
    "WRITE_FAILURE",
    "CONFIG_ERROR",
    "INTERNAL_ERROR",
    "WritebackGridError",
    "error_payload",
]

FETCH_FAILURE = "FETCH_FAILURE"
MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
PARTIAL_BATCH_FAILURE = "PARTIAL_BATCH_FAILURE"
INVALID_PAGE_REQUEST = "INVALID_PAGE_REQUEST"
LOST_RACE = "LOST_RACE"
VERSION_CONFLICT = "VERSION_CONFLICT"
WRITE_FAILURE = "WRITE_FAILURE"
CONFIG_ERROR = "CONFIG_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(slots=True)
class WritebackGridError(Exception):
    """Domain-specific exception carrying an error code and message."""

    code: str
    message: str
    details: Mapping[str, Any] | None = None

    def __str__(self) -> str:  # pragma: no cover - delegation to message
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, details=self.details)


def error_payload(code: str, message: str, *, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build a structured error payload for the rendering layer."""

    payload: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = dict(details)
    return payload
