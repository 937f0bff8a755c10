"""Domain models for projected rows, annotation records, and save results."""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from .logging import get_logger

logger = get_logger(__name__)

COLUMN_DIMENSION = "dimension"
COLUMN_MEASURE = "measure"
COLUMN_OVERLAY = "overlay"

SORT_INDICATORS = {"A": "asc", "D": "desc"}

# Store columns that describe a log entry rather than annotated values.
RECORD_META_FIELDS: tuple[str, ...] = (
    "app_id",
    "dataset_id",
    "version",
    "created_by",
    "created_at",
    "modified_by",
    "modified_at",
    "session_id",
)

DEFAULT_KEY_FIELDS: tuple[str, ...] = ("customer_name", "record_key", "key", "account_id", "accountId", "AccountID")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)
_SESSION_ALPHABET = string.ascii_lowercase + string.digits


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce store timestamps (ISO strings, epoch seconds, datetimes) to aware UTC datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("models.timestamp.out_of_range", extra={"context": {"value": value}})
            return None
    if isinstance(value, str):
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            logger.warning("models.timestamp.unparseable", extra={"context": {"value": value}})
            return None
        return parse_timestamp(parsed)
    return None


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def new_session_id(now: float | None = None) -> str:
    """Return a session identifier of the form ``session_<epoch ms>_<random>``."""

    millis = int((time.time() if now is None else now) * 1000)
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"session_{millis}_{suffix}"


@dataclass(frozen=True, slots=True)
class Identity:
    """Who is editing: a user name plus the browsing session it came from."""

    user: str
    session_id: str

    @classmethod
    def for_user(cls, user: str) -> "Identity":
        return cls(user=user, session_id=new_session_id())


@dataclass(frozen=True, slots=True)
class Cell:
    """Read-only value supplied by the analytics engine."""

    text: str
    numeric: float | None = None
    selectable: bool = False
    element_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": self.text, "selectable": self.selectable}
        if self.numeric is not None:
            payload["numeric"] = self.numeric
        if self.element_id is not None:
            payload["element_id"] = self.element_id
        return payload


@dataclass(frozen=True, slots=True)
class OverlayCell:
    """Writable annotation slot appended after the engine columns."""

    text: str = ""
    editable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "editable": self.editable}


@dataclass(frozen=True, slots=True)
class Row:
    """One projected row; rebuilt on every page load and merge."""

    key: str
    index: int
    page: int
    readonly_fields: Mapping[str, Cell]
    overlay_fields: Mapping[str, OverlayCell]
    synthetic_key: bool = False

    def overlay_text(self, overlay_id: str) -> str:
        cell = self.overlay_fields.get(overlay_id)
        return cell.text if cell is not None else ""

    def with_overlays(self, values: Mapping[str, str]) -> "Row":
        overlays = {
            overlay_id: replace(cell, text=str(values.get(overlay_id) or ""))
            for overlay_id, cell in self.overlay_fields.items()
        }
        return replace(self, overlay_fields=overlays)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "index": self.index,
            "page": self.page,
            "synthetic_key": self.synthetic_key,
            "readonly_fields": {column: cell.to_dict() for column, cell in self.readonly_fields.items()},
            "overlay_fields": {column: cell.to_dict() for column, cell in self.overlay_fields.items()},
        }


@dataclass(frozen=True, slots=True)
class ColumnDef:
    """Definition of a dimension, measure, or overlay column."""

    id: str
    label: str | None = None
    description: str | None = None
    sort_indicator: str = ""

    @property
    def display_label(self) -> str:
        return self.label or self.id


@dataclass(frozen=True, slots=True)
class ColumnHeader:
    id: str
    label: str
    kind: str
    description: str | None = None
    sort_direction: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "label": self.label, "kind": self.kind}
        if self.description:
            payload["description"] = self.description
        if self.sort_direction:
            payload["sort_direction"] = self.sort_direction
        return payload


@dataclass(frozen=True, slots=True)
class AnnotationRecord:
    """One entry of the append-only annotation log."""

    dataset_id: str
    key: str
    version: int
    fields: Mapping[str, Any] = field(default_factory=dict)
    created_by: str | None = None
    created_at: datetime | None = None
    modified_by: str | None = None
    modified_at: datetime | None = None
    session_id: str | None = None

    @property
    def recency(self) -> datetime:
        return self.modified_at or self.created_at or _EPOCH

    def to_dict(self) -> dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "key": self.key,
            "version": self.version,
            "fields": dict(self.fields),
            "created_by": self.created_by,
            "created_at": format_timestamp(self.created_at),
            "modified_by": self.modified_by,
            "modified_at": format_timestamp(self.modified_at),
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any],
        *,
        key_fields: Sequence[str] = DEFAULT_KEY_FIELDS,
        field_aliases: Mapping[str, str] | None = None,
        dataset_id: str | None = None,
    ) -> "AnnotationRecord":
        """Build a record from a raw store row.

        ``key_fields`` lists the store columns that may hold the natural key,
        in priority order. ``field_aliases`` renames store columns to overlay
        ids (``model_feedback`` -> ``status``). Everything that is neither
        key nor log metadata ends up in ``fields``.
        """

        key_value = None
        key_column = None
        for candidate in key_fields:
            value = payload.get(candidate)
            if value not in (None, ""):
                key_value = str(value)
                key_column = candidate
                break
        if key_value is None:
            raise ValueError("Annotation record has no key column")

        aliases = field_aliases or {}
        values: dict[str, Any] = {}
        renamed: dict[str, Any] = {}
        for column, value in payload.items():
            if column == key_column or column in RECORD_META_FIELDS or column in key_fields:
                continue
            if column in aliases and aliases[column] != column:
                renamed[aliases[column]] = value
            else:
                values[column] = value
        # a populated store column wins over a same-named raw column
        for overlay_id, value in renamed.items():
            if value not in (None, "") or overlay_id not in values:
                values[overlay_id] = value

        raw_dataset = payload.get("app_id", payload.get("dataset_id", dataset_id))
        return cls(
            dataset_id=str(raw_dataset) if raw_dataset is not None else "",
            key=key_value,
            version=int(payload.get("version") or 0),
            fields=values,
            created_by=_optional_str(payload.get("created_by")),
            created_at=parse_timestamp(payload.get("created_at")),
            modified_by=_optional_str(payload.get("modified_by")),
            modified_at=parse_timestamp(payload.get("modified_at")),
            session_id=_optional_str(payload.get("session_id")),
        )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


@dataclass(frozen=True, slots=True)
class PageInfo:
    """Derived, non-authoritative view of the pagination state."""

    page_size: int
    total_rows: int
    current_page: int
    total_pages: int
    first_row: int
    last_row: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_size": self.page_size,
            "total_rows": self.total_rows,
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "first_row": self.first_row,
            "last_row": self.last_row,
        }


@dataclass(slots=True)
class ItemOutcome:
    """Result of appending one key's new version."""

    key: str
    success: bool
    version: int | None = None
    message: str = ""
    code: str | None = None
    attempts: int = 1
    # overlay values this item wrote, keyed by overlay id
    saved: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "key": self.key,
            "success": self.success,
            "attempts": self.attempts,
        }
        if self.version is not None:
            payload["version"] = self.version
        if self.message:
            payload["message"] = self.message
        if self.code:
            payload["code"] = self.code
        return payload


NOTHING_TO_SAVE_MESSAGE = "no changes"


@dataclass(slots=True)
class BatchResult:
    """Outcome of a save: overall flag, counts, and per-item detail."""

    success: bool
    message: str
    kind: str = "success"
    success_count: int = 0
    total_count: int = 0
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def errors(self) -> list[ItemOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    @classmethod
    def nothing_to_save(cls) -> "BatchResult":
        return cls(success=False, message=NOTHING_TO_SAVE_MESSAGE, kind="warning")

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[ItemOutcome]) -> "BatchResult":
        total = len(outcomes)
        succeeded = sum(1 for outcome in outcomes if outcome.success)
        failed = total - succeeded
        if failed == 0:
            return cls(
                success=True,
                message=f"Successfully saved {succeeded} records",
                kind="success",
                success_count=succeeded,
                total_count=total,
                outcomes=list(outcomes),
            )
        return cls(
            success=False,
            message=f"Saved {succeeded}/{total} records. {failed} failed.",
            kind="error" if failed == total else "warning",
            success_count=succeeded,
            total_count=total,
            outcomes=list(outcomes),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "type": self.kind,
            "success_count": self.success_count,
            "total_count": self.total_count,
        }
        errors = self.errors
        if errors:
            payload["errors"] = [outcome.to_dict() for outcome in errors]
        return payload


@dataclass(slots=True)
class TableSnapshot:
    """What the rendering layer draws: headers, rows, paging and unsaved edits."""

    headers: list[ColumnHeader]
    rows: list[Row]
    page_info: PageInfo
    edits: dict[str, dict[str, str]] = field(default_factory=dict)
    dataset_id: str | None = None

    @property
    def has_unsaved_changes(self) -> bool:
        return any(self.edits.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "headers": [header.to_dict() for header in self.headers],
            "rows": [row.to_dict() for row in self.rows],
            "page_info": self.page_info.to_dict(),
            "edits": {key: dict(values) for key, values in self.edits.items()},
            "has_unsaved_changes": self.has_unsaved_changes,
        }
