"""Edit buffering and the versioned write path."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterator, Mapping, Sequence

from .config import Config
from .errors import PARTIAL_BATCH_FAILURE, VERSION_CONFLICT, WRITE_FAILURE, WritebackGridError
from .logging import get_logger
from .metrics import record_error, record_operation
from .models import AnnotationRecord, BatchResult, Identity, ItemOutcome, Row

logger = get_logger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_IDENTIFIER = re.compile(r"[^a-z0-9]+")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EditBuffer:
    """Pending overlay edits keyed by row key, then overlay id."""

    __slots__ = ("_changes",)

    def __init__(self, changes: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._changes: dict[str, dict[str, str]] = {}
        if changes:
            for key, values in changes.items():
                for overlay_id, value in values.items():
                    self.set(key, overlay_id, value)

    def set(self, key: str, overlay_id: str, value: Any) -> None:
        self._changes.setdefault(str(key), {})[str(overlay_id)] = "" if value is None else str(value)

    def get(self, key: str, overlay_id: str, default: str | None = None) -> str | None:
        return self._changes.get(key, {}).get(overlay_id, default)

    def discard(self, key: str, overlay_id: str | None = None) -> None:
        if overlay_id is None:
            self._changes.pop(key, None)
            return
        values = self._changes.get(key)
        if values is None:
            return
        values.pop(overlay_id, None)
        if not values:
            del self._changes[key]

    def discard_saved(self, key: str, saved: Mapping[str, str]) -> None:
        """Drop edits for ``key`` that still hold the value that was written.

        Values changed after the write was composed stay pending.
        """

        for overlay_id, value in saved.items():
            if self.get(key, overlay_id) == value:
                self.discard(key, overlay_id)

    def pending_keys(self) -> list[str]:
        return list(self._changes)

    def for_key(self, key: str) -> dict[str, str]:
        return dict(self._changes.get(key, {}))

    def clear(self) -> None:
        self._changes.clear()

    def to_changes(self) -> dict[str, dict[str, str]]:
        return {key: dict(values) for key, values in self._changes.items()}

    @classmethod
    def from_changes(cls, changes: Mapping[str, Mapping[str, Any]] | None) -> "EditBuffer":
        return cls(changes)

    def __len__(self) -> int:
        return sum(len(values) for values in self._changes.values())

    def __contains__(self, key: object) -> bool:
        return key in self._changes

    def __iter__(self) -> Iterator[tuple[str, str, str]]:
        for key, values in self._changes.items():
            for overlay_id, value in values.items():
                yield key, overlay_id, value


def column_identifier(name: str) -> str:
    """Derive a snake_case SQL identifier from a column id.

    Ids with no ASCII letters or digits (e.g. ``地域``) map to a stable
    ``col_<digest>`` name.
    """

    spaced = _CAMEL_BOUNDARY.sub("_", name.strip())
    identifier = _NON_IDENTIFIER.sub("_", spaced.lower()).strip("_")
    if not identifier:
        return "col_" + hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    if identifier[0].isdigit():
        identifier = f"col_{identifier}"
    return identifier


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value) if math.isfinite(value) else "NULL"
    if isinstance(value, datetime):
        value = value.astimezone(timezone.utc).isoformat()
    return "'" + str(value).replace("'", "''") + "'"


def build_append_query(
    record: AnnotationRecord,
    *,
    table: str,
    key_field: str,
    field_columns: Mapping[str, str],
) -> str:
    """Render one annotation version as a single SQL ``INSERT``.

    ``field_columns`` maps overlay ids to their store columns; other field
    ids are converted with :func:`column_identifier`.
    """

    trailer = {
        "created_by": record.created_by,
        "modified_by": record.modified_by,
        "created_at": record.created_at,
        "modified_at": record.modified_at,
        "version": record.version,
        "session_id": record.session_id,
    }
    columns: dict[str, Any] = {
        "app_id": record.dataset_id,
        column_identifier(key_field): record.key,
    }
    taken = set(columns) | set(trailer)

    def claim(base: str) -> str:
        name, suffix = base, 2
        while name in taken:
            name = f"{base}_{suffix}"
            suffix += 1
        taken.add(name)
        return name

    for field_id, value in record.fields.items():
        if field_id in field_columns:
            columns[claim(column_identifier(field_columns[field_id]))] = value
    for field_id, value in record.fields.items():
        if field_id not in field_columns:
            columns[claim(column_identifier(field_id))] = value
    columns.update(trailer)
    names = ", ".join(columns)
    values = ", ".join(sql_literal(value) for value in columns.values())
    return f"INSERT INTO {column_identifier(table)} ({names}) VALUES ({values});"


class WriteCoordinator:
    """Turns buffered edits into new annotation versions, one key at a time."""

    def __init__(
        self,
        store: Any,
        *,
        dataset_id: str,
        key_column: str,
        key_field: str,
        table_name: str,
        overlay_fields: Mapping[str, str],
        write_delay: float = 0.2,
        max_conflict_retries: int = 3,
        clock: Clock = _utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self.dataset_id = dataset_id
        self.key_column = key_column
        self.key_field = key_field
        self.table_name = table_name
        self.overlay_fields = dict(overlay_fields)
        self.write_delay = max(float(write_delay), 0.0)
        self.max_conflict_retries = max(int(max_conflict_retries), 0)
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Config, store: Any, *, dataset_id: str | None = None) -> "WriteCoordinator":
        return cls(
            store,
            dataset_id=dataset_id or config.dataset_id or "",
            key_column=config.key_column,
            key_field=config.key_field,
            table_name=config.table_name,
            overlay_fields=config.overlay_fields,
            write_delay=config.write_delay.total_seconds(),
            max_conflict_retries=config.max_conflict_retries,
        )

    def dirty_rows(self, edits: EditBuffer, current_rows: Sequence[Row]) -> list[Row]:
        """Rows with pending edits, in row order; synthetic keys are never saved."""

        seen: set[str] = set()
        dirty: list[Row] = []
        for row in current_rows:
            if row.synthetic_key or row.key in seen or row.key not in edits:
                continue
            seen.add(row.key)
            dirty.append(row)
        return dirty

    async def save(self, edits: EditBuffer, current_rows: Sequence[Row], identity: Identity) -> BatchResult:
        dirty = self.dirty_rows(edits, current_rows)
        if not dirty:
            logger.info("writeback.save.empty", extra={"context": {"dataset_id": self.dataset_id}})
            return BatchResult.nothing_to_save()

        record_operation("save")
        outcomes: list[ItemOutcome] = []
        for position, row in enumerate(dirty):
            outcomes.append(await self._save_row(row, edits.for_key(row.key), identity))
            if position < len(dirty) - 1 and self.write_delay:
                await self._sleep(self.write_delay)

        result = BatchResult.from_outcomes(outcomes)
        context = {
            "dataset_id": self.dataset_id,
            "success_count": result.success_count,
            "total_count": result.total_count,
        }
        if result.success:
            logger.info("writeback.save.completed", extra={"context": context})
        else:
            record_error(PARTIAL_BATCH_FAILURE)
            logger.warning("writeback.save.partial", extra={"context": {**context, "code": PARTIAL_BATCH_FAILURE}})
        return result

    def compose_record(
        self,
        row: Row,
        history: Sequence[AnnotationRecord],
        row_edits: Mapping[str, str],
        identity: Identity,
        now: datetime,
    ) -> AnnotationRecord:
        fields: dict[str, Any] = {}
        for column_id, cell in row.readonly_fields.items():
            if column_id == self.key_column:
                continue
            fields[column_id] = cell.numeric if cell.numeric is not None else cell.text
        for overlay_id in row.overlay_fields:
            fields[overlay_id] = row_edits.get(overlay_id, row.overlay_text(overlay_id))

        if history:
            version = max(record.version for record in history) + 1
            original = min(history, key=lambda record: record.version)
            created_by = original.created_by or original.modified_by or identity.user
            created_at = original.created_at or now
        else:
            version = 1
            created_by = identity.user
            created_at = now

        return AnnotationRecord(
            dataset_id=self.dataset_id,
            key=row.key,
            version=version,
            fields=fields,
            created_by=created_by,
            created_at=created_at,
            modified_by=identity.user,
            modified_at=now,
            session_id=identity.session_id,
        )

    async def _save_row(self, row: Row, row_edits: Mapping[str, str], identity: Identity) -> ItemOutcome:
        attempts = 0
        while True:
            attempts += 1
            context: dict[str, Any] = {"dataset_id": self.dataset_id, "key": row.key, "attempt": attempts}
            try:
                history = [record for record in await self._store.read_log(self.dataset_id) if record.key == row.key]
                try:
                    record = self.compose_record(row, history, row_edits, identity, self._clock())
                    query = build_append_query(
                        record,
                        table=self.table_name,
                        key_field=self.key_field,
                        field_columns=self.overlay_fields,
                    )
                except (TypeError, ValueError) as exc:
                    raise WritebackGridError(WRITE_FAILURE, f"Could not build the write for {row.key}: {exc}") from exc
                await self._store.append(self.dataset_id, query)
            except WritebackGridError as exc:
                if exc.code == VERSION_CONFLICT and attempts <= self.max_conflict_retries:
                    logger.info("writeback.item.conflict", extra={"context": {**context, "retrying": True}})
                    if self.write_delay:
                        await self._sleep(self.write_delay)
                    continue
                record_error(exc.code)
                logger.warning(
                    "writeback.item.failed",
                    extra={"context": {**context, "code": exc.code, "error": exc.message}},
                )
                return ItemOutcome(key=row.key, success=False, message=exc.message, code=exc.code, attempts=attempts)

            logger.debug("writeback.item.saved", extra={"context": {**context, "version": record.version}})
            return ItemOutcome(
                key=row.key,
                success=True,
                version=record.version,
                attempts=attempts,
                saved=dict(row_edits),
            )
