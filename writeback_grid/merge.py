"""Reconciliation of projected rows with the current annotation per key."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

from .logging import get_logger
from .models import AnnotationRecord, Row

LOGGER = get_logger(__name__)


def _rank(record: AnnotationRecord) -> tuple[Any, ...]:
    # version, then recency; the rest only separates exact ties
    return (
        record.version,
        record.recency,
        record.session_id or "",
        record.modified_by or "",
        repr(sorted(record.fields.items(), key=lambda item: str(item[0]))),
    )


def select_current(records: Iterable[AnnotationRecord]) -> dict[str, AnnotationRecord]:
    """Pick the current record per key: highest version, then latest modification."""

    current: dict[str, AnnotationRecord] = {}
    for record in records:
        incumbent = current.get(record.key)
        if incumbent is None or _rank(record) > _rank(incumbent):
            current[record.key] = record
    return current


def apply(rows: Sequence[Row], current_by_key: Mapping[str, AnnotationRecord]) -> list[Row]:
    """Overlay current annotations onto rows.

    Matched rows are rebuilt with the record's overlay values; all other rows
    are returned as the same objects. Synthetic-key rows never match.
    """

    merged: list[Row] = []
    matched = 0
    for row in rows:
        record = None if row.synthetic_key else current_by_key.get(row.key)
        if record is None:
            merged.append(row)
            continue
        matched += 1
        values = {overlay_id: _text(record.fields.get(overlay_id)) for overlay_id in row.overlay_fields}
        merged.append(row.with_overlays(values))
    LOGGER.debug(
        "merge.applied",
        extra={"context": {"rows": len(rows), "matched": matched, "keys": len(current_by_key)}},
    )
    return merged


def count_annotated(rows: Iterable[Row]) -> int:
    return sum(1 for row in rows if any(cell.text for cell in row.overlay_fields.values()))


def _text(value: object) -> str:
    if value is None:
        return ""
    return str(value)


class MergeEngine:
    """Merge operations bundled for injection into a grid session."""

    select_current = staticmethod(select_current)
    apply = staticmethod(apply)
    count_annotated = staticmethod(count_annotated)

    def merge(self, rows: Sequence[Row], records: Iterable[AnnotationRecord]) -> list[Row]:
        return apply(rows, select_current(records))
