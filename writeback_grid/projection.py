"""Projection of engine page matrices into keyed grid rows."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from .logging import get_logger
from .models import (
    COLUMN_DIMENSION,
    COLUMN_MEASURE,
    COLUMN_OVERLAY,
    SORT_INDICATORS,
    Cell,
    ColumnDef,
    ColumnHeader,
    OverlayCell,
    Row,
)

LOGGER = get_logger(__name__)

ColumnSpec = ColumnDef | str


@dataclass(frozen=True, slots=True)
class EngineCell:
    """A single cell as handed over by the analytics engine."""

    text: str = ""
    numeric: float | None = None
    element_id: int | None = None


def synthetic_key(index: int, page: int) -> str:
    return f"row-{index}-page-{page}"


def as_column(spec: ColumnSpec) -> ColumnDef:
    if isinstance(spec, ColumnDef):
        return spec
    return ColumnDef(id=str(spec))


def coerce_engine_cell(raw: Any) -> EngineCell:
    """Normalise the cell shapes engines emit into an :class:`EngineCell`."""

    if isinstance(raw, EngineCell):
        return EngineCell(text=raw.text, numeric=_finite(raw.numeric), element_id=raw.element_id)
    if raw is None:
        return EngineCell()
    if isinstance(raw, Mapping):
        text = _first_present(raw, ("text", "qText"))
        numeric = _first_present(raw, ("numeric", "qNum"))
        element_id = _first_present(raw, ("element_id", "elementId", "qElemNumber"))
        return EngineCell(
            text="" if text is None else str(text),
            numeric=_finite(numeric),
            element_id=_as_int(element_id),
        )
    if isinstance(raw, bool):
        return EngineCell(text=str(raw).lower())
    if isinstance(raw, (int, float)):
        numeric = _finite(raw)
        return EngineCell(text="" if numeric is None else str(raw), numeric=numeric)
    return EngineCell(text=str(raw))


def build_headers(
    dimensions: Sequence[ColumnSpec],
    measures: Sequence[ColumnSpec],
    overlays: Sequence[ColumnSpec],
) -> list[ColumnHeader]:
    headers: list[ColumnHeader] = []
    for kind, specs in ((COLUMN_DIMENSION, dimensions), (COLUMN_MEASURE, measures), (COLUMN_OVERLAY, overlays)):
        for spec in specs:
            column = as_column(spec)
            headers.append(
                ColumnHeader(
                    id=column.id,
                    label=column.display_label,
                    kind=kind,
                    description=column.description,
                    sort_direction=SORT_INDICATORS.get(column.sort_indicator, ""),
                )
            )
    return headers


def project(
    page_matrix: Iterable[Sequence[Any]],
    dimensions: Sequence[ColumnSpec],
    measures: Sequence[ColumnSpec],
    overlays: Sequence[ColumnSpec],
    *,
    key_column: str,
    page: int,
) -> list[Row]:
    """Turn one page of engine rows into grid rows.

    Columns are laid out as dimensions, then measures, then overlays. Rows
    whose ``key_column`` cell is blank get a positional synthetic key that
    never matches stored annotations.
    """

    dimension_defs = [as_column(spec) for spec in dimensions]
    measure_defs = [as_column(spec) for spec in measures]
    overlay_ids = [as_column(spec).id for spec in overlays]
    engine_ids = [column.id for column in dimension_defs] + [column.id for column in measure_defs]

    if key_column not in engine_ids:
        LOGGER.warning(
            "projection.key_column.missing",
            extra={"context": {"key_column": key_column, "columns": engine_ids}},
        )

    rows: list[Row] = []
    for index, raw_row in enumerate(page_matrix):
        raw_cells = list(raw_row)
        readonly: dict[str, Cell] = {}
        for position, column in enumerate(dimension_defs):
            engine_cell = coerce_engine_cell(raw_cells[position] if position < len(raw_cells) else None)
            readonly[column.id] = Cell(text=engine_cell.text, selectable=True, element_id=engine_cell.element_id)
        offset = len(dimension_defs)
        for position, column in enumerate(measure_defs):
            cell_index = offset + position
            engine_cell = coerce_engine_cell(raw_cells[cell_index] if cell_index < len(raw_cells) else None)
            readonly[column.id] = Cell(text=engine_cell.text, numeric=engine_cell.numeric, selectable=False)

        key_cell = readonly.get(key_column)
        key_text = key_cell.text.strip() if key_cell is not None else ""
        is_synthetic = not key_text
        rows.append(
            Row(
                key=synthetic_key(index, page) if is_synthetic else key_text,
                index=index,
                page=page,
                readonly_fields=readonly,
                overlay_fields={overlay_id: OverlayCell() for overlay_id in overlay_ids},
                synthetic_key=is_synthetic,
            )
        )
    return rows


class RowProjector:
    """Column layout bound once per layout, applied to every fetched page."""

    __slots__ = ("dimensions", "measures", "overlays", "key_column")

    def __init__(
        self,
        dimensions: Sequence[ColumnSpec],
        measures: Sequence[ColumnSpec],
        overlays: Sequence[ColumnSpec],
        *,
        key_column: str,
    ) -> None:
        self.dimensions = [as_column(spec) for spec in dimensions]
        self.measures = [as_column(spec) for spec in measures]
        self.overlays = [as_column(spec) for spec in overlays]
        self.key_column = key_column

    def project(self, page_matrix: Iterable[Sequence[Any]], *, page: int) -> list[Row]:
        return project(
            page_matrix,
            self.dimensions,
            self.measures,
            self.overlays,
            key_column=self.key_column,
            page=page,
        )

    def headers(self) -> list[ColumnHeader]:
        return build_headers(self.dimensions, self.measures, self.overlays)


def _first_present(payload: Mapping[str, Any], names: Sequence[str]) -> Any:
    for name in names:
        if name in payload and payload[name] is not None:
            return payload[name]
    return None


def _finite(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
