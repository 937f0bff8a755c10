from __future__ import annotations

import json

from writeback_grid.errors import PARTIAL_BATCH_FAILURE, WRITE_FAILURE, WritebackGridError, error_payload
from writeback_grid.models import (
    BatchResult,
    Cell,
    ColumnHeader,
    ItemOutcome,
    OverlayCell,
    PageInfo,
    Row,
    TableSnapshot,
)


def test_batch_result_payload_exposes_counts_and_failures() -> None:
    result = BatchResult.from_outcomes(
        [
            ItemOutcome(key="Acme", success=True, version=3),
            ItemOutcome(key="Beta", success=False, message="store rejected Beta", code=WRITE_FAILURE, attempts=1),
        ]
    )

    payload = result.to_dict()

    assert payload == {
        "success": False,
        "message": "Saved 1/2 records. 1 failed.",
        "type": "warning",
        "success_count": 1,
        "total_count": 2,
        "errors": [
            {"key": "Beta", "success": False, "attempts": 1, "message": "store rejected Beta", "code": WRITE_FAILURE}
        ],
    }
    json.dumps(payload)


def test_batch_result_payload_omits_errors_when_all_saved() -> None:
    payload = BatchResult.from_outcomes([ItemOutcome(key="Acme", success=True, version=1)]).to_dict()

    assert payload["success"] is True
    assert payload["message"] == "Successfully saved 1 records"
    assert payload["type"] == "success"
    assert "errors" not in payload


def test_all_failed_batch_is_an_error() -> None:
    payload = BatchResult.from_outcomes([ItemOutcome(key="Acme", success=False, code=WRITE_FAILURE)]).to_dict()

    assert payload["type"] == "error"
    assert payload["success_count"] == 0


def test_nothing_to_save_payload() -> None:
    assert BatchResult.nothing_to_save().to_dict() == {
        "success": False,
        "message": "no changes",
        "type": "warning",
        "success_count": 0,
        "total_count": 0,
    }


def test_table_snapshot_payload_shape() -> None:
    row = Row(
        key="Acme",
        index=0,
        page=1,
        readonly_fields={
            "Customer": Cell(text="Acme", selectable=True, element_id=4),
            "Amount": Cell(text="1,200.50", numeric=1200.5),
        },
        overlay_fields={"status": OverlayCell(text="Accurate"), "comments": OverlayCell()},
    )
    snapshot = TableSnapshot(
        headers=[
            ColumnHeader(id="Customer", label="Customer", kind="dimension", sort_direction="asc"),
            ColumnHeader(id="Amount", label="Amount", kind="measure", description="Open amount"),
            ColumnHeader(id="status", label="Model Feedback", kind="overlay"),
        ],
        rows=[row],
        page_info=PageInfo(page_size=100, total_rows=1, current_page=1, total_pages=1, first_row=1, last_row=1),
        edits={"Acme": {"comments": "late"}},
        dataset_id="app-1",
    )

    payload = json.loads(json.dumps(snapshot.to_dict()))

    assert payload["dataset_id"] == "app-1"
    assert payload["has_unsaved_changes"] is True
    assert payload["headers"][0] == {"id": "Customer", "label": "Customer", "kind": "dimension", "sort_direction": "asc"}
    assert payload["headers"][1]["description"] == "Open amount"
    assert payload["page_info"] == {
        "page_size": 100,
        "total_rows": 1,
        "current_page": 1,
        "total_pages": 1,
        "first_row": 1,
        "last_row": 1,
    }
    row_payload = payload["rows"][0]
    assert row_payload["key"] == "Acme"
    assert row_payload["synthetic_key"] is False
    assert row_payload["readonly_fields"]["Customer"] == {"text": "Acme", "selectable": True, "element_id": 4}
    assert row_payload["readonly_fields"]["Amount"] == {"text": "1,200.50", "selectable": False, "numeric": 1200.5}
    assert row_payload["overlay_fields"]["status"] == {"text": "Accurate", "editable": True}
    assert payload["edits"] == {"Acme": {"comments": "late"}}


def test_error_payload_shape() -> None:
    assert error_payload(WRITE_FAILURE, "store rejected Acme") == {
        "code": WRITE_FAILURE,
        "message": "store rejected Acme",
    }
    error = WritebackGridError(PARTIAL_BATCH_FAILURE, "Saved 1/2 records. 1 failed.", details={"failed": ["Beta"]})
    assert error.to_dict() == {
        "code": PARTIAL_BATCH_FAILURE,
        "message": "Saved 1/2 records. 1 failed.",
        "details": {"failed": ["Beta"]},
    }
