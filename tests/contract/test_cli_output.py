from __future__ import annotations

import io
import json
from pathlib import Path

import httpx
import pytest

from writeback_grid import cli
from writeback_grid.errors import CONFIG_ERROR, FETCH_FAILURE
from writeback_grid.mirror import EditMirror
from writeback_grid.writeback import EditBuffer

LOG = [
    {"app_id": "app-1", "customer_name": "Beta", "version": 1, "model_feedback": "Accurate"},
    {"app_id": "app-1", "customer_name": "Acme", "version": 1, "model_feedback": "Accurate", "modified_at": "2024-01-01T00:00:00Z"},
    {"app_id": "app-1", "customer_name": "Acme", "version": 2, "model_feedback": "Inaccurate", "modified_at": "2024-02-01T00:00:00Z"},
]


def _argv(tmp_path: Path, *extra: str) -> list[str]:
    return [
        "--dataset-id",
        "app-1",
        "--read-url",
        "https://store.example/read",
        "--write-url",
        "https://store.example/write",
        "--state-dir",
        str(tmp_path),
        *extra,
    ]


def _client(status_code: int = 200, payload: object = None) -> httpx.AsyncClient:
    body = {"DoQuery": LOG} if payload is None else payload
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status_code, json=body)))


def _json_prefix(text: str) -> object:
    decoder = json.JSONDecoder()
    value, _ = decoder.raw_decode(text)
    return value


@pytest.mark.asyncio
async def test_cli_prints_current_annotations(tmp_path: Path) -> None:
    out = io.StringIO()
    client = _client()

    status = await cli.run(_argv(tmp_path), environ={}, client=client, stdout=out)
    await client.aclose()

    assert status == 0
    payload = json.loads(out.getvalue())
    assert payload["dataset_id"] == "app-1"
    assert [entry["key"] for entry in payload["annotations"]] == ["Acme", "Beta"]
    assert payload["annotations"][0]["version"] == 2
    assert payload["annotations"][0]["fields"]["status"] == "Inaccurate"


@pytest.mark.asyncio
async def test_cli_prints_history_newest_first(tmp_path: Path) -> None:
    out = io.StringIO()
    client = _client()

    status = await cli.run(_argv(tmp_path, "--history", "Acme"), environ={}, client=client, stdout=out)
    await client.aclose()

    assert status == 0
    payload = json.loads(out.getvalue())
    assert payload["key"] == "Acme"
    assert [entry["version"] for entry in payload["versions"]] == [2, 1]


@pytest.mark.asyncio
async def test_cli_metrics_appends_prometheus_text(tmp_path: Path) -> None:
    EditMirror.for_state_dir(tmp_path).save(EditBuffer({"Acme": {"comments": "late"}}), "carol")
    out = io.StringIO()
    client = _client()

    status = await cli.run(_argv(tmp_path, "--metrics"), environ={}, client=client, stdout=out)
    await client.aclose()

    assert status == 0
    text = out.getvalue()
    assert _json_prefix(text)["dataset_id"] == "app-1"  # type: ignore[index]
    assert 'writeback_grid_ops_total{op="annotation_fetch"} 1' in text
    assert 'writeback_grid_errors_total{code="none"} 0' in text
    assert "writeback_grid_rows_current 2" in text
    assert "writeback_grid_pending_edits 1" in text


@pytest.mark.asyncio
async def test_cli_reports_missing_dataset(tmp_path: Path) -> None:
    out = io.StringIO()

    status = await cli.run(["--state-dir", str(tmp_path)], environ={}, stdout=out)

    assert status == 1
    assert json.loads(out.getvalue())["code"] == CONFIG_ERROR


@pytest.mark.asyncio
async def test_cli_reports_invalid_config(tmp_path: Path) -> None:
    out = io.StringIO()

    status = await cli.run(_argv(tmp_path, "--page-size", "zero"), environ={}, stdout=out)

    assert status == 1
    assert json.loads(out.getvalue())["code"] == CONFIG_ERROR


@pytest.mark.asyncio
async def test_cli_reports_fetch_failure(tmp_path: Path) -> None:
    out = io.StringIO()
    client = _client(503, {"error": "down"})

    status = await cli.run(_argv(tmp_path), environ={}, client=client, stdout=out)
    await client.aclose()

    assert status == 1
    payload = json.loads(out.getvalue())
    assert payload["code"] == FETCH_FAILURE
    assert payload["details"]["status"] == 503


def test_main_exits_non_zero_on_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WRITEBACK_GRID_DATASET_ID", raising=False)
    monkeypatch.setenv("WRITEBACK_GRID_STATE_DIR", str(tmp_path))

    with pytest.raises(SystemExit) as excinfo:
        cli.main([])

    assert excinfo.value.code == 1
