from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from writeback_grid import metrics
from writeback_grid.annotations import AnnotationStore, EnvelopeKind, decode_envelope
from writeback_grid.errors import FETCH_FAILURE, MALFORMED_RESPONSE, VERSION_CONFLICT, WRITE_FAILURE, WritebackGridError

READ_URL = "https://store.example/read"
WRITE_URL = "https://store.example/write"

ACME_V1 = {"app_id": "app-1", "customer_name": "Acme", "version": 1, "model_feedback": "Accurate", "comments": ""}
ACME_V2 = {"app_id": "app-1", "customer_name": "Acme", "version": 2, "model_feedback": "Inaccurate", "comments": "late"}
BETA_V1 = {"app_id": "app-1", "customer_name": "Beta", "version": 1, "model_feedback": "", "comments": "check"}


def _store(handler: Callable[[httpx.Request], httpx.Response]) -> AnnotationStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnnotationStore(
        read_url=READ_URL,
        write_url=WRITE_URL,
        read_token="read-token",
        write_token="write-token",
        client=client,
    )


def _json_handler(payload: Any, status_code: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)

    return handler


@pytest.mark.parametrize(
    ("payload", "kind", "count"),
    [
        ([ACME_V1, BETA_V1], EnvelopeKind.BARE, 2),
        ([[ACME_V1], [ACME_V2, BETA_V1]], EnvelopeKind.NESTED, 3),
        ({"DoQuery": [ACME_V1]}, EnvelopeKind.WRAPPED, 1),
        ({"result": [ACME_V1, ACME_V2]}, EnvelopeKind.WRAPPED, 2),
        ({"body": [[ACME_V1, BETA_V1]]}, EnvelopeKind.WRAPPED, 2),
        ({"data": []}, EnvelopeKind.WRAPPED, 0),
        ({"rows": [ACME_V1]}, EnvelopeKind.UNKNOWN, 0),
        ("oops", EnvelopeKind.UNKNOWN, 0),
        (None, EnvelopeKind.UNKNOWN, 0),
    ],
)
def test_decode_envelope_shapes(payload: Any, kind: EnvelopeKind, count: int) -> None:
    decoded = decode_envelope(payload)

    assert decoded.kind is kind
    assert len(decoded.rows) == count


@pytest.mark.asyncio
async def test_read_request_shape() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[ACME_V1])

    async with _store(handler) as store:
        records = await store.fetch_all("app-1")

    assert len(records) == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.url.params["X-Execution-Token"] == "read-token"
    assert request.url.params["app_id"] == "app-1"
    body = json.loads(request.content)
    assert body["app_id"] == "app-1"
    assert body["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_records_are_renamed_to_overlay_ids() -> None:
    async with _store(_json_handler({"DoQuery": [ACME_V2]})) as store:
        records = await store.fetch_all("app-1")

    record = records[0]
    assert record.key == "Acme"
    assert record.version == 2
    assert record.fields["status"] == "Inaccurate"
    assert record.fields["comments"] == "late"
    assert "model_feedback" not in record.fields


@pytest.mark.asyncio
async def test_fetch_all_fails_open_on_http_error() -> None:
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        async with _store(_json_handler({"error": "boom"}, status_code=500)) as store:
            assert await store.fetch_all("app-1") == []
        assert registry.snapshot().errors[FETCH_FAILURE] == 1
    finally:
        metrics.install_registry(None)


@pytest.mark.asyncio
async def test_fetch_all_fails_open_on_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    async with _store(handler) as store:
        assert await store.fetch_all("app-1") == []


@pytest.mark.asyncio
async def test_read_log_raises_on_failure() -> None:
    async with _store(_json_handler({}, status_code=502)) as store:
        with pytest.raises(WritebackGridError) as excinfo:
            await store.read_log("app-1")

    assert excinfo.value.code == FETCH_FAILURE
    assert excinfo.value.details["status"] == 502


@pytest.mark.asyncio
async def test_unknown_envelope_reported_as_malformed() -> None:
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        async with _store(_json_handler({"rows": [ACME_V1]})) as store:
            assert await store.read_log("app-1") == []
        assert registry.snapshot().errors[MALFORMED_RESPONSE] == 1
    finally:
        metrics.install_registry(None)


@pytest.mark.asyncio
async def test_invalid_records_skipped() -> None:
    payload = [
        ACME_V1,
        {"customer_name": "", "version": 1},
        {"comments": "no key"},
        {"customer_name": "Gamma", "version": -2},
        {"customer_name": "Delta", "version": "3"},
        "not an object",
    ]
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        async with _store(_json_handler(payload)) as store:
            records = await store.read_log("app-1")
        assert sorted(record.key for record in records) == ["Acme", "Delta"]
        assert registry.snapshot().errors[MALFORMED_RESPONSE] == 4
    finally:
        metrics.install_registry(None)


def test_decode_accepts_alternate_key_columns() -> None:
    store = AnnotationStore(read_url=READ_URL, write_url=WRITE_URL, client=httpx.AsyncClient())

    batch = store.decode([{"account_id": "A-7", "version": 1}, {"accountId": "A-8"}])

    assert [record.key for record in batch.records] == ["A-7", "A-8"]
    assert batch.rejected == []


@pytest.mark.asyncio
async def test_version_history_and_current() -> None:
    async with _store(_json_handler([ACME_V1, BETA_V1, ACME_V2])) as store:
        history = await store.version_history("app-1", "Acme")
        current = await store.fetch_current("app-1", "Acme")
        first = await store.fetch_current("app-1", "Acme", version=1)
        missing = await store.fetch_current("app-1", "Acme", version=9)
        assert await store.has_annotations("app-1", "Beta") is True
        assert await store.has_annotations("app-1", "Zeta") is False

    assert [record.version for record in history] == [2, 1]
    assert current is not None and current.version == 2
    assert first is not None and first.fields["status"] == "Accurate"
    assert missing is None


@pytest.mark.asyncio
async def test_append_request_shape() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="INSERT 0 1")

    async with _store(handler) as store:
        text = await store.append("app-1", "INSERT INTO writeback_data (app_id) VALUES ('app-1');")

    assert text == "INSERT 0 1"
    request = seen[0]
    assert str(request.url).startswith(WRITE_URL)
    assert request.url.params["X-Execution-Token"] == "write-token"
    assert json.loads(request.content) == {
        "query": "INSERT INTO writeback_data (app_id) VALUES ('app-1');",
        "app_id": "app-1",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "body", "code"),
    [
        (409, "conflict", VERSION_CONFLICT),
        (500, 'duplicate key value violates unique constraint "writeback_version_key"', VERSION_CONFLICT),
        (500, "syntax error at or near INSERT", WRITE_FAILURE),
        (403, "forbidden", WRITE_FAILURE),
    ],
)
async def test_append_failures_classified(status_code: int, body: str, code: str) -> None:
    async with _store(lambda request: httpx.Response(status_code, text=body)) as store:
        with pytest.raises(WritebackGridError) as excinfo:
            await store.append("app-1", "INSERT ...")

    assert excinfo.value.code == code


@pytest.mark.asyncio
async def test_append_transport_error_is_write_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with _store(handler) as store:
        with pytest.raises(WritebackGridError) as excinfo:
            await store.append("app-1", "INSERT ...")

    assert excinfo.value.code == WRITE_FAILURE


@pytest.mark.asyncio
async def test_injected_client_left_open() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_json_handler([])))
    store = AnnotationStore(read_url=READ_URL, write_url=WRITE_URL, client=client)

    await store.aclose()

    assert client.is_closed is False
    await client.aclose()
