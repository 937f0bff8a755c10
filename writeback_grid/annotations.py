"""HTTP client for the append-only annotation store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence

import httpx
from jsonschema import exceptions as jsonschema_exceptions, validators as jsonschema_validators

from .config import DEFAULT_KEY_FIELD, DEFAULT_OVERLAY_FIELDS, Config
from .errors import CONFIG_ERROR, FETCH_FAILURE, MALFORMED_RESPONSE, VERSION_CONFLICT, WRITE_FAILURE, WritebackGridError
from .logging import get_logger
from .metrics import record_error, record_operation
from .models import DEFAULT_KEY_FIELDS, AnnotationRecord

logger = get_logger(__name__)

TOKEN_PARAM = "X-Execution-Token"
DATASET_PARAM = "app_id"
USER_AGENT = "writeback-grid"
WRAPPER_KEYS: tuple[str, ...] = ("DoQuery", "result", "body", "data")
CONFLICT_MARKERS: tuple[str, ...] = ("unique", "duplicate")
DEFAULT_TIMEOUT_SECONDS = 30.0


class EnvelopeKind(str, Enum):
    BARE = "bare"
    NESTED = "nested"
    WRAPPED = "wrapped"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class DecodedEnvelope:
    kind: EnvelopeKind
    rows: list[Any] = field(default_factory=list)
    wrapper: str | None = None


def decode_envelope(payload: Any) -> DecodedEnvelope:
    """Classify a read response and pull out the raw record list.

    Accepted shapes are a bare array of records, an array of arrays (every
    inner array is flattened), or an object holding the array under one of
    :data:`WRAPPER_KEYS`. Anything else decodes to no records.
    """

    if isinstance(payload, list):
        if any(isinstance(item, list) for item in payload):
            rows: list[Any] = []
            for item in payload:
                if isinstance(item, list):
                    rows.extend(item)
                else:
                    rows.append(item)
            return DecodedEnvelope(EnvelopeKind.NESTED, rows)
        return DecodedEnvelope(EnvelopeKind.BARE, list(payload))
    if isinstance(payload, Mapping):
        for wrapper in WRAPPER_KEYS:
            inner = payload.get(wrapper)
            if isinstance(inner, list):
                decoded = decode_envelope(inner)
                return DecodedEnvelope(EnvelopeKind.WRAPPED, decoded.rows, wrapper=wrapper)
    return DecodedEnvelope(EnvelopeKind.UNKNOWN)


def build_record_schema(key_fields: Sequence[str]) -> dict[str, Any]:
    """JSON Schema a raw store row must satisfy before it is decoded."""

    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "anyOf": [
            {
                "required": [key],
                "properties": {key: {"type": ["string", "number"], "minLength": 1}},
            }
            for key in key_fields
        ],
        "properties": {
            "version": {
                "anyOf": [
                    {"type": "integer", "minimum": 0},
                    {"type": "string", "pattern": r"^\s*\d+\s*$"},
                    {"type": "null"},
                ]
            }
        },
    }


@dataclass(slots=True)
class RejectedRecord:
    index: int
    reason: str


@dataclass(slots=True)
class RecordBatch:
    records: list[AnnotationRecord]
    kind: EnvelopeKind
    rejected: list[RejectedRecord] = field(default_factory=list)


class AnnotationStore:
    """Reads and appends annotation versions through two webhook endpoints."""

    def __init__(
        self,
        *,
        read_url: str,
        write_url: str,
        read_token: str | None = None,
        write_token: str | None = None,
        key_field: str = DEFAULT_KEY_FIELD,
        overlay_fields: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.read_url = read_url
        self.write_url = write_url
        self._read_token = read_token
        self._write_token = write_token
        self.key_field = key_field
        self.key_fields: tuple[str, ...] = (key_field,) + tuple(name for name in DEFAULT_KEY_FIELDS if name != key_field)
        columns = dict(DEFAULT_OVERLAY_FIELDS if overlay_fields is None else overlay_fields)
        self.field_aliases = {column: overlay_id for overlay_id, column in columns.items()}
        schema = build_record_schema(self.key_fields)
        validator_cls = jsonschema_validators.validator_for(schema)
        validator_cls.check_schema(schema)
        self._validator = validator_cls(schema)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers={"User-Agent": USER_AGENT})
        self._closed = False

    @classmethod
    def from_config(cls, config: Config, *, client: httpx.AsyncClient | None = None) -> "AnnotationStore":
        if not config.read_url or not config.write_url:
            raise WritebackGridError(CONFIG_ERROR, "Annotation store read_url and write_url must be configured")
        return cls(
            read_url=config.read_url,
            write_url=config.write_url,
            read_token=config.read_token,
            write_token=config.write_token,
            key_field=config.key_field,
            overlay_fields=config.overlay_fields,
            timeout=config.request_timeout.total_seconds(),
            client=client,
        )

    async def __aenter__(self) -> "AnnotationStore":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def read_log(self, dataset_id: str) -> list[AnnotationRecord]:
        """Return every decodable record for ``dataset_id``.

        Transport and HTTP failures raise :class:`WritebackGridError` with
        ``FETCH_FAILURE`` so callers never mistake them for an empty log.
        """

        context = {"dataset_id": dataset_id, "url": self.read_url}
        params = {DATASET_PARAM: dataset_id}
        if self._read_token:
            params = {TOKEN_PARAM: self._read_token, **params}
        body = {"app_id": dataset_id, "timestamp": _iso_now()}
        try:
            response = await self._client.post(self.read_url, params=params, json=body)
        except httpx.HTTPError as exc:
            raise WritebackGridError(FETCH_FAILURE, f"Annotation read failed: {exc}", details=context) from exc
        if response.is_error:
            raise WritebackGridError(
                FETCH_FAILURE,
                f"Annotation read returned HTTP {response.status_code}",
                details={**context, "status": response.status_code, "body": response.text[:500]},
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        batch = self.decode(payload, dataset_id=dataset_id)
        record_operation("annotation_fetch")
        if batch.kind is EnvelopeKind.UNKNOWN:
            record_error(MALFORMED_RESPONSE)
            logger.warning(
                "annotations.envelope.unknown",
                extra={"context": {**context, "payload_type": type(payload).__name__}},
            )
        if batch.rejected:
            record_error(MALFORMED_RESPONSE, count=len(batch.rejected))
            logger.warning(
                "annotations.records.rejected",
                extra={
                    "context": {
                        **context,
                        "rejected": len(batch.rejected),
                        "first_reason": batch.rejected[0].reason,
                    }
                },
            )
        logger.debug(
            "annotations.fetch.completed",
            extra={"context": {**context, "kind": batch.kind.value, "records": len(batch.records)}},
        )
        return batch.records

    async def fetch_all(self, dataset_id: str) -> list[AnnotationRecord]:
        """Fail-open read: errors are logged and counted, and yield ``[]``."""

        try:
            return await self.read_log(dataset_id)
        except WritebackGridError as exc:
            record_error(exc.code)
            logger.warning(
                "annotations.fetch.failed",
                extra={"context": {"dataset_id": dataset_id, "code": exc.code, "error": exc.message}},
            )
            return []

    def decode(self, payload: Any, *, dataset_id: str | None = None) -> RecordBatch:
        envelope = decode_envelope(payload)
        records: list[AnnotationRecord] = []
        rejected: list[RejectedRecord] = []
        for index, raw in enumerate(envelope.rows):
            try:
                self._validator.validate(raw)
                records.append(
                    AnnotationRecord.from_dict(
                        raw,
                        key_fields=self.key_fields,
                        field_aliases=self.field_aliases,
                        dataset_id=dataset_id,
                    )
                )
            except jsonschema_exceptions.ValidationError as exc:
                rejected.append(RejectedRecord(index=index, reason=exc.message))
            except (TypeError, ValueError) as exc:
                rejected.append(RejectedRecord(index=index, reason=str(exc)))
        return RecordBatch(records=records, kind=envelope.kind, rejected=rejected)

    async def version_history(self, dataset_id: str, key: str) -> list[AnnotationRecord]:
        records = [record for record in await self.fetch_all(dataset_id) if record.key == str(key)]
        records.sort(key=lambda record: (record.version, record.recency), reverse=True)
        return records

    async def fetch_current(self, dataset_id: str, key: str, version: int | None = None) -> AnnotationRecord | None:
        history = await self.version_history(dataset_id, key)
        if not history:
            return None
        if version is None:
            return history[0]
        for record in history:
            if record.version == version:
                return record
        return None

    async def has_annotations(self, dataset_id: str, key: str) -> bool:
        return await self.fetch_current(dataset_id, key) is not None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def append(self, dataset_id: str, query: str) -> str:
        """Send one write instruction; returns the store's response text."""

        params = {TOKEN_PARAM: self._write_token} if self._write_token else None
        context = {"dataset_id": dataset_id, "url": self.write_url}
        try:
            response = await self._client.post(
                self.write_url,
                params=params,
                json={"query": query, "app_id": dataset_id},
            )
        except httpx.HTTPError as exc:
            raise WritebackGridError(WRITE_FAILURE, f"Annotation write failed: {exc}", details=context) from exc

        text = response.text
        if response.is_success:
            record_operation("append")
            return text

        lowered = text.lower()
        details = {**context, "status": response.status_code, "body": text[:500]}
        if response.status_code == httpx.codes.CONFLICT or any(marker in lowered for marker in CONFLICT_MARKERS):
            raise WritebackGridError(VERSION_CONFLICT, "Annotation version already exists", details=details)
        raise WritebackGridError(
            WRITE_FAILURE,
            f"Annotation write returned HTTP {response.status_code}: {text[:200]}",
            details=details,
        )


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
