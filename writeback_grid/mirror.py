"""Durable local copy of unsaved edits."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .logging import get_logger
from .writeback import EditBuffer

logger = get_logger(__name__)

EDITED_DATA_KEY = "writeback_grid_edited_data"
STATE_FILENAME = "local-state.json"


class LocalStore:
    """Small JSON key-value file; every write replaces the file atomically."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def _read(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("mirror.file.corrupt", extra={"context": {"path": str(self.path)}})
            return {}
        if not isinstance(data, dict):
            logger.warning("mirror.file.unexpected", extra={"context": {"path": str(self.path)}})
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.path)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EditMirror:
    """Persists the edit buffer as ``{changes, timestamp, user}`` under one key."""

    def __init__(
        self,
        store: LocalStore,
        *,
        key: str = EDITED_DATA_KEY,
        clock: Callable[[], str] = _utc_iso,
    ) -> None:
        self._store = store
        self.key = key
        self._clock = clock

    @classmethod
    def for_state_dir(cls, state_dir: Path) -> "EditMirror":
        return cls(LocalStore(Path(state_dir) / STATE_FILENAME))

    def save(self, edits: EditBuffer, user: str) -> None:
        self._store.set(
            self.key,
            {"changes": edits.to_changes(), "timestamp": self._clock(), "user": user},
        )

    def load(self) -> EditBuffer:
        entry = self._store.get(self.key)
        if not isinstance(entry, dict):
            return EditBuffer()
        changes = entry.get("changes")
        if not isinstance(changes, dict):
            return EditBuffer()
        valid = {key: values for key, values in changes.items() if isinstance(values, dict)}
        if len(valid) != len(changes):
            logger.warning(
                "mirror.changes.skipped",
                extra={"context": {"skipped": len(changes) - len(valid)}},
            )
        return EditBuffer.from_changes(valid)

    def clear(self) -> None:
        self._store.remove(self.key)
