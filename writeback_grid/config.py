"""Configuration loading utilities for the writeback grid."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

ENV_PREFIX = "WRITEBACK_GRID_"


DEFAULT_STATE_SUBDIR = "writeback-grid"


def _default_state_dir() -> Path:
    """Return the default local state directory under the current working directory."""

    return (Path.cwd() / DEFAULT_STATE_SUBDIR).resolve()


DEFAULT_STATE_DIR = _default_state_dir()
DEFAULT_KEY_COLUMN = "Customer"
DEFAULT_KEY_FIELD = "customer_name"
DEFAULT_TABLE_NAME = "writeback_data"
DEFAULT_OVERLAY_FIELDS = {"status": "model_feedback", "comments": "comments"}
DEFAULT_PAGE_SIZE = 100
DEFAULT_PAGE_CHANGE_DELAY = "2s"
DEFAULT_MERGE_DELAY = "50ms"
DEFAULT_AUTO_REFRESH_INTERVAL = "30s"
DEFAULT_POST_SAVE_REFRESH_DELAY = "1s"
DEFAULT_WRITE_DELAY = "200ms"
DEFAULT_REQUEST_TIMEOUT = "30s"
DEFAULT_EDIT_PRESENCE_TTL = "30s"
DEFAULT_MAX_CONFLICT_RETRIES = 3
DEFAULT_LOG_LEVEL = "INFO"

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

T_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}

ENV_FIELD_MAP = {
    "config_file": f"{ENV_PREFIX}CONFIG_FILE",
    "dataset_id": f"{ENV_PREFIX}DATASET_ID",
    "read_url": f"{ENV_PREFIX}READ_URL",
    "read_token": f"{ENV_PREFIX}READ_TOKEN",
    "write_url": f"{ENV_PREFIX}WRITE_URL",
    "write_token": f"{ENV_PREFIX}WRITE_TOKEN",
    "key_column": f"{ENV_PREFIX}KEY_COLUMN",
    "key_field": f"{ENV_PREFIX}KEY_FIELD",
    "table_name": f"{ENV_PREFIX}TABLE_NAME",
    "overlay_fields": f"{ENV_PREFIX}OVERLAY_FIELDS",
    "page_size": f"{ENV_PREFIX}PAGE_SIZE",
    "page_change_delay": f"{ENV_PREFIX}PAGE_CHANGE_DELAY",
    "merge_delay": f"{ENV_PREFIX}MERGE_DELAY",
    "auto_refresh_interval": f"{ENV_PREFIX}AUTO_REFRESH_INTERVAL",
    "post_save_refresh_delay": f"{ENV_PREFIX}POST_SAVE_REFRESH_DELAY",
    "write_delay": f"{ENV_PREFIX}WRITE_DELAY",
    "request_timeout": f"{ENV_PREFIX}REQUEST_TIMEOUT",
    "edit_presence_ttl": f"{ENV_PREFIX}EDIT_PRESENCE_TTL",
    "max_conflict_retries": f"{ENV_PREFIX}MAX_CONFLICT_RETRIES",
    "state_dir": f"{ENV_PREFIX}STATE_DIR",
    "log_level": f"{ENV_PREFIX}LOG_LEVEL",
}

DEFAULT_VALUES: dict[str, Any] = {
    "config_file": None,
    "dataset_id": None,
    "read_url": None,
    "read_token": None,
    "write_url": None,
    "write_token": None,
    "key_column": DEFAULT_KEY_COLUMN,
    "key_field": DEFAULT_KEY_FIELD,
    "table_name": DEFAULT_TABLE_NAME,
    "overlay_fields": dict(DEFAULT_OVERLAY_FIELDS),
    "page_size": DEFAULT_PAGE_SIZE,
    "page_change_delay": DEFAULT_PAGE_CHANGE_DELAY,
    "merge_delay": DEFAULT_MERGE_DELAY,
    "auto_refresh_interval": DEFAULT_AUTO_REFRESH_INTERVAL,
    "post_save_refresh_delay": DEFAULT_POST_SAVE_REFRESH_DELAY,
    "write_delay": DEFAULT_WRITE_DELAY,
    "request_timeout": DEFAULT_REQUEST_TIMEOUT,
    "edit_presence_ttl": DEFAULT_EDIT_PRESENCE_TTL,
    "max_conflict_retries": DEFAULT_MAX_CONFLICT_RETRIES,
    "state_dir": str(DEFAULT_STATE_DIR),
    "log_level": DEFAULT_LOG_LEVEL,
}


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass(slots=True)
class Config:
    """Configuration model for a writeback grid session."""

    dataset_id: str | None
    read_url: str | None
    read_token: str | None
    write_url: str | None
    write_token: str | None
    key_column: str
    key_field: str
    table_name: str
    overlay_fields: dict[str, str]
    page_size: int
    page_change_delay: timedelta
    merge_delay: timedelta
    auto_refresh_interval: timedelta
    post_save_refresh_delay: timedelta
    write_delay: timedelta
    request_timeout: timedelta
    edit_presence_ttl: timedelta
    max_conflict_retries: int
    state_dir: Path
    log_level: str
    config_file: Path | None = None

    @property
    def overlay_ids(self) -> tuple[str, ...]:
        return tuple(self.overlay_fields)


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from CLI arguments, environment variables, and optional file."""

    parser = _build_arg_parser()
    parsed = parser.parse_args(argv)
    cli_values = {k: v for k, v in vars(parsed).items() if v is not None}

    env_values = _extract_env_values(environ if environ is not None else os.environ)

    config_path_value = cli_values.get("config_file") or env_values.get("config_file")
    file_values = _load_config_file(config_path_value)

    merged: dict[str, Any] = {}
    _merge_layer(merged, DEFAULT_VALUES)
    _merge_layer(merged, file_values)
    _merge_layer(merged, env_values)
    _merge_layer(merged, cli_values)

    config = _normalize_values(merged, config_path_value)

    _maybe_write_config_file(config)
    return config


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="writeback-grid",
        description="Writeback grid configuration flags.",
        add_help=False,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-h", "--help", action="help", help="Show this help message and exit.")
    parser.add_argument(
        "--config-file",
        dest="config_file",
        metavar="PATH",
        help="Path to a JSON configuration file. Default: none.",
    )
    parser.add_argument("--dataset-id", dest="dataset_id", metavar="ID", help="Dataset (application) identifier.")

    parser.add_argument("--read-url", dest="read_url", metavar="URL", help="Annotation store read endpoint.")
    parser.add_argument("--read-token", dest="read_token", metavar="TOKEN", help="Execution token for the read endpoint.")
    parser.add_argument("--write-url", dest="write_url", metavar="URL", help="Annotation store write endpoint.")
    parser.add_argument("--write-token", dest="write_token", metavar="TOKEN", help="Execution token for the write endpoint.")

    parser.add_argument(
        "--key-column",
        dest="key_column",
        metavar="COLUMN",
        help=f"Engine column holding the natural row key (default: {DEFAULT_KEY_COLUMN}).",
    )
    parser.add_argument(
        "--key-field",
        dest="key_field",
        metavar="FIELD",
        help=f"Annotation store column holding the natural key (default: {DEFAULT_KEY_FIELD}).",
    )
    parser.add_argument(
        "--table-name",
        dest="table_name",
        metavar="NAME",
        help=f"Annotation log table targeted by write instructions (default: {DEFAULT_TABLE_NAME}).",
    )
    parser.add_argument(
        "--overlay-field",
        dest="overlay_fields",
        action="append",
        metavar="ID:COLUMN",
        help="Map an overlay column to its store column (may be repeated; replaces the defaults).",
    )

    parser.add_argument("--page-size", dest="page_size", metavar="INT", help=f"Rows per page (default: {DEFAULT_PAGE_SIZE}).")
    parser.add_argument(
        "--page-change-delay",
        dest="page_change_delay",
        metavar="DURATION",
        help=f"How long an explicit page change suppresses resets (default: {DEFAULT_PAGE_CHANGE_DELAY}).",
    )
    parser.add_argument(
        "--merge-delay",
        dest="merge_delay",
        metavar="DURATION",
        help=f"Delay before the deferred annotation merge after a page change (default: {DEFAULT_MERGE_DELAY}).",
    )
    parser.add_argument(
        "--auto-refresh-interval",
        dest="auto_refresh_interval",
        metavar="DURATION",
        help=f"Annotation polling interval, 0 disables (default: {DEFAULT_AUTO_REFRESH_INTERVAL}).",
    )
    parser.add_argument(
        "--post-save-refresh-delay",
        dest="post_save_refresh_delay",
        metavar="DURATION",
        help=f"Delay before re-reading annotations after a save (default: {DEFAULT_POST_SAVE_REFRESH_DELAY}).",
    )
    parser.add_argument(
        "--write-delay",
        dest="write_delay",
        metavar="DURATION",
        help=f"Pause between sequential append requests (default: {DEFAULT_WRITE_DELAY}).",
    )
    parser.add_argument(
        "--request-timeout",
        dest="request_timeout",
        metavar="DURATION",
        help=f"HTTP timeout for annotation store calls (default: {DEFAULT_REQUEST_TIMEOUT}).",
    )
    parser.add_argument(
        "--edit-presence-ttl",
        dest="edit_presence_ttl",
        metavar="DURATION",
        help=f"How long an edit presence entry stays live (default: {DEFAULT_EDIT_PRESENCE_TTL}).",
    )
    parser.add_argument(
        "--max-conflict-retries",
        dest="max_conflict_retries",
        metavar="INT",
        help=f"Retries after a version conflict before giving up (default: {DEFAULT_MAX_CONFLICT_RETRIES}).",
    )
    parser.add_argument(
        "--state-dir",
        dest="state_dir",
        metavar="PATH",
        help=f"Directory for the local edit mirror (default: {DEFAULT_STATE_DIR}).",
    )
    parser.add_argument("--log-level", dest="log_level", metavar="LEVEL", help=f"Log level (default: {DEFAULT_LOG_LEVEL}).")

    return parser


def _extract_env_values(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, env_name in ENV_FIELD_MAP.items():
        if env_name in env:
            values[field] = env[env_name]
    return values


def _load_config_file(path_value: str | Path | None) -> dict[str, Any]:
    if not path_value:
        return {}
    path = _parse_path(path_value, field="config_file")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")
    result: dict[str, Any] = {k: v for k, v in data.items() if k in DEFAULT_VALUES}
    result["config_file"] = str(path)
    return result


def _merge_layer(base: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        if value is None:
            continue
        base[key] = value


def _normalize_values(values: Mapping[str, Any], config_path_value: str | Path | None) -> Config:
    dataset_id = _parse_optional_str(values.get("dataset_id"))
    read_url = _parse_optional_str(values.get("read_url"))
    read_token = _parse_optional_str(values.get("read_token"))
    write_url = _parse_optional_str(values.get("write_url"))
    write_token = _parse_optional_str(values.get("write_token"))

    key_column = _parse_required_str(values.get("key_column", DEFAULT_VALUES["key_column"]), field="key_column")
    key_field = _parse_required_str(values.get("key_field", DEFAULT_VALUES["key_field"]), field="key_field")
    table_name = _parse_required_str(values.get("table_name", DEFAULT_VALUES["table_name"]), field="table_name")
    overlay_fields = _coerce_overlay_fields(values.get("overlay_fields", DEFAULT_VALUES["overlay_fields"]))

    page_size = _parse_int(values.get("page_size", DEFAULT_VALUES["page_size"]), field="page_size", minimum=1)
    page_change_delay = _parse_duration(values.get("page_change_delay", DEFAULT_VALUES["page_change_delay"]), default_unit="s", field="page_change_delay")
    merge_delay = _parse_duration(values.get("merge_delay", DEFAULT_VALUES["merge_delay"]), default_unit="ms", field="merge_delay")
    auto_refresh_interval = _parse_duration(
        values.get("auto_refresh_interval", DEFAULT_VALUES["auto_refresh_interval"]),
        default_unit="s",
        field="auto_refresh_interval",
    )
    post_save_refresh_delay = _parse_duration(
        values.get("post_save_refresh_delay", DEFAULT_VALUES["post_save_refresh_delay"]),
        default_unit="s",
        field="post_save_refresh_delay",
    )
    write_delay = _parse_duration(values.get("write_delay", DEFAULT_VALUES["write_delay"]), default_unit="ms", field="write_delay")
    request_timeout = _parse_duration(values.get("request_timeout", DEFAULT_VALUES["request_timeout"]), default_unit="s", field="request_timeout")
    if request_timeout.total_seconds() <= 0:
        raise ConfigError("request_timeout must be greater than zero")
    edit_presence_ttl = _parse_duration(values.get("edit_presence_ttl", DEFAULT_VALUES["edit_presence_ttl"]), default_unit="s", field="edit_presence_ttl")
    max_conflict_retries = _parse_int(
        values.get("max_conflict_retries", DEFAULT_VALUES["max_conflict_retries"]),
        field="max_conflict_retries",
        minimum=0,
    )

    state_dir = _parse_path(values["state_dir"], field="state_dir")

    log_level = str(values.get("log_level", DEFAULT_VALUES["log_level"])).strip().upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of: {', '.join(sorted(LOG_LEVELS))}")

    config_file_path = _parse_optional_path(config_path_value, field="config_file")

    return Config(
        dataset_id=dataset_id,
        read_url=read_url,
        read_token=read_token,
        write_url=write_url,
        write_token=write_token,
        key_column=key_column,
        key_field=key_field,
        table_name=table_name,
        overlay_fields=overlay_fields,
        page_size=page_size,
        page_change_delay=page_change_delay,
        merge_delay=merge_delay,
        auto_refresh_interval=auto_refresh_interval,
        post_save_refresh_delay=post_save_refresh_delay,
        write_delay=write_delay,
        request_timeout=request_timeout,
        edit_presence_ttl=edit_presence_ttl,
        max_conflict_retries=max_conflict_retries,
        state_dir=state_dir,
        log_level=log_level,
        config_file=config_file_path,
    )


def _maybe_write_config_file(config: Config) -> None:
    path = config.config_file
    if path is None:
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return

    payload = _serialize_config(config)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def _serialize_config(config: Config) -> dict[str, Any]:
    # tokens stay out of files written on the user's behalf
    return {
        "config_file": str(config.config_file) if config.config_file else None,
        "dataset_id": config.dataset_id,
        "read_url": config.read_url,
        "write_url": config.write_url,
        "key_column": config.key_column,
        "key_field": config.key_field,
        "table_name": config.table_name,
        "overlay_fields": dict(config.overlay_fields),
        "page_size": config.page_size,
        "page_change_delay": _format_duration(config.page_change_delay, preferred_unit="s"),
        "merge_delay": _format_duration(config.merge_delay, preferred_unit="ms"),
        "auto_refresh_interval": _format_duration(config.auto_refresh_interval, preferred_unit="s"),
        "post_save_refresh_delay": _format_duration(config.post_save_refresh_delay, preferred_unit="s"),
        "write_delay": _format_duration(config.write_delay, preferred_unit="ms"),
        "request_timeout": _format_duration(config.request_timeout, preferred_unit="s"),
        "edit_presence_ttl": _format_duration(config.edit_presence_ttl, preferred_unit="s"),
        "max_conflict_retries": config.max_conflict_retries,
        "state_dir": str(config.state_dir),
        "log_level": config.log_level,
    }


def _coerce_overlay_fields(raw: Any) -> dict[str, str]:
    if raw is None:
        return dict(DEFAULT_OVERLAY_FIELDS)
    if isinstance(raw, Mapping):
        registry: dict[str, str] = {}
        for overlay_id, column in raw.items():
            overlay_str = str(overlay_id).strip()
            column_str = str(column).strip()
            if not overlay_str or not column_str:
                raise ConfigError("Overlay field mappings must contain non-empty strings")
            registry[overlay_str] = column_str
        if not registry:
            raise ConfigError("At least one overlay field is required")
        return registry
    if isinstance(raw, str):
        entries = [part for part in raw.split(",") if part.strip()]
        return _coerce_overlay_fields(entries)
    if isinstance(raw, Sequence):
        sequence_registry: dict[str, str] = {}
        for entry in raw:
            if not isinstance(entry, str):
                raise ConfigError("Overlay field arguments must be strings")
            overlay_id, column = _parse_overlay_field_entry(entry)
            sequence_registry[overlay_id] = column
        if not sequence_registry:
            raise ConfigError("At least one overlay field is required")
        return sequence_registry
    raise ConfigError("Overlay fields must be provided as an object or array of strings")


def _parse_overlay_field_entry(entry: str) -> tuple[str, str]:
    if ":" not in entry:
        overlay_id = entry.strip()
        if not overlay_id:
            raise ConfigError("Overlay field arguments must be non-empty")
        return overlay_id, overlay_id
    overlay_id, column = entry.split(":", 1)
    overlay_id = overlay_id.strip()
    column = column.strip()
    if not overlay_id or not column:
        raise ConfigError("Overlay field arguments must include non-empty id and column")
    return overlay_id, column


def _format_duration(duration: timedelta, *, preferred_unit: str) -> str:
    total_ms = int(round(duration.total_seconds() * 1000))
    factor_ms = int(T_DURATION_UNITS.get(preferred_unit, 1) * 1000)
    if factor_ms and total_ms % factor_ms == 0:
        return f"{total_ms // factor_ms}{preferred_unit}"
    return f"{total_ms}ms"


def _parse_int(value: Any, *, field: str, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        if isinstance(value, bool):
            raise TypeError(field)
        if isinstance(value, (int, float)):
            int_value = int(value)
        else:
            int_value = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {field}: {value!r}") from exc

    if minimum is not None and int_value < minimum:
        raise ConfigError(f"{field} must be >= {minimum}")
    if maximum is not None and int_value > maximum:
        raise ConfigError(f"{field} must be <= {maximum}")
    return int_value


def _parse_duration(value: Any, *, default_unit: str, field: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        if seconds < 0:
            raise ConfigError(f"{field} must be positive")
        return timedelta(seconds=seconds)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")

    stripped = value.strip().lower()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")

    unit = default_unit
    number_part = stripped
    if stripped.endswith("ms"):
        unit = "ms"
        number_part = stripped[:-2]
    elif stripped[-1] in T_DURATION_UNITS:
        unit = stripped[-1]
        number_part = stripped[:-1]
    if not number_part or not number_part.isdigit():
        raise ConfigError(f"{field} must be a non-negative integer optionally suffixed with ms, s, m, or h")
    amount = int(number_part)
    return timedelta(seconds=amount * T_DURATION_UNITS[unit])


def _parse_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _parse_required_str(value: Any, *, field: str) -> str:
    stripped = _parse_optional_str(value)
    if stripped is None:
        raise ConfigError(f"{field} may not be empty")
    return stripped


def _parse_path(value: Any, *, field: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser().resolve()
    if not isinstance(value, str):
        raise ConfigError(f"Invalid path for {field}: {value!r}")
    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")
    return Path(stripped).expanduser().resolve()


def _parse_optional_path(value: Any, *, field: str) -> Path | None:
    if value in (None, ""):
        return None
    return _parse_path(value, field=field)
