"""``writeback-grid`` command: inspect the annotation log of a dataset."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Mapping, Sequence, TextIO

import httpx

from .annotations import AnnotationStore
from .config import ConfigError, load_config
from .errors import CONFIG_ERROR, WritebackGridError, error_payload
from .logging import configure_logging, get_logger
from .merge import select_current
from .metrics import MetricsRegistry, format_prometheus, install_registry
from .mirror import EditMirror

LOGGER = get_logger(__name__)


def _build_command_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="writeback-grid", add_help=False)
    parser.add_argument("--history", dest="history", metavar="KEY", help="Print every version stored for KEY.")
    parser.add_argument(
        "--metrics",
        dest="metrics",
        action="store_true",
        help="Append Prometheus metrics after the JSON output.",
    )
    return parser


async def run(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    stdout: TextIO | None = None,
) -> int:
    """Execute the command and return its exit status."""

    out = stdout or sys.stdout
    command, remaining = _build_command_parser().parse_known_args(argv)
    try:
        config = load_config(remaining, environ)
    except ConfigError as exc:
        LOGGER.error("cli.config.invalid", extra={"context": {"error": str(exc)}})
        print(json.dumps(error_payload(CONFIG_ERROR, str(exc))), file=out)
        return 1

    configure_logging(config.log_level)
    if not config.dataset_id:
        message = "dataset_id must be configured (--dataset-id or WRITEBACK_GRID_DATASET_ID)"
        LOGGER.error("cli.dataset.missing")
        print(json.dumps(error_payload(CONFIG_ERROR, message)), file=out)
        return 1

    registry = MetricsRegistry() if command.metrics else None
    install_registry(registry)
    try:
        try:
            store = AnnotationStore.from_config(config, client=client)
        except WritebackGridError as exc:
            LOGGER.error("cli.store.invalid", extra={"context": {"error": exc.message}})
            print(json.dumps(exc.to_dict()), file=out)
            return 1

        async with store:
            try:
                records = await store.read_log(config.dataset_id)
            except WritebackGridError as exc:
                LOGGER.error("cli.fetch.failed", extra={"context": {"code": exc.code, "error": exc.message}})
                print(json.dumps(exc.to_dict()), file=out)
                return 1

        if command.history:
            history = sorted(
                (record for record in records if record.key == command.history),
                key=lambda record: (record.version, record.recency),
                reverse=True,
            )
            payload: Any = {
                "dataset_id": config.dataset_id,
                "key": command.history,
                "versions": [record.to_dict() for record in history],
            }
            row_count = len(history)
        else:
            current = select_current(records)
            payload = {
                "dataset_id": config.dataset_id,
                "annotations": [current[key].to_dict() for key in sorted(current)],
            }
            row_count = len(current)

        print(json.dumps(payload, indent=2, ensure_ascii=False), file=out)
        if registry is not None:
            pending = len(EditMirror.for_state_dir(config.state_dir).load())
            out.write(format_prometheus(registry.snapshot(), rows_current=row_count, pending_edits=pending))
        return 0
    finally:
        install_registry(None)


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for inspecting stored annotations."""

    status = asyncio.run(run(argv))
    if status:
        raise SystemExit(status)


if __name__ == "__main__":  # pragma: no cover
    main()
