from __future__ import annotations

from writeback_grid import metrics


def test_metrics_registry_records_and_formats() -> None:
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        metrics.record_operation("page_fetch")
        metrics.record_operation("merge", count=2)
        metrics.record_error("FETCH_FAILURE")
        metrics.record_discard("merge", count=3)

        snapshot = registry.snapshot()
        text = metrics.format_prometheus(snapshot, rows_current=5, pending_edits=2)

        assert 'writeback_grid_ops_total{op="page_fetch"} 1' in text
        assert 'writeback_grid_ops_total{op="merge"} 2' in text
        assert 'writeback_grid_ops_total{op="save"} 0' in text
        assert 'writeback_grid_errors_total{code="FETCH_FAILURE"} 1' in text
        assert 'writeback_grid_discards_total{kind="merge"} 3' in text
        assert 'writeback_grid_discards_total{kind="page"} 0' in text
        assert "writeback_grid_rows_current 5" in text
        assert "writeback_grid_pending_edits 2" in text
        assert "writeback_grid_uptime_seconds" in text
    finally:
        metrics.install_registry(None)


def test_error_placeholder_when_no_errors() -> None:
    registry = metrics.MetricsRegistry()
    text = metrics.format_prometheus(registry.snapshot(), rows_current=0, pending_edits=0)

    assert 'writeback_grid_errors_total{code="none"} 0' in text


def test_error_codes_are_normalised() -> None:
    registry = metrics.MetricsRegistry()
    registry.record_error(" lost_race ")
    registry.record_operation("")
    registry.record_operation("save", count=0)

    snapshot = registry.snapshot()

    assert snapshot.errors == {"LOST_RACE": 1}
    assert snapshot.operations["save"] == 0


def test_record_helpers_no_registry() -> None:
    metrics.install_registry(None)
    # Should no-op without raising when registry is not installed.
    metrics.record_operation("save")
    metrics.record_error("WRITE_FAILURE")
    metrics.record_discard("page")


def test_reset_clears_counters() -> None:
    registry = metrics.MetricsRegistry()
    registry.record_operation("append", count=4)
    registry.reset()

    assert registry.snapshot().operations["append"] == 0
