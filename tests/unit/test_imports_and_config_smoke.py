from datetime import timedelta
from pathlib import Path

import pytest

from writeback_grid import Config, GridSession, load_config
from writeback_grid.config import ConfigError


def test_package_imports() -> None:
    """Importing the package should expose main APIs."""

    assert callable(load_config)
    assert Config is not None
    assert GridSession is not None


def test_default_configuration(tmp_path: Path) -> None:
    """Defaults should populate expected values when no overrides provided."""

    state_dir = tmp_path / "state"
    cfg = load_config(argv=[], environ={"WRITEBACK_GRID_STATE_DIR": str(state_dir)})

    assert cfg.state_dir == state_dir.resolve()
    assert cfg.dataset_id is None
    assert cfg.key_column == "Customer"
    assert cfg.key_field == "customer_name"
    assert cfg.table_name == "writeback_data"
    assert cfg.overlay_fields == {"status": "model_feedback", "comments": "comments"}
    assert cfg.overlay_ids == ("status", "comments")
    assert cfg.page_size == 100
    assert cfg.page_change_delay == timedelta(seconds=2)
    assert cfg.merge_delay == timedelta(milliseconds=50)
    assert cfg.auto_refresh_interval == timedelta(seconds=30)
    assert cfg.post_save_refresh_delay == timedelta(seconds=1)
    assert cfg.write_delay == timedelta(milliseconds=200)
    assert cfg.request_timeout == timedelta(seconds=30)
    assert cfg.edit_presence_ttl == timedelta(seconds=30)
    assert cfg.max_conflict_retries == 3
    assert cfg.log_level == "INFO"
    assert cfg.config_file is None


def test_cli_overrides_environment(tmp_path: Path) -> None:
    cfg = load_config(
        argv=["--dataset-id", "cli-app", "--page-size", "25", "--state-dir", str(tmp_path)],
        environ={"WRITEBACK_GRID_DATASET_ID": "env-app", "WRITEBACK_GRID_PAGE_SIZE": "50"},
    )

    assert cfg.dataset_id == "cli-app"
    assert cfg.page_size == 25


def test_environment_overrides_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text('{"dataset_id": "file-app", "read_url": "https://store/read"}', encoding="utf-8")

    cfg = load_config(
        argv=["--config-file", str(config_path), "--state-dir", str(tmp_path)],
        environ={"WRITEBACK_GRID_DATASET_ID": "env-app"},
    )

    assert cfg.dataset_id == "env-app"
    assert cfg.read_url == "https://store/read"
    assert cfg.config_file == config_path.resolve()


def test_invalid_page_size_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(argv=["--page-size", "0", "--state-dir", str(tmp_path)])


def test_invalid_log_level_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(argv=["--log-level", "chatty", "--state-dir", str(tmp_path)])


def test_config_file_must_hold_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2, 3]", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(argv=["--config-file", str(config_path), "--state-dir", str(tmp_path)])
