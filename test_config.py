"""YAML configuration loading and validation."""

from __future__ import annotations

import logging

import pytest

from nirload.config import ENV_DATABASE_URL, PipelineConfig, config_from_dict, load_config
from nirload.errors import ConfigError


def test_defaults():
    cfg = config_from_dict({})
    assert cfg.transport.mode == "LOCAL"
    assert cfg.transport.file_pattern == "*.xlsx;*.xls;*.csv"
    assert cfg.reader.header_row == 2
    assert cfg.archive.retention_days == 30
    assert cfg.archive.use_date_folder is True
    assert cfg.database.routine_name == "SHS_Job_ImportNirData"
    assert cfg.job.max_retries == 0
    assert cfg.job.cron_expression == "0 */15 * * * *"
    assert cfg.log_level == logging.INFO


def test_load_yaml_partial_sections(write_text_file):
    path = write_text_file(
        "cfg.yaml",
        "transport:\n  remote_path: exports\n"
        "archive:\n  retention_days: 7\n  overwrite_existing: true\n"
        "job:\n  log_level: debug\n",
    )
    cfg = load_config(path)
    assert cfg.transport.remote_path == "exports"
    assert cfg.transport.mode == "LOCAL"
    assert cfg.archive.retention_days == 7
    assert cfg.archive.overwrite_existing is True
    assert cfg.log_level == logging.DEBUG


def test_env_overrides_database_url(monkeypatch):
    monkeypatch.setenv(ENV_DATABASE_URL, "sqlite+aiosqlite:///:memory:")
    cfg = config_from_dict({"database": {"url": "sqlite+aiosqlite:///./other.db"}})
    assert cfg.database.url == "sqlite+aiosqlite:///:memory:"


def test_env_config_path(monkeypatch, write_text_file):
    path = write_text_file("env.yaml", "reader:\n  header_row: 1\n")
    monkeypatch.setenv("NIRLOAD_CONFIG", str(path))
    assert load_config().reader.header_row == 1


@pytest.mark.parametrize(
    "raw",
    [
        {"job": {"max_retries": 3}},
        {"reader": {"header_row": 0}},
        {"archive": {"retention_days": -1}},
        {"archive": {"unknown_flag": True}},
        {"nonsense": {}},
        {"transport": ["not", "a", "mapping"]},
    ],
)
def test_invalid_config_rejected(raw):
    with pytest.raises(ConfigError):
        config_from_dict(raw)


def test_missing_file_and_bad_yaml(tmp_path, write_text_file):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")
    bad = write_text_file("bad.yaml", "transport: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(bad)


def test_config_is_immutable():
    cfg = PipelineConfig()
    with pytest.raises(AttributeError):
        cfg.job.enable_job = False  # type: ignore[misc]
