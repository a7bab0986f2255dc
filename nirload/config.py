"""
Centralized configuration for the instrument-export ingestion job.

Configuration is read once at run start from a YAML file and never mutated
during a run. Every section maps onto a dataclass with defaults, so a
partial YAML document is enough.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from nirload.errors import ConfigError

ENV_CONFIG_PATH = "NIRLOAD_CONFIG"
ENV_DATABASE_URL = "NIRLOAD_DATABASE_URL"


@dataclass(frozen=True)
class ArchivePolicy:
    processed_path: str = "archive/processed"
    error_path: str = "archive/error"
    backup_path: str = "archive/backup"

    # yyyy/MM/dd subfolders under each base path
    use_date_folder: bool = True
    keep_local_copy: bool = False
    overwrite_existing: bool = False

    # 0 disables the retention sweep
    retention_days: int = 30
    backup_before_process: bool = True

    @property
    def base_paths(self) -> List[str]:
        return [self.processed_path, self.error_path, self.backup_path]


@dataclass(frozen=True)
class TransportConfig:
    mode: str = "LOCAL"
    root: str = "."
    remote_path: str = "inbox"
    file_pattern: str = "*.xlsx;*.xls;*.csv"
    local_temp_path: str = "./temp"
    # Extra options for externally registered transports (host, port, ...)
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReaderSettings:
    # File layout: line 1 = "Product: ...", line 2 = header
    header_row: int = 2
    data_start_row: Optional[int] = None
    sheet_name: Optional[str] = None


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite+aiosqlite:///./nirload.db"
    pool_size: int = 5
    max_overflow: int = 10
    isolation_level: str = "READ COMMITTED"
    routine_name: str = "SHS_Job_ImportNirData"
    # {name}, {args} and {staging_table} are filled in per call
    routine_call_template: str = "CALL {name}({args})"
    staging_table: Optional[str] = "TEMP_NIR_DATA"
    text_length_floor: int = 50
    text_clob_threshold: int = 5000


@dataclass(frozen=True)
class JobSettings:
    enable_job: bool = True
    cron_expression: str = "0 */15 * * * *"
    cleanup_cron_expression: str = "0 0 2 * * *"
    max_retries: int = 0
    stop_on_cancel: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = None


@dataclass(frozen=True)
class PipelineConfig:
    transport: TransportConfig = field(default_factory=TransportConfig)
    archive: ArchivePolicy = field(default_factory=ArchivePolicy)
    reader: ReaderSettings = field(default_factory=ReaderSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    job: JobSettings = field(default_factory=JobSettings)

    @property
    def log_level(self) -> int:
        level = logging.getLevelName(self.job.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


# -----------------------------
# Loading
# -----------------------------

def _section(cls, raw: Any, name: str):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {', '.join(unknown)}")
    return cls(**raw)


def validate_config(cfg: PipelineConfig) -> PipelineConfig:
    if cfg.reader.header_row < 1:
        raise ConfigError(f"reader.header_row must be >= 1, got {cfg.reader.header_row}")
    if cfg.reader.data_start_row is not None and cfg.reader.data_start_row < 1:
        raise ConfigError(f"reader.data_start_row must be >= 1, got {cfg.reader.data_start_row}")
    if cfg.archive.retention_days < 0:
        raise ConfigError("archive.retention_days must be >= 0")
    if cfg.job.max_retries != 0:
        # A failed file is routed to the error folder; it is never retried.
        raise ConfigError("job.max_retries must be 0; automatic retries are not supported")
    if not cfg.transport.mode:
        raise ConfigError("transport.mode is required")
    if cfg.database.text_length_floor < 1 or cfg.database.text_clob_threshold < cfg.database.text_length_floor:
        raise ConfigError("database text sizing: floor must be >= 1 and <= clob threshold")
    return cfg


def config_from_dict(raw: Optional[Dict[str, Any]]) -> PipelineConfig:
    raw = dict(raw or {})
    sections = {
        "transport": TransportConfig,
        "archive": ArchivePolicy,
        "reader": ReaderSettings,
        "database": DatabaseSettings,
        "job": JobSettings,
    }
    unknown = sorted(set(raw) - set(sections))
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(unknown)}")

    db_raw = dict(raw.get("database") or {})
    env_url = os.getenv(ENV_DATABASE_URL)
    if env_url:
        db_raw["url"] = env_url
    raw["database"] = db_raw

    try:
        built = {name: _section(cls, raw.get(name), name) for name, cls in sections.items()}
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    return validate_config(PipelineConfig(**built))


def load_config(path: Optional[Path | str] = None) -> PipelineConfig:
    """Load pipeline configuration from YAML.

    Parameters
    ----------
    path : Path or str, optional
        YAML file. Defaults to $NIRLOAD_CONFIG; if neither is given, defaults
        are used as-is.

    Returns
    -------
    PipelineConfig
    """
    if path is None:
        path = os.getenv(ENV_CONFIG_PATH)
    if path is None:
        return config_from_dict({})

    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config {p}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {p}")
    return config_from_dict(raw)


# Project-wide settings
class Settings:
    """Fixed processing constants."""

    # Type inference
    TYPE_SAMPLE_ROWS = 100
    METRIC_PROBE_ROWS = 10

    # Staging
    STAGING_PREFIX = "STG"
    NUMERIC_PRECISION = 19
    NUMERIC_SCALE = 6

    # Logging
    PREVIEW_ROWS = 5


__all__ = [
    "ArchivePolicy",
    "TransportConfig",
    "ReaderSettings",
    "DatabaseSettings",
    "JobSettings",
    "PipelineConfig",
    "Settings",
    "config_from_dict",
    "load_config",
    "validate_config",
]
