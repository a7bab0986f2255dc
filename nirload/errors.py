"""
Exception hierarchy for the ingestion pipeline.

Each stage raises a specific error type so the orchestrator can log and
route a failed file with a meaningful reason.
"""

from __future__ import annotations


class IngestError(Exception):
    """Base exception for all pipeline failures."""


class ConfigError(IngestError):
    """Invalid or unreadable pipeline configuration."""


class NotFoundError(IngestError, FileNotFoundError):
    """Input file does not exist."""


class UnsupportedFormatError(IngestError):
    """No reader variant handles the file extension."""


class FormatError(IngestError):
    """Header/data row index out of range, missing sheet, unreadable content."""


class MissingColumnError(IngestError):
    """Reshaper could not locate the sample identifier column."""


class TargetConnectionError(IngestError):
    """Target database connection or transaction could not be opened."""


class SchemaError(IngestError):
    """Staging table creation or type mapping failed."""


class LoadError(IngestError):
    """Both bulk load and row-by-row fallback failed."""


class ExecutionError(IngestError):
    """Target query or stored routine failed."""


class TransportError(IngestError):
    """Remote list/move/copy/delete/write failed."""


class RunCancelled(IngestError):
    """Cooperative cancellation was observed."""


__all__ = [
    "IngestError",
    "ConfigError",
    "NotFoundError",
    "UnsupportedFormatError",
    "FormatError",
    "MissingColumnError",
    "TargetConnectionError",
    "SchemaError",
    "LoadError",
    "ExecutionError",
    "TransportError",
    "RunCancelled",
]
