from __future__ import annotations

import fnmatch
import posixpath
from datetime import datetime
from typing import Iterable, List

ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
LOG_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_local() -> datetime:
    return datetime.now()


def timestamp_suffix(dt: datetime | None = None) -> str:
    """Return YYYYMMDDHHMMSS for collision-safe archive names."""
    return (dt or now_local()).strftime(ARCHIVE_TIMESTAMP_FORMAT)


def normalize_remote_path(path: str) -> str:
    """Strip leading slashes and use forward slashes throughout."""
    if not path:
        return ""
    return str(path).replace("\\", "/").lstrip("/")


def join_remote(*parts: str) -> str:
    cleaned = [p.replace("\\", "/") for p in parts if p]
    if not cleaned:
        return ""
    return posixpath.join(*cleaned)


def remote_basename(path: str) -> str:
    return posixpath.basename(str(path).replace("\\", "/"))


def split_patterns(pattern: str) -> List[str]:
    """Split a ';' or ',' separated glob list, e.g. '*.xlsx;*.csv'."""
    if not pattern:
        return ["*"]
    parts = [p.strip() for p in pattern.replace(",", ";").split(";")]
    return [p for p in parts if p] or ["*"]


def matches_any(name: str, patterns: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatch(lowered, p.lower()) for p in patterns)


def truncate(text: str, max_len: int = 2000) -> str:
    return text if len(text) <= max_len else text[:max_len] + "..."


__all__ = [
    "ARCHIVE_TIMESTAMP_FORMAT",
    "LOG_TIMESTAMP_FORMAT",
    "now_local",
    "timestamp_suffix",
    "normalize_remote_path",
    "join_remote",
    "remote_basename",
    "split_patterns",
    "matches_any",
    "truncate",
]
