"""
Wide -> long reshaping of instrument exports.

Input: one row per sample, one column per measured characteristic.
Output: one ReshapedRecord per (sample, metric) with a numeric value.

When a sample id repeats, the row with the newer timestamp wins in full;
without a timestamp column the last row in file order wins, which assumes
the export is written chronologically.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from nirload.config import Settings
from nirload.dataset import METADATA_COLUMNS, ReshapedRecord, TabularDataset
from nirload.errors import MissingColumnError
from nirload.log import get_logger
from nirload.readers import parse_datetime, parse_decimal

DEFAULT_SAMPLE_ALIASES: Tuple[str, ...] = ("Sample Name", "SampleName", "Sample_Name")
DEFAULT_TIMESTAMP_ALIASES: Tuple[str, ...] = ("Date/Time", "DateTime", "Date_Time", "DateG")

# Identification, comment, instrument input and provenance fields
DEFAULT_EXCLUDED_COLUMNS: FrozenSet[str] = frozenset(
    name.lower()
    for name in (
        *DEFAULT_SAMPLE_ALIASES,
        *DEFAULT_TIMESTAMP_ALIASES,
        "Comment",
        *(f"Input{i}" for i in range(1, 9)),
        "prodver",
        *METADATA_COLUMNS,
    )
)


@dataclass(frozen=True)
class ReshapeConfig:
    sample_aliases: Tuple[str, ...] = DEFAULT_SAMPLE_ALIASES
    timestamp_aliases: Tuple[str, ...] = DEFAULT_TIMESTAMP_ALIASES
    excluded_columns: FrozenSet[str] = field(default=DEFAULT_EXCLUDED_COLUMNS)
    metric_probe_rows: int = Settings.METRIC_PROBE_ROWS


# -----------------------------
# Column identification
# -----------------------------

def find_column(columns: Sequence[str], aliases: Iterable[str]) -> Optional[str]:
    """First column matching an alias case-insensitively: exact pass, then substring pass."""
    wanted = [a.lower() for a in aliases if a]
    for c in columns:
        if c.lower() in wanted:
            return c
    for c in columns:
        lowered = c.lower()
        if any(a in lowered for a in wanted):
            return c
    return None


def find_metric_columns(
    dataset: TabularDataset,
    excluded: Iterable[str],
    probe_rows: int = Settings.METRIC_PROBE_ROWS,
) -> List[str]:
    """Columns outside ``excluded`` with a numeric value in their first ``probe_rows`` rows."""
    skip = {e.lower() for e in excluded}
    head = dataset.frame.head(probe_rows)
    metrics: List[str] = []
    for col in dataset.column_names:
        if col.lower() in skip:
            continue
        if any(parse_decimal(v) is not None for v in head[col].tolist()):
            metrics.append(col)
    return metrics


# -----------------------------
# Reshaper
# -----------------------------

def _sample_key(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text.lower() if text else None


def _is_newer(candidate: Optional[datetime], current: Optional[datetime]) -> bool:
    if candidate is None:
        return current is None
    return current is None or candidate > current


class DataReshaper:
    def __init__(self, config: Optional[ReshapeConfig] = None, logger: Optional[logging.Logger] = None):
        self.config = config or ReshapeConfig()
        self.logger = logger or get_logger(__name__)

    def reshape(
        self,
        dataset: TabularDataset,
        sample_aliases: Optional[Sequence[str]] = None,
        timestamp_aliases: Optional[Sequence[str]] = None,
        excluded_columns: Optional[Iterable[str]] = None,
    ) -> List[ReshapedRecord]:
        """Convert a wide dataset into deduplicated long-format records.

        The dataset is only read; the returned list is new.

        Raises
        ------
        MissingColumnError
            No column matches any sample-identifier alias.
        """
        sample_aliases = tuple(sample_aliases or self.config.sample_aliases)
        timestamp_aliases = tuple(timestamp_aliases or self.config.timestamp_aliases)
        excluded = set(excluded_columns if excluded_columns is not None else self.config.excluded_columns)

        names = dataset.column_names
        id_col = find_column(names, sample_aliases)
        if id_col is None:
            raise MissingColumnError(
                f"Sample identifier column not found. Expected one of: {', '.join(sample_aliases)}"
            )
        ts_col = find_column(names, timestamp_aliases)
        if ts_col is None:
            self.logger.warning("No timestamp column found; duplicate samples resolve to the last row")

        excluded.update(c.lower() for c in (id_col, ts_col) if c)
        metric_cols = find_metric_columns(dataset, excluded, self.config.metric_probe_rows)
        self.logger.info(
            "Reshape: id=%s, timestamp=%s, %d metric columns", id_col, ts_col or "-", len(metric_cols)
        )

        # sample key -> (display id, parsed timestamp, row)
        latest: Dict[str, Tuple[str, Optional[datetime], Dict[str, Any]]] = {}
        for row in dataset.records():
            key = _sample_key(row.get(id_col))
            if key is None:
                continue
            ts = parse_datetime(row.get(ts_col)) if ts_col else None
            current = latest.get(key)
            if current is None or _is_newer(ts, current[1]):
                latest[key] = (str(row[id_col]).strip(), ts, row)

        today = datetime.combine(datetime.now().date(), datetime.min.time())
        records: List[ReshapedRecord] = []
        for sample_id, ts, row in latest.values():
            for col in metric_cols:
                value: Optional[Decimal] = parse_decimal(row.get(col))
                if value is None:
                    continue
                records.append(ReshapedRecord(sample_id, ts or today, col, value))

        self.logger.info(
            "Reshaped %d rows into %d records (%d unique samples)",
            dataset.row_count, len(records), len(latest),
        )
        return records


__all__ = [
    "DEFAULT_SAMPLE_ALIASES",
    "DEFAULT_TIMESTAMP_ALIASES",
    "DEFAULT_EXCLUDED_COLUMNS",
    "ReshapeConfig",
    "DataReshaper",
    "find_column",
    "find_metric_columns",
]
