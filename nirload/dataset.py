"""
In-memory data model shared by reader, reshaper and staging loader.

A TabularDataset is a typed pandas frame plus an explicit column schema.
Each stage hands a new value to the next one; nothing downstream mutates
what it was given.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

ROW_NUMBER_COLUMN = "_RowNumber"
SOURCE_FILE_COLUMN = "_SourceFile"
IMPORTED_AT_COLUMN = "_ImportedAt"
METADATA_COLUMNS = (ROW_NUMBER_COLUMN, SOURCE_FILE_COLUMN, IMPORTED_AT_COLUMN)


class SemanticType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    DATETIME = "datetime"
    BOOLEAN = "boolean"

    @property
    def is_numeric(self) -> bool:
        return self in (SemanticType.INTEGER, SemanticType.DECIMAL)


PANDAS_DTYPES: Dict[SemanticType, str] = {
    SemanticType.TEXT: "string",
    SemanticType.INTEGER: "Int64",
    # exact values; float64 cannot hold NUMERIC(19,6)
    SemanticType.DECIMAL: "object",
    SemanticType.DATETIME: "datetime64[ns]",
    SemanticType.BOOLEAN: "boolean",
}


@dataclass(frozen=True)
class ColumnSchema:
    name: str
    semantic_type: SemanticType = SemanticType.TEXT
    nullable: bool = True


def is_missing(value: Any) -> bool:
    """True for None, NaN, NaT and pandas NA."""
    if value is None or value is pd.NA or value is pd.NaT:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, Decimal) and value.is_nan():
        return True
    if isinstance(value, np.floating) and np.isnan(value):
        return True
    return False


def to_python(value: Any) -> Any:
    """Convert a pandas/numpy cell into a plain Python value (None for nulls)."""
    if is_missing(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.datetime64):
        return pd.Timestamp(value).to_pydatetime()
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    return value


def to_decimal(value: Any) -> Optional[Decimal]:
    """Exact Decimal for a numeric cell; floats go through their shortest repr."""
    if is_missing(value):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (float, np.floating)):
        return Decimal(repr(float(value)))
    return Decimal(str(value))


class TabularDataset:
    """Ordered, uniquely named, typed columns over a pandas frame.

    Invariants: column names are unique and the frame's columns equal the
    schema names in the same order, so every row holds exactly one value per
    column.
    """

    def __init__(self, columns: Sequence[ColumnSchema], frame: pd.DataFrame, name: str = ""):
        names = [c.name for c in columns]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate column names: {dupes}")
        if list(frame.columns) != names:
            raise ValueError(f"Frame columns {list(frame.columns)} do not match schema {names}")
        self.columns: Tuple[ColumnSchema, ...] = tuple(columns)
        self.frame = frame
        self.name = name

    @classmethod
    def from_columns(
        cls,
        columns: Sequence[ColumnSchema],
        data: Dict[str, Sequence[Any]],
        name: str = "",
    ) -> "TabularDataset":
        """Build typed storage directly from per-column value lists."""
        series = {}
        for col in columns:
            values = list(data.get(col.name, []))
            if col.semantic_type is SemanticType.DECIMAL:
                values = [to_decimal(v) for v in values]
            series[col.name] = pd.Series(
                [None if is_missing(v) else v for v in values],
                dtype=PANDAS_DTYPES[col.semantic_type],
            )
        frame = pd.DataFrame(series, columns=[c.name for c in columns])
        return cls(columns, frame, name=name)

    @classmethod
    def empty(cls, columns: Sequence[ColumnSchema], name: str = "") -> "TabularDataset":
        return cls.from_columns(columns, {}, name=name)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def data_columns(self) -> List[ColumnSchema]:
        return [c for c in self.columns if c.name not in METADATA_COLUMNS]

    @property
    def row_count(self) -> int:
        return len(self.frame)

    def __len__(self) -> int:
        return self.row_count

    def column(self, name: str) -> ColumnSchema:
        for c in self.columns:
            if c.name == name:
                return c
        raise KeyError(name)

    def rows(self) -> Iterator[Tuple[Any, ...]]:
        """Yield rows as tuples of plain Python values."""
        for row in self.frame.itertuples(index=False, name=None):
            yield tuple(to_python(v) for v in row)

    def records(self) -> Iterator[Dict[str, Any]]:
        names = self.column_names
        for row in self.rows():
            yield dict(zip(names, row))

    def preview(self, n: int = 5) -> List[Dict[str, Any]]:
        out = []
        for i, rec in enumerate(self.records()):
            if i >= n:
                break
            out.append(rec)
        return out

    def __repr__(self) -> str:
        return f"TabularDataset(name={self.name!r}, rows={self.row_count}, columns={self.column_names})"


@dataclass(frozen=True)
class ReshapedRecord:
    sample_id: str
    timestamp: datetime
    metric_code: str
    value: Decimal


STAGING_COLUMNS = (
    ColumnSchema("ID", SemanticType.TEXT, nullable=False),
    ColumnSchema("DateG", SemanticType.DATETIME, nullable=False),
    ColumnSchema("CharCode", SemanticType.TEXT, nullable=False),
    ColumnSchema("Result", SemanticType.DECIMAL, nullable=False),
)


def records_to_dataset(records: Sequence[ReshapedRecord], name: str = "NirResults") -> TabularDataset:
    """Lay long-format records out as the (ID, DateG, CharCode, Result) staging dataset."""
    data: Dict[str, List[Any]] = {"ID": [], "DateG": [], "CharCode": [], "Result": []}
    for r in records:
        data["ID"].append(r.sample_id)
        data["DateG"].append(r.timestamp)
        data["CharCode"].append(r.metric_code)
        data["Result"].append(r.value)
    return TabularDataset.from_columns(STAGING_COLUMNS, data, name=name)


__all__ = [
    "ROW_NUMBER_COLUMN",
    "SOURCE_FILE_COLUMN",
    "IMPORTED_AT_COLUMN",
    "METADATA_COLUMNS",
    "SemanticType",
    "ColumnSchema",
    "TabularDataset",
    "ReshapedRecord",
    "STAGING_COLUMNS",
    "records_to_dataset",
    "is_missing",
    "to_decimal",
    "to_python",
]
