"""
Tabular file readers (delimited text, legacy .xls, modern .xlsx).

Each reader variant declares the extensions it handles; the reader service
picks the first variant whose extension set matches and never branches on
format itself. Every variant produces a typed TabularDataset with three
metadata columns appended: _RowNumber, _SourceFile, _ImportedAt.

Type inference:
- Spreadsheets: the first 100 data rows of each column are classified by
  native cell type (date / numeric / other).
- Delimited text: a sampling pass looks at up to 100 non-empty values per
  column and fixes the final column types; a second pass then writes the
  converted values straight into typed storage.
"""

from __future__ import annotations

import csv
import logging
import math
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from nirload.column_naming import unique_column_names
from nirload.config import Settings
from nirload.dataset import (
    IMPORTED_AT_COLUMN,
    METADATA_COLUMNS,
    ROW_NUMBER_COLUMN,
    SOURCE_FILE_COLUMN,
    ColumnSchema,
    SemanticType,
    TabularDataset,
    is_missing,
)
from nirload.errors import FormatError, NotFoundError, RunCancelled, UnsupportedFormatError
from nirload.log import elapsed, get_logger

CancelCheck = Callable[[], bool]

DELIMITERS = (",", ";", "\t", "|")

METADATA_SCHEMA = (
    ColumnSchema(ROW_NUMBER_COLUMN, SemanticType.INTEGER, nullable=False),
    ColumnSchema(SOURCE_FILE_COLUMN, SemanticType.TEXT, nullable=False),
    ColumnSchema(IMPORTED_AT_COLUMN, SemanticType.DATETIME, nullable=False),
)


# -----------------------------
# Value parsing
# -----------------------------

def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse a finite decimal number from a cell value; None if not numeric."""
    if is_missing(value) or isinstance(value, (bool, datetime, date)):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return Decimal(str(value))
    text = str(value).strip()
    if not text:
        return None
    try:
        d = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a date/time from a cell value; None if it is not one."""
    if is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, pd.Timestamp):
        return value.tz_localize(None).to_pydatetime() if value.tzinfo else value.to_pydatetime()
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text)
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    except ValueError:
        pass
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            ts = pd.to_datetime(text)
    except (ValueError, TypeError, OverflowError):
        return None
    if is_missing(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return ts.to_pydatetime()


def _cell_text(value: Any) -> Optional[str]:
    if is_missing(value):
        return None
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%S")
    text = str(value).strip()
    return text or None


def _has_data(values: Sequence[Any]) -> bool:
    return any(_cell_text(v) is not None for v in values)


def _check_cancel(should_cancel: Optional[CancelCheck]) -> None:
    if should_cancel is not None and should_cancel():
        raise RunCancelled("Cancelled while reading file")


def _resolve_rows(header_row: int, data_start_row: Optional[int]) -> Tuple[int, int]:
    if header_row < 1:
        raise FormatError(f"Header row must be >= 1, got {header_row}")
    start = data_start_row if data_start_row is not None else header_row + 1
    if start < 1:
        raise FormatError(f"Data start row must be >= 1, got {start}")
    return header_row, start


@dataclass
class _ColumnBuffer:
    """Per-column typed values accumulated during the populate pass."""

    schema: List[ColumnSchema]
    values: Dict[str, List[Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for col in self.schema:
            self.values[col.name] = []

    def append_row(self, typed: Sequence[Any], row_number: int, source_file: str, imported_at: datetime) -> None:
        data_cols = len(self.schema) - len(METADATA_SCHEMA)
        for col, v in zip(self.schema[:data_cols], typed):
            self.values[col.name].append(v)
        self.values[ROW_NUMBER_COLUMN].append(row_number)
        self.values[SOURCE_FILE_COLUMN].append(source_file)
        self.values[IMPORTED_AT_COLUMN].append(imported_at)

    def build(self, name: str) -> TabularDataset:
        return TabularDataset.from_columns(self.schema, self.values, name=name)


def convert_cell(value: Any, semantic_type: SemanticType) -> Any:
    """Convert one raw cell to the storage value for its column type."""
    if semantic_type is SemanticType.DECIMAL:
        return parse_decimal(value)
    if semantic_type is SemanticType.DATETIME:
        return parse_datetime(value)
    return _cell_text(value)


# -----------------------------
# Reader variants
# -----------------------------

class FileReader:
    """Base reader: one tabular format, selected by file extension."""

    extensions: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return type(self).__name__

    def can_read(self, path: Path | str) -> bool:
        return Path(path).suffix.lower() in self.extensions

    def read(
        self,
        path: Path,
        sheet_name: Optional[str] = None,
        header_row: int = 1,
        data_start_row: Optional[int] = None,
        should_cancel: Optional[CancelCheck] = None,
    ) -> TabularDataset:
        raise NotImplementedError

    def sheet_names(self, path: Path) -> List[str]:
        raise NotImplementedError


class DelimitedTextReader(FileReader):
    """Reader for .csv / .txt files with delimiter autodetection."""

    extensions = (".csv", ".txt")

    def __init__(self, encoding: str = "utf-8-sig", sample_size: int = Settings.TYPE_SAMPLE_ROWS):
        self.encoding = encoding
        self.sample_size = sample_size

    def sheet_names(self, path: Path) -> List[str]:
        return [Path(path).stem]

    def _split(self, line: str, delimiter: str) -> List[str]:
        line = line.rstrip("\r\n")
        if not line:
            return []
        return next(csv.reader([line], delimiter=delimiter))

    def _leading_lines(self, path: Path, count: int) -> List[str]:
        lines: List[str] = []
        with path.open("r", encoding=self.encoding, newline="") as f:
            for line in f:
                lines.append(line)
                if len(lines) >= count:
                    break
        return lines

    def _detect(self, lines: List[str], header_idx: int) -> str:
        """Detect on the first line; a title line without any delimiter defers to the header line."""
        delimiter = detect_delimiter(lines[0])
        if len(lines[0].split(delimiter)) == 1 and header_idx < len(lines):
            delimiter = detect_delimiter(lines[header_idx])
        return delimiter

    def _sample_types(
        self,
        path: Path,
        delimiter: str,
        header_idx: int,
        start_idx: int,
        should_cancel: Optional[CancelCheck],
    ) -> Tuple[List[str], List[SemanticType]]:
        """Pass 1: read the header and decide final column types from a sample."""
        headers: Optional[List[str]] = None
        samples: List[List[str]] = []
        line_count = 0
        with path.open("r", encoding=self.encoding, newline="") as f:
            for idx, line in enumerate(f):
                line_count = idx + 1
                if idx == header_idx:
                    headers = [h.strip() for h in self._split(line, delimiter)]
                    samples = [[] for _ in headers]
                    continue
                if headers is None or idx < start_idx:
                    continue
                _check_cancel(should_cancel)
                for col, raw in enumerate(self._split(line, delimiter)[: len(headers)]):
                    text = raw.strip()
                    if text and len(samples[col]) < self.sample_size:
                        samples[col].append(text)
                if headers and all(len(s) >= self.sample_size for s in samples):
                    break

        if headers is None:
            raise FormatError(
                f"Header row {header_idx + 1} is beyond the file (max: {line_count} lines)"
            )
        types = [infer_text_column_type(s) for s in samples]
        return headers, types

    def read(
        self,
        path: Path,
        sheet_name: Optional[str] = None,
        header_row: int = 1,
        data_start_row: Optional[int] = None,
        should_cancel: Optional[CancelCheck] = None,
    ) -> TabularDataset:
        path = Path(path)
        header_row, start_row = _resolve_rows(header_row, data_start_row)
        header_idx, start_idx = header_row - 1, start_row - 1

        lines = self._leading_lines(path, header_idx + 1)
        if not lines or not lines[0]:
            return TabularDataset.empty(METADATA_SCHEMA, name=path.stem)

        delimiter = self._detect(lines, header_idx)
        headers, types = self._sample_types(path, delimiter, header_idx, start_idx, should_cancel)

        names = unique_column_names(headers, reserved=METADATA_COLUMNS)
        schema = [ColumnSchema(n, t) for n, t in zip(names, types)] + list(METADATA_SCHEMA)
        buffer = _ColumnBuffer(schema)
        source_file = path.name
        imported_at = datetime.now()

        # Pass 2: populate typed storage directly.
        with path.open("r", encoding=self.encoding, newline="") as f:
            for idx, line in enumerate(f):
                if idx < start_idx or idx == header_idx:
                    continue
                _check_cancel(should_cancel)
                fields = self._split(line, delimiter)[: len(names)]
                if not _has_data(fields):
                    continue
                fields = fields + [""] * (len(names) - len(fields))
                typed = [convert_cell(v, t) for v, t in zip(fields, types)]
                buffer.append_row(typed, idx + 1, source_file, imported_at)

        return buffer.build(name=path.stem)


class _SpreadsheetReader(FileReader):
    """Shared logic for workbook formats read through pandas.read_excel."""

    engine: str = ""
    sample_size: int = Settings.TYPE_SAMPLE_ROWS

    def sheet_names(self, path: Path) -> List[str]:
        try:
            with pd.ExcelFile(path, engine=self.engine) as xl:
                return [str(s) for s in xl.sheet_names]
        except Exception as e:
            raise FormatError(f"Cannot open workbook {Path(path).name}: {e}") from e

    def _load_raw(self, path: Path, sheet_name: Optional[str]) -> Tuple[str, List[List[Any]]]:
        try:
            with pd.ExcelFile(path, engine=self.engine) as xl:
                names = [str(s) for s in xl.sheet_names]
                if sheet_name:
                    if sheet_name not in names:
                        raise FormatError(f"Sheet '{sheet_name}' not found in {Path(path).name}")
                    target = sheet_name
                else:
                    if not names:
                        raise FormatError(f"Workbook has no sheets: {Path(path).name}")
                    target = names[0]
                raw = xl.parse(sheet_name=target, header=None, dtype=object)
        except FormatError:
            raise
        except Exception as e:
            raise FormatError(f"Cannot read workbook {Path(path).name}: {e}") from e

        rows = [[None if is_missing(v) else v for v in r] for r in raw.itertuples(index=False, name=None)]
        return target, _trim_empty_edge_columns(rows)

    def read(
        self,
        path: Path,
        sheet_name: Optional[str] = None,
        header_row: int = 1,
        data_start_row: Optional[int] = None,
        should_cancel: Optional[CancelCheck] = None,
    ) -> TabularDataset:
        path = Path(path)
        header_row, start_row = _resolve_rows(header_row, data_start_row)
        sheet, rows = self._load_raw(path, sheet_name)
        if not rows:
            return TabularDataset.empty(METADATA_SCHEMA, name=sheet)
        if header_row > len(rows):
            raise FormatError(f"Header row {header_row} is beyond the data range (max: {len(rows)})")

        headers = [_cell_text(v) for v in rows[header_row - 1]]
        names = unique_column_names(headers, reserved=METADATA_COLUMNS)

        # 1-based sheet row numbers of retained data rows
        data_rows: List[Tuple[int, List[Any]]] = [
            (i + 1, r) for i, r in enumerate(rows) if i >= start_row - 1 and _has_data(r)
        ]
        sample = [r for _, r in data_rows[: self.sample_size]]
        types = [infer_native_column_type([r[c] for r in sample]) for c in range(len(names))]

        schema = [ColumnSchema(n, t) for n, t in zip(names, types)] + list(METADATA_SCHEMA)
        buffer = _ColumnBuffer(schema)
        imported_at = datetime.now()
        for row_number, r in data_rows:
            _check_cancel(should_cancel)
            typed = [convert_cell(v, t) for v, t in zip(r, types)]
            buffer.append_row(typed, row_number, path.name, imported_at)
        return buffer.build(name=sheet)


class SpreadsheetReader(_SpreadsheetReader):
    """Reader for .xlsx / .xlsm (Excel 2007+) via openpyxl."""

    extensions = (".xlsx", ".xlsm")
    engine = "openpyxl"


class LegacySpreadsheetReader(_SpreadsheetReader):
    """Reader for .xls (Excel 97-2003) via xlrd."""

    extensions = (".xls",)
    engine = "xlrd"


# -----------------------------
# Inference helpers
# -----------------------------

def detect_delimiter(first_line: str) -> str:
    """Pick the delimiter producing the most fields on the first line (ties: earliest)."""
    best, best_count = DELIMITERS[0], -1
    for d in DELIMITERS:
        count = len(first_line.split(d))
        if count > best_count:
            best, best_count = d, count
    return best


def infer_text_column_type(values: Sequence[str]) -> SemanticType:
    if not values:
        return SemanticType.TEXT
    if all(parse_decimal(v) is not None for v in values):
        return SemanticType.DECIMAL
    if all(parse_datetime(v) is not None for v in values):
        return SemanticType.DATETIME
    return SemanticType.TEXT


def infer_native_column_type(values: Sequence[Any]) -> SemanticType:
    date_count = numeric_count = other_count = 0
    for v in values:
        if is_missing(v):
            continue
        if isinstance(v, (datetime, date, pd.Timestamp)):
            date_count += 1
        elif isinstance(v, (int, float, Decimal, np.number)) and not isinstance(v, (bool, np.bool_)):
            numeric_count += 1
        else:
            other_count += 1
    if date_count > numeric_count:
        return SemanticType.DATETIME
    if numeric_count > 0 and other_count == 0:
        return SemanticType.DECIMAL
    return SemanticType.TEXT


def _trim_empty_edge_columns(rows: List[List[Any]]) -> List[List[Any]]:
    if not rows:
        return rows
    width = max(len(r) for r in rows)
    rows = [r + [None] * (width - len(r)) for r in rows]
    filled = [any(_cell_text(r[c]) is not None for r in rows) for c in range(width)]
    if not any(filled):
        return []
    first = filled.index(True)
    last = width - 1 - filled[::-1].index(True)
    return [r[first : last + 1] for r in rows]


# -----------------------------
# Service
# -----------------------------

class TabularReaderService:
    """Dispatches parse / sheet-listing calls to the matching reader variant."""

    def __init__(self, readers: Optional[Sequence[FileReader]] = None, logger: Optional[logging.Logger] = None):
        self.readers: List[FileReader] = list(readers) if readers is not None else [
            SpreadsheetReader(),
            LegacySpreadsheetReader(),
            DelimitedTextReader(),
        ]
        self.logger = logger or get_logger(__name__)

    @property
    def supported_extensions(self) -> List[str]:
        return list(dict.fromkeys(ext for r in self.readers for ext in r.extensions))

    def is_supported(self, path: Path | str) -> bool:
        return any(r.can_read(path) for r in self.readers)

    def reader_for(self, path: Path | str) -> Optional[FileReader]:
        return next((r for r in self.readers if r.can_read(path)), None)

    def parse(
        self,
        path: Path | str,
        sheet_name: Optional[str] = None,
        header_row: int = 1,
        data_start_row: Optional[int] = None,
        should_cancel: Optional[CancelCheck] = None,
    ) -> TabularDataset:
        path = Path(path)
        if not path.exists():
            raise NotFoundError(f"File not found: {path}")

        reader = self.reader_for(path)
        if reader is None:
            raise UnsupportedFormatError(
                f"File format '{path.suffix}' is not supported. "
                f"Supported formats: {', '.join(self.supported_extensions)}"
            )

        self.logger.info(
            "Reading file %s using %s (header row: %d, data start: %d)",
            path.name, reader.name, header_row,
            data_start_row if data_start_row is not None else header_row + 1,
        )
        with elapsed() as sw:
            dataset = reader.read(path, sheet_name, header_row, data_start_row, should_cancel)
        self.logger.info(
            "Read %d rows, %d columns from %s in %.2fms",
            dataset.row_count, len(dataset.data_columns), path.name, sw.millis,
        )
        self.logger.debug("Columns: %s", ", ".join(c.name for c in dataset.data_columns))
        return dataset

    def get_sheet_names(self, path: Path | str) -> List[str]:
        reader = self.reader_for(path)
        if reader is None:
            return []
        return reader.sheet_names(Path(path))


__all__ = [
    "DELIMITERS",
    "FileReader",
    "DelimitedTextReader",
    "SpreadsheetReader",
    "LegacySpreadsheetReader",
    "TabularReaderService",
    "detect_delimiter",
    "infer_text_column_type",
    "infer_native_column_type",
    "parse_decimal",
    "parse_datetime",
    "convert_cell",
]
