"""Reader variants, dispatch and type inference."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest

from nirload.dataset import SemanticType
from nirload.errors import FormatError, NotFoundError, RunCancelled, UnsupportedFormatError
from nirload.readers import (
    DelimitedTextReader,
    LegacySpreadsheetReader,
    SpreadsheetReader,
    TabularReaderService,
    detect_delimiter,
    infer_native_column_type,
    parse_datetime,
    parse_decimal,
)
from nirload.reshape import DataReshaper

LEGACY_WORKBOOK = Path(__file__).parent / "test_data" / "nir_batch.xls"

NIR_CSV = (
    "Product: Wheat flour\n"
    "Sample Name;Date/Time;Protein;Moisture;Comment\n"
    "S1;2024-01-01 10:00:00;12.5;13.1;first\n"
    ";;;;\n"
    "S2;2024-01-02 11:30:00;11.9;;second\n"
)


@pytest.fixture
def service() -> TabularReaderService:
    return TabularReaderService()


# -----------------------------
# Parsing helpers
# -----------------------------

def test_detect_delimiter_picks_most_fields():
    assert detect_delimiter("a;b;c,d") == ";"
    assert detect_delimiter("a\tb\tc") == "\t"
    assert detect_delimiter("a|b|c|d") == "|"
    # tie / no delimiter -> comma
    assert detect_delimiter("single") == ","


def test_parse_decimal():
    assert parse_decimal(" 1.25 ") == Decimal("1.25")
    assert parse_decimal(3) == Decimal("3")
    assert parse_decimal(1.6) == Decimal("1.6")
    assert parse_decimal("") is None
    assert parse_decimal("abc") is None
    assert parse_decimal("NaN") is None
    assert parse_decimal(True) is None


def test_parse_datetime():
    assert parse_datetime("2024-01-02T10:00") == datetime(2024, 1, 2, 10, 0)
    assert parse_datetime("2024-01-02 10:00:00") == datetime(2024, 1, 2, 10, 0)
    assert parse_datetime("not a date") is None
    assert parse_datetime(None) is None


def test_native_type_rule():
    d = datetime(2024, 1, 1)
    assert infer_native_column_type([d, d, 1.0]) is SemanticType.DATETIME
    assert infer_native_column_type([1, 2.5, None]) is SemanticType.DECIMAL
    assert infer_native_column_type([1, "n/a"]) is SemanticType.TEXT
    assert infer_native_column_type([None, None]) is SemanticType.TEXT


# -----------------------------
# Dispatch
# -----------------------------

def test_dispatch_by_extension(service):
    assert isinstance(service.reader_for("x.CSV"), DelimitedTextReader)
    assert isinstance(service.reader_for("x.txt"), DelimitedTextReader)
    assert isinstance(service.reader_for("x.xlsx"), SpreadsheetReader)
    assert isinstance(service.reader_for("x.xlsm"), SpreadsheetReader)
    assert isinstance(service.reader_for("x.xls"), LegacySpreadsheetReader)
    assert not service.is_supported("x.json")
    assert set(service.supported_extensions) == {".csv", ".txt", ".xlsx", ".xlsm", ".xls"}


def test_missing_file_raises_not_found(service, tmp_path):
    with pytest.raises(NotFoundError):
        service.parse(tmp_path / "missing.csv")


def test_unknown_extension_raises_unsupported(service, write_text_file):
    path = write_text_file("data.json", "{}")
    with pytest.raises(UnsupportedFormatError):
        service.parse(path)


# -----------------------------
# Delimited text
# -----------------------------

def test_csv_header_row_types_and_row_numbers(service, write_text_file):
    path = write_text_file("batch.csv", NIR_CSV)
    ds = service.parse(path, header_row=2)

    assert [c.name for c in ds.data_columns] == ["Sample_Name", "Date_Time", "Protein", "Moisture", "Comment"]
    types = {c.name: c.semantic_type for c in ds.data_columns}
    assert types["Sample_Name"] is SemanticType.TEXT
    assert types["Date_Time"] is SemanticType.DATETIME
    assert types["Protein"] is SemanticType.DECIMAL
    assert types["Moisture"] is SemanticType.DECIMAL
    assert types["Comment"] is SemanticType.TEXT

    # blank line 4 is skipped
    rows = list(ds.records())
    assert len(rows) == 2
    assert [r["_RowNumber"] for r in rows] == [3, 5]
    assert rows[0]["_SourceFile"] == "batch.csv"
    assert rows[0]["Date_Time"] == datetime(2024, 1, 1, 10, 0)
    assert rows[1]["Protein"] == Decimal("11.9")
    assert rows[1]["Moisture"] is None
    assert isinstance(rows[0]["_ImportedAt"], datetime)


def test_csv_duplicate_and_blank_headers(service, write_text_file):
    path = write_text_file("dupes.csv", "A,A,\n1,2,3\n")
    ds = service.parse(path)
    assert [c.name for c in ds.data_columns] == ["A", "A_1", "_2"]


def test_csv_mixed_column_stays_text(service, write_text_file):
    path = write_text_file("mixed.csv", "id,val\na,1\nb,x\n")
    ds = service.parse(path)
    assert ds.column("val").semantic_type is SemanticType.TEXT
    assert [r["val"] for r in ds.records()] == ["1", "x"]


def test_csv_header_beyond_file_is_format_error(service, write_text_file):
    path = write_text_file("short.csv", "a,b\n1,2\n")
    with pytest.raises(FormatError):
        service.parse(path, header_row=5)


def test_csv_explicit_data_start_row(service, write_text_file):
    path = write_text_file("skip.csv", "a,b\nunits,units\n1,2\n3,4\n")
    ds = service.parse(path, header_row=1, data_start_row=3)
    assert ds.column("a").semantic_type is SemanticType.DECIMAL
    assert [r["_RowNumber"] for r in ds.records()] == [3, 4]


def test_csv_empty_file_gives_empty_dataset(service, write_text_file):
    path = write_text_file("empty.csv", "")
    ds = service.parse(path)
    assert ds.row_count == 0
    assert ds.data_columns == []


def test_csv_sheet_name_is_base_name(service, write_text_file):
    path = write_text_file("export_01.csv", "a\n1\n")
    assert service.get_sheet_names(path) == ["export_01"]
    assert service.get_sheet_names("unknown.json") == []


def test_cancellation_during_read(service, write_text_file):
    path = write_text_file("c.csv", "a,b\n1,2\n3,4\n")
    with pytest.raises(RunCancelled):
        service.parse(path, should_cancel=lambda: True)


# -----------------------------
# Spreadsheets
# -----------------------------

@pytest.fixture
def nir_workbook(tmp_path):
    path = tmp_path / "batch.xlsx"
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Results"
    ws.append(["Product: Wheat flour"])
    ws.append(["Sample Name", "Date/Time", "CH31", "Comment"])
    ws.append(["S1", datetime(2024, 1, 1, 10, 0), 1.5, "ok"])
    ws.append(["  ", None, None, None])
    ws.append(["S2", datetime(2024, 1, 2, 10, 0), 2, None])
    wb.create_sheet("Other")
    wb.save(path)
    return path


def test_xlsx_types_and_row_numbers(service, nir_workbook):
    ds = service.parse(nir_workbook, header_row=2)
    assert [c.name for c in ds.data_columns] == ["Sample_Name", "Date_Time", "CH31", "Comment"]
    types = {c.name: c.semantic_type for c in ds.data_columns}
    assert types["Date_Time"] is SemanticType.DATETIME
    assert types["CH31"] is SemanticType.DECIMAL
    assert types["Comment"] is SemanticType.TEXT

    rows = list(ds.records())
    assert [r["_RowNumber"] for r in rows] == [3, 5]
    assert rows[0]["Sample_Name"] == "S1"
    assert rows[0]["Date_Time"] == datetime(2024, 1, 1, 10, 0)
    assert rows[1]["CH31"] == Decimal("2")
    assert ds.name == "Results"


def test_xlsx_sheet_names_and_missing_sheet(service, nir_workbook):
    assert service.get_sheet_names(nir_workbook) == ["Results", "Other"]
    with pytest.raises(FormatError):
        service.parse(nir_workbook, sheet_name="Nope", header_row=2)


def test_xlsx_header_beyond_rows(service, nir_workbook):
    with pytest.raises(FormatError):
        service.parse(nir_workbook, header_row=50)


def test_xlsx_numeric_sample_names_keep_their_text(service, tmp_path):
    path = tmp_path / "numeric.xlsx"
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(["SampleName", "Protein"])
    ws.append([1001, 12.5])
    ws.append([1002, 11.9])
    wb.save(path)

    records = DataReshaper().reshape(service.parse(path))
    assert sorted({r.sample_id for r in records}) == ["1001", "1002"]


# -----------------------------
# Legacy .xls
# -----------------------------

def test_xls_sheet_names(service):
    assert service.get_sheet_names(LEGACY_WORKBOOK) == ["Results", "Other"]


def test_xls_types_and_row_numbers(service):
    ds = service.parse(LEGACY_WORKBOOK, header_row=2)
    assert ds.name == "Results"
    assert [c.name for c in ds.data_columns] == ["Sample_Name", "Date_Time", "CH31", "Comment"]
    types = {c.name: c.semantic_type for c in ds.data_columns}
    assert types["Sample_Name"] is SemanticType.DECIMAL
    assert types["Date_Time"] is SemanticType.DATETIME
    assert types["CH31"] is SemanticType.DECIMAL
    assert types["Comment"] is SemanticType.TEXT

    rows = list(ds.records())
    # blank sheet row 4 is skipped
    assert [r["_RowNumber"] for r in rows] == [3, 5]
    assert rows[0]["Date_Time"] == datetime(2024, 1, 1, 10, 0)
    assert rows[1]["Date_Time"] == datetime(2024, 1, 2, 10, 0)
    assert [r["CH31"] for r in rows] == [Decimal("1.5"), Decimal("2")]
    assert [r["Comment"] for r in rows] == ["ok", None]
    assert rows[0]["_SourceFile"] == "nir_batch.xls"


def test_xls_reshapes_numeric_sample_names(service):
    records = DataReshaper().reshape(service.parse(LEGACY_WORKBOOK, header_row=2))
    assert {(r.sample_id, r.metric_code, r.value) for r in records} == {
        ("1001", "CH31", Decimal("1.5")),
        ("1002", "CH31", Decimal("2")),
    }


def test_xls_missing_sheet_is_format_error(service):
    with pytest.raises(FormatError):
        service.parse(LEGACY_WORKBOOK, sheet_name="Nope", header_row=2)


# -----------------------------
# Numeric fidelity
# -----------------------------

def test_csv_numeric_sample_names_keep_their_text(service, write_text_file):
    path = write_text_file("numeric.csv", "SampleName,Protein\n1001,12.5\n1002,11.9\n")
    ds = service.parse(path)
    assert ds.column("SampleName").semantic_type is SemanticType.DECIMAL
    records = DataReshaper().reshape(ds)
    assert sorted({r.sample_id for r in records}) == ["1001", "1002"]


def test_csv_values_keep_full_decimal_precision(service, write_text_file):
    path = write_text_file("precise.csv", "SampleName,Protein\nS1,1234567890123.123456\n")
    ds = service.parse(path)
    assert next(ds.records())["Protein"] == Decimal("1234567890123.123456")
    records = DataReshaper().reshape(ds)
    assert [r.value for r in records] == [Decimal("1234567890123.123456")]
