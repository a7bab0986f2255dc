"""End-to-end runs: LOCAL transport, in-memory SQLite target."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import CheckConstraint, Column, DateTime, MetaData, Numeric, Table, Unicode, text

from nirload.config import ArchivePolicy, DatabaseSettings, PipelineConfig, TransportConfig
from nirload.errors import RunCancelled, TransportError
from nirload.ingest import IngestionOrchestrator
from nirload.reshape import DataReshaper
from nirload.staging import StagingLoader
from nirload.transport import LocalFileTransfer

MEMORY_URL = "sqlite+aiosqlite:///:memory:"
LOAD_RESULTS = (
    "INSERT INTO nir_results (ID, DateG, CharCode, Result) "
    "SELECT ID, DateG, CharCode, Result FROM {staging_table}"
)


def export(rows):
    lines = ["Product: Wheat flour", "Sample Name,Date/Time,Protein,Moisture"]
    lines += [",".join(r) for r in rows]
    return "\n".join(lines) + "\n"


@pytest.fixture
def config(tmp_path, remote_root) -> PipelineConfig:
    return PipelineConfig(
        transport=TransportConfig(
            root=str(remote_root),
            remote_path="inbox",
            local_temp_path=str(tmp_path / "temp"),
        ),
        archive=ArchivePolicy(use_date_folder=False),
        database=DatabaseSettings(url=MEMORY_URL, routine_call_template=LOAD_RESULTS),
    )


@pytest.fixture
async def target(engine):
    meta = MetaData()
    Table(
        "nir_results",
        meta,
        Column("ID", Unicode(50)),
        Column("DateG", DateTime),
        Column("CharCode", Unicode(50)),
        Column("Result", Numeric(19, 6)),
        CheckConstraint("Result < 1000", name="ck_result_range"),
    )
    async with engine.begin() as conn:
        await conn.run_sync(meta.create_all)
    return engine


async def loaded_ids(engine):
    async with engine.connect() as conn:
        rows = await conn.execute(text("SELECT DISTINCT ID FROM nir_results ORDER BY ID"))
        return [r[0] for r in rows]


def orchestrator(config, transport, engine, **kwargs):
    return IngestionOrchestrator(config, transport, StagingLoader(engine, config.database), **kwargs)


async def test_failed_file_is_isolated_and_routed(config, transport, remote_root, target, tmp_path):
    (remote_root / "inbox/f1.csv").write_text(export([("S1", "2024-01-01 10:00", "12.1", "13.0")]))
    (remote_root / "inbox/f2.csv").write_text(export([("S2", "2024-01-01 11:00", "5000", "13.0")]))
    (remote_root / "inbox/f3.csv").write_text(export([("S3", "2024-01-01 12:00", "11.7", "12.4")]))

    result = await orchestrator(config, transport, target).run()

    assert (result.files_processed, result.files_failed) == (2, 1)
    assert (remote_root / "archive/processed/f1.csv").exists()
    assert (remote_root / "archive/processed/f3.csv").exists()
    assert (remote_root / "archive/error/f2.csv").exists()
    sidecar = (remote_root / "archive/error/f2.csv.error.txt").read_text(encoding="utf-8")
    assert "File: f2.csv" in sidecar and "Target command failed" in sidecar
    assert "ExecutionError" not in sidecar
    assert list((remote_root / "inbox").iterdir()) == []
    # local temp copies removed for success and failure alike
    assert list((tmp_path / "temp").iterdir()) == []
    assert await loaded_ids(target) == ["S1", "S3"]

    failed = [o for o in result.outcomes if not o.success]
    assert [(o.name, o.stage) for o in failed] == [("f2.csv", "load")]
    assert [o.rows_loaded for o in result.outcomes if o.success] == [2, 2]


async def test_parse_failure_routes_to_error(config, transport, remote_root, target):
    (remote_root / "inbox/no_sample.csv").write_text("Product: X\nBatch,Protein\nB1,1.0\n")
    result = await orchestrator(config, transport, target).run()
    assert (result.files_processed, result.files_failed) == (0, 1)
    assert result.outcomes[0].stage == "reshape"
    assert result.outcomes[0].error.startswith("Sample identifier column not found")
    assert (remote_root / "archive/error/no_sample.csv").exists()


async def test_numeric_sample_names_reach_target_as_written(config, transport, remote_root, target):
    rows = [("1001", "2024-01-01 10:00", "12.5", "13.0"), ("1002", "2024-01-01 11:00", "11.9", "12.8")]
    (remote_root / "inbox/numeric.csv").write_text(export(rows))
    result = await orchestrator(config, transport, target).run()
    assert result.files_processed == 1
    assert result.outcomes[0].rows_loaded == 4
    assert await loaded_ids(target) == ["1001", "1002"]


async def test_backup_made_before_processing(config, transport, remote_root, target):
    (remote_root / "inbox/f1.csv").write_text(export([("S1", "2024-01-01 10:00", "1", "2")]))
    await orchestrator(config, transport, target).run()
    assert (remote_root / "archive/backup/f1.csv").exists()


async def test_empty_export_skips_load_but_succeeds(config, transport, remote_root, target):
    (remote_root / "inbox/empty.csv").write_text(export([]))
    result = await orchestrator(config, transport, target).run()
    assert result.files_processed == 1
    assert result.outcomes[0].rows_loaded == 0
    assert (remote_root / "archive/processed/empty.csv").exists()


async def test_pattern_filters_files(config, transport, remote_root, target):
    (remote_root / "inbox/notes.json").write_text("{}")
    result = await orchestrator(config, transport, target).run()
    assert result.total == 0
    assert (remote_root / "inbox/notes.json").exists()


async def test_unreachable_transport_aborts_run(config, tmp_path, target):
    broken = LocalFileTransfer(tmp_path / "does-not-exist")
    with pytest.raises(TransportError):
        await orchestrator(config, broken, target).run()


async def test_cancel_before_listing_aborts_run(config, transport, target):
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(RunCancelled):
        await orchestrator(config, transport, target).run(cancel)


async def test_cancel_during_file_fails_that_file_and_stops(config, transport, remote_root, target):
    for name in ("a.csv", "b.csv"):
        (remote_root / "inbox" / name).write_text(export([("S1", "2024-01-01 10:00", "1", "2")]))
    cancel = asyncio.Event()

    class CancellingReshaper(DataReshaper):
        def reshape(self, dataset, *args, **kwargs):
            cancel.set()
            return super().reshape(dataset, *args, **kwargs)

    result = await orchestrator(config, transport, target, reshaper=CancellingReshaper()).run(cancel)

    assert result.cancelled
    assert (result.files_processed, result.files_failed) == (0, 1)
    assert (remote_root / "archive/error/a.csv").exists()
    assert (remote_root / "inbox/b.csv").exists()
    assert await loaded_ids(target) == []
