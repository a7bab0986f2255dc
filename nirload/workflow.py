"""
Job entry points

The external scheduler calls two independent jobs:
1. run_import_job   - one ingestion run over the source folder
2. run_cleanup_job  - retention sweep over the archive locations

inspect_file parses and reshapes a single local file without touching the
database or the remote store. main() exposes all three on the command line.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from nirload.archive import ArchiveRouter
from nirload.config import PipelineConfig, Settings, load_config
from nirload.database import create_target_engine
from nirload.errors import IngestError
from nirload.ingest import IngestionOrchestrator, RunResult
from nirload.log import configure_logging, get_logger
from nirload.readers import TabularReaderService
from nirload.reshape import DataReshaper
from nirload.staging import StagingLoader
from nirload.transport import FileTransferFactory, FileTransferService

logger = get_logger(__name__)


async def run_import_job(
    config: PipelineConfig,
    engine: Optional[AsyncEngine] = None,
    transport: Optional[FileTransferService] = None,
    cancel: Optional[asyncio.Event] = None,
) -> Optional[RunResult]:
    """Run one import over the configured source; None when the job is disabled."""
    if not config.job.enable_job:
        logger.info("Import job is disabled; skipping run")
        return None

    owns_engine = engine is None
    engine = engine or create_target_engine(config.database)
    transport = transport or FileTransferFactory.create(config.transport)
    try:
        orchestrator = IngestionOrchestrator(
            config,
            transport,
            StagingLoader(engine, config.database),
        )
        return await orchestrator.run(cancel)
    finally:
        if owns_engine:
            await engine.dispose()


async def run_cleanup_job(
    config: PipelineConfig,
    transport: Optional[FileTransferService] = None,
) -> int:
    """Retention sweep; returns the number of deleted archive files."""
    transport = transport or FileTransferFactory.create(config.transport)
    router = ArchiveRouter(transport, config.archive)
    logger.info("Cleanup job started (retention_days=%d)", config.archive.retention_days)
    deleted = await router.cleanup_old()
    logger.info("Cleanup job finished: %d files deleted", deleted)
    return deleted


def inspect_file(
    path: Path | str,
    config: Optional[PipelineConfig] = None,
    preview_rows: int = Settings.PREVIEW_ROWS,
) -> Dict[str, Any]:
    """Parse + reshape one local file and summarize the outcome."""
    config = config or PipelineConfig()
    reader = TabularReaderService()
    dataset = reader.parse(
        path,
        sheet_name=config.reader.sheet_name,
        header_row=config.reader.header_row,
        data_start_row=config.reader.data_start_row,
    )
    records = DataReshaper().reshape(dataset) if dataset.row_count else []
    return {
        "file": Path(path).name,
        "sheets": reader.get_sheet_names(path),
        "rows": dataset.row_count,
        "columns": [f"{c.name}:{c.semantic_type.value}" for c in dataset.data_columns],
        "records": len(records),
        "samples": len({r.sample_id.lower() for r in records}),
        "preview": dataset.preview(preview_rows),
    }


def _print_summary(summary: Dict[str, Any]) -> None:
    print(f"File:    {summary['file']}")
    print(f"Sheets:  {', '.join(summary['sheets'])}")
    print(f"Rows:    {summary['rows']}")
    print(f"Columns: {', '.join(summary['columns'])}")
    print(f"Records: {summary['records']} ({summary['samples']} samples)")
    for row in summary["preview"]:
        print(f"  {row}")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Instrument export ingestion into the target database")
    ap.add_argument("--config", default=None, help="YAML config file (default: $NIRLOAD_CONFIG)")
    ap.add_argument("--log_level", default=None, help="Override job.log_level (DEBUG, INFO, ...)")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Process all matching files once")
    sub.add_parser("cleanup", help="Delete archived files older than the retention age")
    p_inspect = sub.add_parser("inspect", help="Parse and reshape one local file, no database")
    p_inspect.add_argument("path", help="Local file to inspect")
    p_inspect.add_argument("--header_row", type=int, default=None, help="1-based header row override")
    p_inspect.add_argument("--sheet", default=None, help="Worksheet name (optional)")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except IngestError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    level = logging.getLevelName(args.log_level.upper()) if args.log_level else cfg.log_level
    if not isinstance(level, int):
        level = cfg.log_level
    configure_logging(level, cfg.job.log_file)

    try:
        if args.command == "run":
            result = asyncio.run(run_import_job(cfg))
            if result is None:
                return 0
            return 0 if result.files_failed == 0 else 1
        if args.command == "cleanup":
            asyncio.run(run_cleanup_job(cfg))
            return 0

        reader_cfg = replace(
            cfg.reader,
            header_row=args.header_row or cfg.reader.header_row,
            sheet_name=args.sheet or cfg.reader.sheet_name,
        )
        _print_summary(inspect_file(args.path, replace(cfg, reader=reader_cfg)))
        return 0
    except IngestError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
