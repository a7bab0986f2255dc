"""
One scheduled ingestion run.

Per file, strictly sequential:
Backup -> Download -> Parse -> Reshape -> Stage+Load -> Route

Any failure inside a file's sequence routes that file to the error
location and the run continues with the next file. Failures before the
loop (transport unreachable, source directory not listable) abort the run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from nirload.archive import ArchiveRouter
from nirload.config import PipelineConfig, Settings
from nirload.dataset import records_to_dataset
from nirload.errors import RunCancelled, TransportError
from nirload.log import elapsed, get_logger
from nirload.readers import TabularReaderService
from nirload.reshape import DataReshaper
from nirload.staging import StagingLoader
from nirload.transport import FileTransferService, RemoteFileInfo
from nirload.utils import truncate


@dataclass
class FileOutcome:
    name: str
    remote_path: str
    success: bool
    stage: str
    target: Optional[str] = None
    error: Optional[str] = None
    rows_parsed: int = 0
    records: int = 0
    rows_loaded: int = 0
    seconds: float = 0.0


@dataclass
class RunResult:
    files_processed: int = 0
    files_failed: int = 0
    cancelled: bool = False
    outcomes: List[FileOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.files_processed + self.files_failed


def _check_cancel(cancel: Optional[asyncio.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise RunCancelled("Run cancelled")


class IngestionOrchestrator:
    def __init__(
        self,
        config: PipelineConfig,
        transport: FileTransferService,
        loader: StagingLoader,
        reader: Optional[TabularReaderService] = None,
        reshaper: Optional[DataReshaper] = None,
        archive: Optional[ArchiveRouter] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.transport = transport
        self.loader = loader
        self.logger = logger or get_logger(__name__)
        self.reader = reader or TabularReaderService(logger=self.logger)
        self.reshaper = reshaper or DataReshaper(logger=self.logger)
        self.archive = archive or ArchiveRouter(transport, config.archive, logger=self.logger)

    async def run(self, cancel: Optional[asyncio.Event] = None) -> RunResult:
        """Process every matching file once.

        Raises
        ------
        TransportError
            Transport unreachable or source directory cannot be listed.
        RunCancelled
            Cancellation observed before the file loop started.
        """
        tcfg = self.config.transport
        self.logger.info("=" * 60)
        self.logger.info(
            "Import run started (mode=%s, source=%s, pattern=%s)",
            tcfg.mode, tcfg.remote_path, tcfg.file_pattern,
        )

        _check_cancel(cancel)
        if not await self.transport.test_connection():
            raise TransportError(f"Cannot connect to {tcfg.mode} transport")
        files = await self.transport.list_files(tcfg.remote_path, tcfg.file_pattern)
        _check_cancel(cancel)

        self.logger.info("Found %d files to process", len(files))
        result = RunResult()
        if not files:
            return result

        temp_dir = Path(tcfg.local_temp_path)
        temp_dir.mkdir(parents=True, exist_ok=True)

        for info in files:
            if cancel is not None and cancel.is_set() and self.config.job.stop_on_cancel:
                self.logger.warning("Cancellation requested; not starting remaining files")
                result.cancelled = True
                break
            outcome = await self.process_file(info, temp_dir, cancel)
            result.outcomes.append(outcome)
            if outcome.success:
                result.files_processed += 1
            else:
                result.files_failed += 1
                if outcome.stage == "cancelled":
                    result.cancelled = True

        self.logger.info("Summary: processed=%d, errors=%d", result.files_processed, result.files_failed)
        self.logger.info("=" * 60)
        return result

    async def process_file(
        self,
        info: RemoteFileInfo,
        temp_dir: Path,
        cancel: Optional[asyncio.Event] = None,
    ) -> FileOutcome:
        outcome = FileOutcome(name=info.name, remote_path=info.full_path, success=False, stage="backup")
        should_cancel = cancel.is_set if cancel is not None else None
        rcfg = self.config.reader
        local_path: Optional[Path] = None
        self.logger.info("Processing file: %s (%d bytes)", info.name, info.size)

        with elapsed() as sw:
            try:
                _check_cancel(cancel)
                await self.archive.backup(info.full_path)

                outcome.stage = "download"
                _check_cancel(cancel)
                local_path = await self.transport.download(info.full_path, temp_dir)

                outcome.stage = "parse"
                dataset = await asyncio.to_thread(
                    self.reader.parse,
                    local_path,
                    rcfg.sheet_name,
                    rcfg.header_row,
                    rcfg.data_start_row,
                    should_cancel,
                )
                outcome.rows_parsed = dataset.row_count
                self.logger.debug("Preview: %s", truncate(str(dataset.preview(Settings.PREVIEW_ROWS)), 1000))

                outcome.stage = "reshape"
                _check_cancel(cancel)
                records = self.reshaper.reshape(dataset) if dataset.row_count else []
                outcome.records = len(records)

                outcome.stage = "load"
                _check_cancel(cancel)
                if records:
                    staged = await self.loader.call_routine(
                        records_to_dataset(records),
                        self.config.database.routine_name,
                    )
                    outcome.rows_loaded = staged.rows_loaded
                else:
                    self.logger.warning("No records to load from %s; skipping database step", info.name)
                outcome.success = True
            except RunCancelled as e:
                outcome.stage = "cancelled"
                outcome.error = str(e)
                self.logger.warning("Cancelled while processing %s", info.name)
            except Exception as e:
                outcome.error = str(e) or type(e).__name__
                self.logger.error(
                    "Failed processing %s at %s: %s: %s",
                    info.name, outcome.stage, type(e).__name__, e, exc_info=True,
                )
            finally:
                self.archive.cleanup_local(local_path)

            await self._route(outcome)
        outcome.seconds = sw.seconds
        self.logger.info(
            "%s %s in %.2fs", "Processed" if outcome.success else "Failed", info.name, outcome.seconds
        )
        return outcome

    async def _route(self, outcome: FileOutcome) -> None:
        try:
            if outcome.success:
                outcome.target = await self.archive.move_to_processed(outcome.remote_path)
            else:
                outcome.target = await self.archive.move_to_error(
                    outcome.remote_path, outcome.error or "Unknown error"
                )
        except TransportError:
            self.logger.error("Failed to archive %s", outcome.remote_path, exc_info=True)


__all__ = ["FileOutcome", "RunResult", "RunCancelled", "IngestionOrchestrator"]
