"""
Archive routing for source files: processed / error / backup locations,
collision-safe names, error sidecars and retention sweeps.
"""

from __future__ import annotations

import logging
import posixpath
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from nirload.config import ArchivePolicy
from nirload.errors import TransportError
from nirload.log import get_logger
from nirload.transport import FileTransferService
from nirload.utils import (
    LOG_TIMESTAMP_FORMAT,
    join_remote,
    normalize_remote_path,
    now_local,
    remote_basename,
    timestamp_suffix,
)

ERROR_SIDECAR_SUFFIX = ".error.txt"


# -----------------------------
# Archiving paths
# -----------------------------

def dated_subdir(base: str, dt: datetime) -> str:
    return join_remote(normalize_remote_path(base), f"{dt:%Y}", f"{dt:%m}", f"{dt:%d}")


def build_archive_path(base: str, file_name: str, use_date_folder: bool, now: Optional[datetime] = None) -> str:
    """``<base>[/yyyy/MM/dd]/<file_name>`` with forward slashes, no leading slash."""
    folder = dated_subdir(base, now or now_local()) if use_date_folder else normalize_remote_path(base)
    return join_remote(folder, file_name)


def collision_name(path: str, now: Optional[datetime] = None, counter: int = 0) -> str:
    """Insert ``_<YYYYMMDDHHMMSS>`` before the extension: a/b.xlsx -> a/b_20240102103000.xlsx

    A positive ``counter`` is appended after the timestamp (``_1``, ``_2``, ...).
    """
    folder, name = posixpath.split(path)
    stem, ext = posixpath.splitext(name)
    suffix = timestamp_suffix(now)
    if counter:
        suffix = f"{suffix}_{counter}"
    return join_remote(folder, f"{stem}_{suffix}{ext}")


async def unique_target_path(
    transport: FileTransferService,
    target: str,
    overwrite: bool,
    now: Optional[datetime] = None,
) -> str:
    if overwrite or not await transport.exists(target):
        return target
    now = now or now_local()
    counter = 0
    candidate = collision_name(target, now)
    # same name routed twice within one second
    while await transport.exists(candidate):
        counter += 1
        candidate = collision_name(target, now, counter)
    return candidate


def format_error_log(file_name: str, message: str, now: Optional[datetime] = None) -> str:
    ts = (now or now_local()).strftime(LOG_TIMESTAMP_FORMAT)
    return (
        "Error Log\n"
        "==========\n"
        f"File: {file_name}\n"
        f"Time: {ts}\n"
        "\n"
        "Error Message:\n"
        f"{message}"
    )


class ArchiveRouter:
    def __init__(
        self,
        transport: FileTransferService,
        policy: Optional[ArchivePolicy] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.transport = transport
        self.policy = policy or ArchivePolicy()
        self.logger = logger or get_logger(__name__)

    async def _relocate(self, remote_path: str, base: str, copy: bool = False) -> str:
        name = remote_basename(remote_path)
        target = build_archive_path(base, name, self.policy.use_date_folder)
        target = await unique_target_path(self.transport, target, self.policy.overwrite_existing)
        await self.transport.create_directory(posixpath.dirname(target))
        if copy:
            await self.transport.copy(remote_path, target)
        else:
            await self.transport.move(remote_path, target)
        return target

    async def move_to_processed(self, remote_path: str) -> str:
        target = await self._relocate(remote_path, self.policy.processed_path)
        self.logger.info("Moved to processed: %s -> %s", remote_path, target)
        return target

    async def move_to_error(self, remote_path: str, reason: str) -> str:
        """Move a failed file to the error location and write its sidecar log.

        A sidecar write failure is logged; the move still counts as done.
        """
        target = await self._relocate(remote_path, self.policy.error_path)
        self.logger.info("Moved to error: %s -> %s", remote_path, target)
        try:
            await self.transport.write_text(
                target + ERROR_SIDECAR_SUFFIX,
                format_error_log(remote_basename(remote_path), reason),
            )
        except TransportError:
            self.logger.warning("Failed to write error log for %s", target, exc_info=True)
        return target

    async def backup(self, remote_path: str) -> Optional[str]:
        """Best-effort copy into the backup location; None when disabled or failed."""
        if not self.policy.backup_before_process:
            return None
        try:
            target = await self._relocate(remote_path, self.policy.backup_path, copy=True)
        except TransportError:
            self.logger.warning("Backup failed for %s; continuing without backup", remote_path, exc_info=True)
            return None
        self.logger.info("Backed up: %s -> %s", remote_path, target)
        return target

    async def cleanup_old(self, retention_days: Optional[int] = None) -> int:
        """Delete archived files older than the retention age; returns the delete count."""
        days = self.policy.retention_days if retention_days is None else retention_days
        if days <= 0:
            self.logger.info("Retention sweep disabled (retention_days=%d)", days)
            return 0

        cutoff = now_local() - timedelta(days=days)
        deleted = 0
        for base in self.policy.base_paths:
            if not await self.transport.exists(base):
                continue
            try:
                files = await self.transport.list_files(base, "*", recursive=True)
            except TransportError:
                self.logger.warning("Cannot list %s during retention sweep", base, exc_info=True)
                continue
            for f in files:
                if f.is_directory or f.last_modified >= cutoff:
                    continue
                try:
                    await self.transport.delete(f.full_path)
                    deleted += 1
                    self.logger.info("Deleted old file: %s", f.full_path)
                except TransportError:
                    self.logger.warning("Failed to delete %s", f.full_path, exc_info=True)

        self.logger.info("Retention sweep removed %d files older than %d days", deleted, days)
        return deleted

    def cleanup_local(self, path: Optional[Path | str]) -> None:
        if path is None or self.policy.keep_local_copy:
            return
        p = Path(path)
        try:
            p.unlink(missing_ok=True)
            self.logger.debug("Deleted local file: %s", p)
        except OSError:
            self.logger.warning("Failed to delete local file %s", p, exc_info=True)


__all__ = [
    "ERROR_SIDECAR_SUFFIX",
    "ArchiveRouter",
    "build_archive_path",
    "collision_name",
    "unique_target_path",
    "format_error_log",
]
