"""
Target database access: pooled async engine, connection scope, metadata
lookups and leftover staging-table cleanup.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import MetaData, Table, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from nirload.config import DatabaseSettings, Settings
from nirload.errors import SchemaError, TargetConnectionError
from nirload.log import get_logger
from nirload.utils import ARCHIVE_TIMESTAMP_FORMAT, now_local

logger = get_logger(__name__)

# SQLite only knows these; everything else is passed through to the server
SQLITE_ISOLATION_LEVELS = {"SERIALIZABLE", "READ UNCOMMITTED", "AUTOCOMMIT"}


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    type_name: str
    nullable: bool


def create_target_engine(settings: Optional[DatabaseSettings] = None, **kwargs: Any) -> AsyncEngine:
    """Create the pooled async engine for the target database.

    In-memory SQLite gets a StaticPool so every checkout sees the same
    database (and the same session-scoped temporary tables).
    """
    settings = settings or DatabaseSettings()
    url = make_url(settings.url)
    options: Dict[str, Any] = {}

    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
            options["connect_args"] = {"check_same_thread": False}
        if settings.isolation_level and settings.isolation_level.upper() in SQLITE_ISOLATION_LEVELS:
            options["isolation_level"] = settings.isolation_level.upper()
    else:
        options["pool_size"] = settings.pool_size
        options["max_overflow"] = settings.max_overflow
        options["pool_pre_ping"] = True
        if settings.isolation_level:
            options["isolation_level"] = settings.isolation_level.upper()

    options.update(kwargs)
    return create_async_engine(url, **options)


@asynccontextmanager
async def open_connection(engine: AsyncEngine) -> AsyncIterator[AsyncConnection]:
    """Acquire one pooled connection for the duration of the block."""
    try:
        conn = await engine.connect()
    except (SQLAlchemyError, OSError) as e:
        raise TargetConnectionError(f"Cannot connect to target database: {e}") from e
    try:
        yield conn
    finally:
        await conn.close()


async def get_table_columns(conn: AsyncConnection, table_name: str) -> List[ColumnInfo]:
    """Column metadata for a (possibly temporary) table."""

    def _columns(sync_conn) -> List[ColumnInfo]:
        return [
            ColumnInfo(c["name"], str(c["type"]), bool(c.get("nullable", True)))
            for c in inspect(sync_conn).get_columns(table_name)
        ]

    try:
        return await conn.run_sync(_columns)
    except SQLAlchemyError as e:
        raise SchemaError(f"Cannot read columns of {table_name}: {e}") from e


def staging_table_created_at(name: str, prefix: str = Settings.STAGING_PREFIX) -> Optional[datetime]:
    """Creation time encoded in a generated staging table name, if any."""
    head = f"{prefix}_"
    if not name.upper().startswith(head.upper()):
        return None
    stamp = name[len(head): len(head) + 14]
    try:
        return datetime.strptime(stamp, ARCHIVE_TIMESTAMP_FORMAT)
    except ValueError:
        return None


async def cleanup_old_staging_tables(
    conn: AsyncConnection,
    prefix: str = Settings.STAGING_PREFIX,
    older_than: timedelta = timedelta(hours=1),
    log: Optional[logging.Logger] = None,
) -> int:
    """Drop permanent staging tables left behind by crashed runs.

    Only tables whose generated name carries a creation time older than
    ``older_than`` are dropped; failures are logged and skipped.
    """
    log = log or logger
    cutoff = now_local() - older_than

    def _sweep(sync_conn) -> int:
        dropped = 0
        for name in inspect(sync_conn).get_table_names():
            created = staging_table_created_at(name, prefix)
            if created is None or created >= cutoff:
                continue
            try:
                Table(name, MetaData()).drop(sync_conn, checkfirst=True)
                dropped += 1
                log.info("Dropped old staging table: %s", name)
            except SQLAlchemyError:
                log.warning("Failed to drop old staging table %s", name, exc_info=True)
        return dropped

    count = await conn.run_sync(_sweep)
    if conn.in_transaction():
        await conn.commit()
    return count


__all__ = [
    "ColumnInfo",
    "create_target_engine",
    "open_connection",
    "get_table_columns",
    "staging_table_created_at",
    "cleanup_old_staging_tables",
]
