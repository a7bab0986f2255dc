"""
Staged load into the target database.

Every call follows the same sequence on one connection:

1. join the caller's open transaction, or begin and own one
2. create a temporary staging table shaped like the dataset
3. bulk insert all rows (fallback: one prepared insert reused per row)
4. run the consuming query / routine
5. commit (owned transaction) or roll back on any failure
6. drop the staging table; drop errors are logged and never surface

Three call shapes sit on top: execute_non_query (affected rows),
execute_query (result dataset) and execute_routine_with_output (output
parameter bindings).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import Boolean, Column, DateTime, MetaData, Numeric, Table, Unicode, UnicodeText, text
from sqlalchemy.engine import Result
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.types import TypeEngine

from nirload.column_naming import unique_column_names
from nirload.config import DatabaseSettings, Settings
from nirload.database import open_connection
from nirload.dataset import ColumnSchema, SemanticType, TabularDataset, is_missing
from nirload.errors import ExecutionError, IngestError, LoadError, SchemaError, TargetConnectionError
from nirload.log import elapsed, get_logger
from nirload.utils import timestamp_suffix

T = TypeVar("T")

STAGING_PLACEHOLDER = "{staging_table}"
MAX_TABLE_NAME_LENGTH = 40


class ParameterDirection(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    INPUT_OUTPUT = "input_output"

    @property
    def is_output(self) -> bool:
        return self is not ParameterDirection.INPUT


@dataclass(frozen=True)
class RoutineParameter:
    name: str
    value: Any = None
    direction: ParameterDirection = ParameterDirection.INPUT

    @property
    def bind_name(self) -> str:
        return self.name.lstrip("@:")


# -----------------------------
# Naming and type mapping
# -----------------------------

def staging_table_name(prefix: str = Settings.STAGING_PREFIX, now: Optional[datetime] = None) -> str:
    """Generate ``<prefix>_<yyyyMMddHHmmss>_<guid>``, capped at 40 characters."""
    return f"{prefix}_{timestamp_suffix(now)}_{uuid.uuid4().hex}"[:MAX_TABLE_NAME_LENGTH]


def max_text_length(dataset: TabularDataset, column: str) -> int:
    values = dataset.frame[column].dropna()
    if values.empty:
        return 0
    return int(values.astype(str).str.len().max())


def map_semantic_type(
    column: ColumnSchema,
    max_length: Optional[int] = None,
    length_floor: int = 50,
    clob_threshold: int = 5000,
) -> TypeEngine:
    """Deterministic semantic type -> SQL column type.

    Text is sized from the longest observed value (at least ``length_floor``),
    becomes a large-object type past ``clob_threshold``, and takes the
    threshold size when nothing was observed.
    """
    st = column.semantic_type
    if st is SemanticType.TEXT:
        if max_length is None:
            return Unicode(clob_threshold)
        if max_length > clob_threshold:
            return UnicodeText()
        return Unicode(max(max_length, length_floor))
    if st is SemanticType.INTEGER:
        return Numeric(Settings.NUMERIC_PRECISION, 0)
    if st is SemanticType.DECIMAL:
        return Numeric(Settings.NUMERIC_PRECISION, Settings.NUMERIC_SCALE)
    if st is SemanticType.DATETIME:
        return DateTime()
    if st is SemanticType.BOOLEAN:
        return Boolean()
    raise SchemaError(f"No SQL type mapping for column {column.name} ({st})")


def _bind_value(value: Any) -> Any:
    return None if is_missing(value) else value


def render_command(command: str, table: Table, conn: AsyncConnection) -> str:
    """Replace the staging-table placeholder with the quoted table name."""
    quoted = conn.dialect.identifier_preparer.quote(table.name)
    return command.replace(STAGING_PLACEHOLDER, quoted)


def _infer_result_type(values: Sequence[Any]) -> SemanticType:
    present = [v for v in values if not is_missing(v)]
    if not present:
        return SemanticType.TEXT
    if all(isinstance(v, bool) for v in present):
        return SemanticType.BOOLEAN
    if all(isinstance(v, int) and not isinstance(v, bool) for v in present):
        return SemanticType.INTEGER
    if all(isinstance(v, (int, float, Decimal)) and not isinstance(v, bool) for v in present):
        return SemanticType.DECIMAL
    if all(isinstance(v, datetime) for v in present):
        return SemanticType.DATETIME
    return SemanticType.TEXT


def result_to_dataset(result: Result, name: str = "Result") -> TabularDataset:
    """Materialize a query result as a TabularDataset."""
    keys = list(result.keys())
    rows = result.fetchall()
    names = unique_column_names(keys)
    data: Dict[str, List[Any]] = {n: [] for n in names}
    for row in rows:
        for n, v in zip(names, row):
            data[n].append(v)

    columns = []
    for n in names:
        st = _infer_result_type(data[n])
        if st is SemanticType.TEXT:
            data[n] = [None if is_missing(v) else str(v) for v in data[n]]
        columns.append(ColumnSchema(n, st))
    return TabularDataset.from_columns(columns, data, name=name)


# -----------------------------
# Loader
# -----------------------------

@dataclass(frozen=True)
class StagedCall(Generic[T]):
    """Outcome of one staged call: the command result plus the rows staged for it."""

    value: T
    rows_loaded: int


class StagingLoader:
    """Create, populate, consume and drop a staging table per call."""

    def __init__(
        self,
        engine: AsyncEngine,
        settings: Optional[DatabaseSettings] = None,
        logger: Optional[logging.Logger] = None,
        use_savepoint: Optional[bool] = None,
    ):
        self.engine = engine
        self.settings = settings or DatabaseSettings()
        self.logger = logger or get_logger(__name__)
        # pysqlite needs driver-level workarounds for SAVEPOINT
        self.use_savepoint = (
            use_savepoint if use_savepoint is not None else engine.dialect.name != "sqlite"
        )

    # ---- call shapes ----

    async def execute_non_query(
        self,
        dataset: TabularDataset,
        command: str,
        parameters: Optional[Mapping[str, Any]] = None,
        routine: bool = False,
        connection: Optional[AsyncConnection] = None,
    ) -> int:
        """Stage ``dataset`` and run a mutating command; returns affected rows.

        With ``routine=True`` ``command`` is a routine name and ``parameters``
        are bound as its input arguments.
        """
        consume = self._non_query(command, dict(parameters or {}), routine)
        return (await self._run(dataset, consume, connection)).value

    async def call_routine(
        self,
        dataset: TabularDataset,
        routine_name: str,
        parameters: Optional[Mapping[str, Any]] = None,
        connection: Optional[AsyncConnection] = None,
    ) -> StagedCall[int]:
        """Routine form of execute_non_query that also reports the staged row count."""
        consume = self._non_query(routine_name, dict(parameters or {}), routine=True)
        return await self._run(dataset, consume, connection)

    async def execute_query(
        self,
        dataset: TabularDataset,
        query: str,
        parameters: Optional[Mapping[str, Any]] = None,
        connection: Optional[AsyncConnection] = None,
    ) -> TabularDataset:
        """Stage ``dataset`` and run a query over it; returns the result set."""
        params = dict(parameters or {})

        async def consume(conn: AsyncConnection, table: Table) -> TabularDataset:
            result = await conn.execute(text(render_command(query, table, conn)), params)
            return result_to_dataset(result)

        return (await self._run(dataset, consume, connection)).value

    async def execute_routine_with_output(
        self,
        dataset: TabularDataset,
        routine_name: str,
        parameters: Sequence[RoutineParameter],
        connection: Optional[AsyncConnection] = None,
    ) -> Dict[str, Any]:
        """Stage ``dataset`` and call a routine; returns output parameter values.

        Output values are taken from the first row the call returns, matched
        by column name, otherwise by position among the output parameters.
        """
        binds = {p.bind_name: p.value for p in parameters}
        outputs = [p for p in parameters if p.direction.is_output]

        async def consume(conn: AsyncConnection, table: Table) -> Dict[str, Any]:
            sql = self._routine_sql(routine_name, list(binds), table, conn)
            result = await conn.execute(text(sql), binds)
            row = result.mappings().first() if result.returns_rows else None
            values: Dict[str, Any] = {}
            if row is None:
                return {p.bind_name: None for p in outputs}
            by_name = {str(k).lower(): v for k, v in row.items()}
            positional = list(row.values())
            for i, p in enumerate(outputs):
                if p.bind_name.lower() in by_name:
                    values[p.bind_name] = by_name[p.bind_name.lower()]
                elif i < len(positional):
                    values[p.bind_name] = positional[i]
                else:
                    values[p.bind_name] = None
            return values

        return (await self._run(dataset, consume, connection)).value

    # ---- lifecycle ----

    def _non_query(
        self, command: str, params: Dict[str, Any], routine: bool
    ) -> Callable[[AsyncConnection, Table], Awaitable[int]]:
        async def consume(conn: AsyncConnection, table: Table) -> int:
            if routine:
                sql = self._routine_sql(command, list(params), table, conn)
            else:
                sql = render_command(command, table, conn)
            result = await conn.execute(text(sql), params)
            return result.rowcount

        return consume

    def _routine_sql(self, name: str, bind_names: Sequence[str], table: Table, conn: AsyncConnection) -> str:
        args = ", ".join(f":{n}" for n in bind_names)
        quoted = conn.dialect.identifier_preparer.quote(table.name)
        return self.settings.routine_call_template.format(name=name, args=args, staging_table=quoted)

    async def _run(
        self,
        dataset: TabularDataset,
        consume: Callable[[AsyncConnection, Table], Awaitable[T]],
        connection: Optional[AsyncConnection],
    ) -> StagedCall[T]:
        if connection is not None:
            return await self._run_on(connection, dataset, consume)
        async with open_connection(self.engine) as conn:
            return await self._run_on(conn, dataset, consume)

    async def _run_on(
        self,
        conn: AsyncConnection,
        dataset: TabularDataset,
        consume: Callable[[AsyncConnection, Table], Awaitable[T]],
    ) -> StagedCall[T]:
        owns_transaction = not conn.in_transaction()
        if owns_transaction:
            try:
                await conn.begin()
            except SQLAlchemyError as e:
                raise TargetConnectionError(f"Cannot begin transaction: {e}") from e

        table: Optional[Table] = None
        try:
            table = self.build_staging_table(dataset)
            await self._create(conn, table)
            loaded = await self.load(conn, table, dataset)
            with elapsed() as sw:
                try:
                    result = await consume(conn, table)
                except SQLAlchemyError as e:
                    raise ExecutionError(f"Target command failed: {e}") from e
            self.logger.info("Executed target command in %.2fms", sw.millis)
            if owns_transaction:
                await conn.commit()
            return StagedCall(result, loaded)
        except BaseException:
            if owns_transaction:
                await self._rollback(conn)
            raise
        finally:
            if table is not None:
                await self._drop(conn, table, owns_transaction)

    def build_staging_table(self, dataset: TabularDataset) -> Table:
        name = self.settings.staging_table or staging_table_name()
        columns = []
        for col in dataset.columns:
            length = max_text_length(dataset, col.name) if dataset.row_count else None
            sql_type = map_semantic_type(
                col,
                max_length=length,
                length_floor=self.settings.text_length_floor,
                clob_threshold=self.settings.text_clob_threshold,
            )
            columns.append(Column(col.name, sql_type, nullable=col.nullable))
        return Table(name, MetaData(), *columns, prefixes=["TEMPORARY"])

    async def _create(self, conn: AsyncConnection, table: Table) -> None:
        try:
            await conn.run_sync(table.create)
        except SQLAlchemyError as e:
            raise SchemaError(f"Cannot create staging table {table.name}: {e}") from e
        self.logger.info("Created staging table %s (%d columns)", table.name, len(table.columns))

    async def load(self, conn: AsyncConnection, table: Table, dataset: TabularDataset) -> int:
        """Populate the staging table; returns the number of rows loaded."""
        names = dataset.column_names
        rows = [{n: _bind_value(v) for n, v in zip(names, r)} for r in dataset.rows()]
        if not rows:
            return 0

        with elapsed() as sw:
            try:
                loaded = await self._bulk_insert(conn, table, rows)
                path = "bulk"
            except Exception as e:
                self.logger.warning(
                    "Bulk load into %s failed, falling back to row inserts: %s", table.name, e
                )
                loaded = await self._row_insert(conn, table, rows)
                path = "row-by-row"
        self.logger.info("Loaded %d rows into %s (%s) in %.2fms", loaded, table.name, path, sw.millis)
        return loaded

    async def _bulk_insert(self, conn: AsyncConnection, table: Table, rows: List[Dict[str, Any]]) -> int:
        if self.use_savepoint:
            async with conn.begin_nested():
                await conn.execute(table.insert(), rows)
        else:
            await conn.execute(table.insert(), rows)
        return len(rows)

    async def _row_insert(self, conn: AsyncConnection, table: Table, rows: List[Dict[str, Any]]) -> int:
        # one statement object, compiled once and reused for every row
        stmt = table.insert()
        loaded = 0
        try:
            # discard anything a partial bulk attempt left behind
            await conn.execute(table.delete())
            for row in rows:
                await conn.execute(stmt, row)
                loaded += 1
        except SQLAlchemyError as e:
            raise LoadError(f"Row insert into {table.name} failed at row {loaded + 1}: {e}") from e
        return loaded

    async def _rollback(self, conn: AsyncConnection) -> None:
        try:
            await conn.rollback()
        except SQLAlchemyError:
            self.logger.warning("Rollback failed", exc_info=True)

    async def _drop(self, conn: AsyncConnection, table: Table, owns_transaction: bool) -> None:
        try:
            await conn.run_sync(lambda sc: table.drop(sc, checkfirst=True))
            if owns_transaction and conn.in_transaction():
                await conn.commit()
            self.logger.debug("Dropped staging table %s", table.name)
        except (SQLAlchemyError, IngestError, OSError):
            self.logger.warning("Failed to drop staging table %s", table.name, exc_info=True)
            if owns_transaction:
                await self._rollback(conn)


__all__ = [
    "ParameterDirection",
    "RoutineParameter",
    "StagedCall",
    "StagingLoader",
    "map_semantic_type",
    "staging_table_name",
    "render_command",
    "result_to_dataset",
]
