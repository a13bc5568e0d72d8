"""
SQLAlchemy Record Store.

============================================================
PURPOSE
============================================================
RecordStore backend on a relational database.

- Engine and session factory construction
- Explicit transaction boundaries (commit or roll back)
- Compliance tables from ``tables.py``; host tables reflected
  on first use
- SQLAlchemy errors wrapped into store exceptions

SQLAlchemy calls are synchronous and run in a worker thread
so the event loop is never blocked on I/O.

============================================================
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Generator, List, Optional, Set, TypeVar

from sqlalchemy import (
    MetaData,
    Table,
    and_,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    IntegrityError,
    NoSuchTableError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.types import DateTime

from .exceptions import (
    QueryError,
    StoreConnectionError,
    TransactionError,
    UnknownColumnError,
)
from .models import new_id, parse_datetime
from .store import RecordFilter, RecordStore, apply_window
from .tables import Base


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default)


# ============================================================
# ENGINE & SESSIONS
# ============================================================

def create_store_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create a SQLAlchemy engine.

    SQLite URLs get a single shared connection so in-memory
    databases survive across sessions and threads.
    """
    logger.info(f"Creating database engine for: {database_url.split('@')[-1]}")

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            json_serializer=json_dumps,
            echo=echo,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        json_serializer=json_dumps,
        echo=echo,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def transaction_scope(session_factory: sessionmaker, store_name: str = "sql") -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs; rolls back on any
    exception. SQLAlchemy errors raised at commit surface as
    TransactionError.
    """
    session = session_factory()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    else:
        try:
            session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            session.rollback()
            raise TransactionError(store_name, "commit", str(e), cause=e) from e
    finally:
        session.close()


# ============================================================
# STORE
# ============================================================

class SqlAlchemyRecordStore(RecordStore):
    """
    Relational RecordStore.

    Usage:
        engine = create_store_engine("postgresql://...")
        store = SqlAlchemyRecordStore(engine, create_tables=True)
        rows = await store.select("patients", RecordFilter(lt={"created_at": cutoff}))
    """

    name = "sql"

    def __init__(
        self,
        engine: Engine,
        session_factory: Optional[sessionmaker] = None,
        create_tables: bool = False,
    ):
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._tables: Dict[str, Table] = dict(Base.metadata.tables)
        self._reflected = MetaData()

        if create_tables:
            self.create_tables()

    def create_tables(self) -> None:
        """Create the compliance tables if they do not exist."""
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "create_tables", "*")
        logger.info(f"Compliance tables ensured: {', '.join(sorted(Base.metadata.tables))}")

    async def close(self) -> None:
        self._engine.dispose()

    # --------------------------------------------------------
    # ERRORS
    # --------------------------------------------------------

    def _handle_db_error(self, error: SQLAlchemyError, operation: str, table: str) -> None:
        """Wrap a SQLAlchemy error into a store exception. Always raises."""
        logger.error(f"Database error in {operation} on {table}: {error}", exc_info=True)

        if isinstance(error, OperationalError):
            raise StoreConnectionError(self.name, operation, str(error), cause=error) from error

        if isinstance(error, IntegrityError):
            raise QueryError(self.name, operation, table, f"integrity violation: {error}", cause=error) from error

        raise QueryError(self.name, operation, table, str(error), cause=error) from error

    async def _run(self, operation: str, table: str, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            try:
                with transaction_scope(self._session_factory, self.name) as session:
                    return fn(session)
            except SQLAlchemyError as e:
                self._handle_db_error(e, operation, table)
                raise

        return await asyncio.to_thread(work)

    # --------------------------------------------------------
    # SCHEMA
    # --------------------------------------------------------

    def _table(self, name: str) -> Table:
        table = self._tables.get(name)
        if table is not None:
            return table

        try:
            table = Table(name, self._reflected, autoload_with=self._engine)
        except NoSuchTableError as e:
            raise QueryError(self.name, "reflect", name, "table does not exist", cause=e) from e
        except SQLAlchemyError as e:
            self._handle_db_error(e, "reflect", name)

        self._tables[name] = table
        logger.debug(f"Reflected table {name} ({len(table.columns)} columns)")
        return table

    def columns(self, table: str) -> Optional[Set[str]]:
        return set(self._table(table).columns.keys())

    def _check_columns(self, table: Table, names: Set[str]) -> None:
        unknown = [n for n in names if n not in table.c]
        if unknown:
            raise UnknownColumnError(self.name, table.name, unknown)

    @staticmethod
    def _coerce(table: Table, column: str, value: Any) -> Any:
        if isinstance(value, str) and isinstance(table.c[column].type, DateTime):
            parsed = parse_datetime(value)
            return parsed if parsed is not None else value
        return value

    def _coerce_row(self, table: Table, row: Dict[str, Any]) -> Dict[str, Any]:
        return {k: self._coerce(table, k, v) for k, v in row.items()}

    @staticmethod
    def _to_dict(mapping: Any) -> Dict[str, Any]:
        row = dict(mapping)
        for key, value in row.items():
            # SQLite drops tzinfo; stored values are UTC.
            if isinstance(value, datetime) and value.tzinfo is None:
                row[key] = value.replace(tzinfo=timezone.utc)
        return row

    def _where(self, table: Table, record_filter: RecordFilter):
        self._check_columns(table, record_filter.columns())
        clauses = []

        for column, value in record_filter.eq.items():
            col = table.c[column]
            value = self._coerce(table, column, value)
            clauses.append(col.is_(None) if value is None else col == value)

        for column, values in record_filter.any_of.items():
            clauses.append(table.c[column].in_([self._coerce(table, column, v) for v in values]))

        for clause, op in (
            (record_filter.lt, "__lt__"),
            (record_filter.lte, "__le__"),
            (record_filter.gt, "__gt__"),
            (record_filter.gte, "__ge__"),
        ):
            for column, bound in clause.items():
                clauses.append(getattr(table.c[column], op)(self._coerce(table, column, bound)))

        for column, want_null in record_filter.is_null.items():
            col = table.c[column]
            clauses.append(col.is_(None) if want_null else col.is_not(None))

        for column in record_filter.not_true:
            col = table.c[column]
            clauses.append(or_(col.is_(None), col == False))  # noqa: E712

        return and_(*clauses) if clauses else None

    # --------------------------------------------------------
    # OPERATIONS
    # --------------------------------------------------------

    async def select(self, table: str, record_filter: Optional[RecordFilter] = None) -> List[Dict[str, Any]]:
        record_filter = record_filter or RecordFilter()
        target = self._table(table)
        where = self._where(target, record_filter)
        # JSON overlap is evaluated in Python, so the window is too.
        window_in_sql = not record_filter.overlaps

        stmt = select(target)
        if where is not None:
            stmt = stmt.where(where)
        if window_in_sql:
            if record_filter.order_by:
                col = target.c[record_filter.order_by]
                stmt = stmt.order_by(col.desc() if record_filter.descending else col.asc())
            if record_filter.offset:
                stmt = stmt.offset(record_filter.offset)
            if record_filter.limit is not None:
                stmt = stmt.limit(record_filter.limit)

        def fn(session: Session) -> List[Dict[str, Any]]:
            return [self._to_dict(m) for m in session.execute(stmt).mappings().all()]

        rows = await self._run("select", table, fn)
        if window_in_sql:
            return rows

        overlap_only = RecordFilter(overlaps=record_filter.overlaps)
        rows = [r for r in rows if overlap_only.matches(r)]
        return apply_window(rows, record_filter)

    async def count(self, table: str, record_filter: Optional[RecordFilter] = None) -> int:
        record_filter = (record_filter or RecordFilter()).without_window()
        if record_filter.overlaps:
            return len(await self.select(table, record_filter))

        target = self._table(table)
        where = self._where(target, record_filter)
        stmt = select(func.count()).select_from(target)
        if where is not None:
            stmt = stmt.where(where)

        return await self._run("count", table, lambda session: int(session.execute(stmt).scalar() or 0))

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        target = self._table(table)
        self._check_columns(target, set(row))

        values = self._coerce_row(target, row)
        if "id" in target.c and values.get("id") is None:
            values["id"] = new_id()

        await self._run("insert", table, lambda session: session.execute(insert(target).values(**values)))
        return values

    async def update(self, table: str, record_filter: RecordFilter, patch: Dict[str, Any]) -> int:
        target = self._table(table)
        self._check_columns(target, set(patch))
        if not patch:
            return 0

        record_filter = await self._resolve_overlaps(table, target, record_filter)
        where = self._where(target, record_filter)
        stmt = update(target).values(**self._coerce_row(target, patch))
        if where is not None:
            stmt = stmt.where(where)

        return await self._run("update", table, lambda session: int(session.execute(stmt).rowcount or 0))

    async def delete(self, table: str, record_filter: RecordFilter) -> int:
        target = self._table(table)
        record_filter = await self._resolve_overlaps(table, target, record_filter)
        where = self._where(target, record_filter)
        stmt = delete(target)
        if where is not None:
            stmt = stmt.where(where)

        return await self._run("delete", table, lambda session: int(session.execute(stmt).rowcount or 0))

    async def _resolve_overlaps(self, table: str, target: Table, record_filter: RecordFilter) -> RecordFilter:
        """Turn an overlap predicate into an id list so it can run as SQL."""
        if not record_filter.overlaps:
            return record_filter
        if "id" not in target.c:
            raise UnknownColumnError(self.name, table, ["id"])

        rows = await self.select(table, record_filter.without_window())
        return RecordFilter(any_of={"id": [r["id"] for r in rows]})


def create_sql_store(database_url: str, create_tables: bool = True, echo: bool = False) -> SqlAlchemyRecordStore:
    """Create a SQL store for a database URL."""
    engine = create_store_engine(database_url, echo=echo)
    return SqlAlchemyRecordStore(engine, create_tables=create_tables)
