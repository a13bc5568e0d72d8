"""
Record Store Interface.

============================================================
PURPOSE
============================================================
Generic filtered CRUD collection consumed by the compliance
services.

- select / count / insert / update / delete over named tables
- Filters are plain data (RecordFilter), not query objects
- Backends: in-memory (tests, dry runs) and SQLAlchemy

The store is the only shared mutable resource of the core.

============================================================
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from .exceptions import UnknownColumnError
from .models import new_id, parse_datetime


logger = logging.getLogger(__name__)


# ============================================================
# FILTER
# ============================================================

@dataclass
class RecordFilter:
    """
    Conjunctive row filter.

    Every populated clause must hold for a row to match.
    ``is_null`` maps a column to True (IS NULL) or False
    (IS NOT NULL). ``not_true`` columns match when the value is
    anything but True, including NULL. ``overlaps`` matches list
    columns sharing at least one element with the given values.
    """
    eq: Dict[str, Any] = field(default_factory=dict)
    any_of: Dict[str, List[Any]] = field(default_factory=dict)
    lt: Dict[str, Any] = field(default_factory=dict)
    lte: Dict[str, Any] = field(default_factory=dict)
    gt: Dict[str, Any] = field(default_factory=dict)
    gte: Dict[str, Any] = field(default_factory=dict)
    is_null: Dict[str, bool] = field(default_factory=dict)
    not_true: List[str] = field(default_factory=list)
    overlaps: Dict[str, List[Any]] = field(default_factory=dict)
    order_by: Optional[str] = None
    descending: bool = False
    offset: int = 0
    limit: Optional[int] = None

    def columns(self) -> Set[str]:
        """Every column the filter refers to."""
        names: Set[str] = set()
        for clause in (self.eq, self.any_of, self.lt, self.lte, self.gt, self.gte, self.is_null, self.overlaps):
            names.update(clause)
        names.update(self.not_true)
        if self.order_by:
            names.add(self.order_by)
        return names

    def without_window(self) -> "RecordFilter":
        """Same predicate, no ordering or pagination."""
        return RecordFilter(
            eq=dict(self.eq),
            any_of=dict(self.any_of),
            lt=dict(self.lt),
            lte=dict(self.lte),
            gt=dict(self.gt),
            gte=dict(self.gte),
            is_null=dict(self.is_null),
            not_true=list(self.not_true),
            overlaps=dict(self.overlaps),
        )

    def matches(self, row: Dict[str, Any]) -> bool:
        for column, expected in self.eq.items():
            if not _equal(row.get(column), expected):
                return False

        for column, values in self.any_of.items():
            if not any(_equal(row.get(column), v) for v in values):
                return False

        for clause, check in (
            (self.lt, lambda a, b: a < b),
            (self.lte, lambda a, b: a <= b),
            (self.gt, lambda a, b: a > b),
            (self.gte, lambda a, b: a >= b),
        ):
            for column, bound in clause.items():
                value = _comparable(row.get(column), bound)
                if value is None or not check(value, bound):
                    return False

        for column, want_null in self.is_null.items():
            if (row.get(column) is None) != want_null:
                return False

        for column in self.not_true:
            if row.get(column) is True:
                return False

        for column, values in self.overlaps.items():
            present = row.get(column) or []
            if not set(map(str, present)) & set(map(str, values)):
                return False

        return True


def _equal(value: Any, expected: Any) -> bool:
    if isinstance(expected, datetime):
        return parse_datetime(value) == expected
    return value == expected


def _comparable(value: Any, bound: Any) -> Any:
    if value is None:
        return None
    if isinstance(bound, datetime):
        return parse_datetime(value)
    if isinstance(bound, (int, float)) and isinstance(value, bool):
        return None
    return value


def apply_window(rows: List[Dict[str, Any]], record_filter: RecordFilter) -> List[Dict[str, Any]]:
    """Apply ordering and offset/limit to already-filtered rows."""
    if record_filter.order_by:
        column = record_filter.order_by
        present = [r for r in rows if r.get(column) is not None]
        missing = [r for r in rows if r.get(column) is None]
        present.sort(key=lambda r: _sort_key(r[column]), reverse=record_filter.descending)
        rows = present + missing

    start = max(record_filter.offset, 0)
    if record_filter.limit is None:
        return rows[start:]
    return rows[start:start + record_filter.limit]


def _sort_key(value: Any) -> Any:
    if isinstance(value, str):
        parsed = parse_datetime(value)
        if parsed is not None:
            return parsed
    return value


# ============================================================
# STORE INTERFACE
# ============================================================

class RecordStore(ABC):
    """
    Abstract record store.

    All operations are coroutines; callers await each store call
    before moving to the next chunk of work.
    """

    name: str = "store"

    @abstractmethod
    async def select(self, table: str, record_filter: Optional[RecordFilter] = None) -> List[Dict[str, Any]]:
        """Return matching rows as plain dicts."""
        pass

    @abstractmethod
    async def count(self, table: str, record_filter: Optional[RecordFilter] = None) -> int:
        """Count matching rows, ignoring offset and limit."""
        pass

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row, assigning an id when missing. Returns the stored row."""
        pass

    @abstractmethod
    async def update(self, table: str, record_filter: RecordFilter, patch: Dict[str, Any]) -> int:
        """Apply a patch to matching rows. Returns affected row count."""
        pass

    @abstractmethod
    async def delete(self, table: str, record_filter: RecordFilter) -> int:
        """Delete matching rows. Returns affected row count."""
        pass

    def columns(self, table: str) -> Optional[Set[str]]:
        """Known columns of a table, or None for schemaless tables."""
        return None

    async def get(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, RecordFilter(eq={"id": record_id}, limit=1))
        return rows[0] if rows else None

    async def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY BACKEND
# ============================================================

class InMemoryRecordStore(RecordStore):
    """
    Dict-backed store.

    Tables are schemaless unless a column set is registered, in
    which case patches naming other columns are rejected with
    UnknownColumnError (the same contract as the SQL backend).
    Rows are deep-copied on the way in and out.
    """

    name = "memory"

    def __init__(self, schemas: Optional[Dict[str, Iterable[str]]] = None):
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._schemas: Dict[str, Set[str]] = {
            table: set(cols) for table, cols in (schemas or {}).items()
        }

    def register_schema(self, table: str, columns: Iterable[str]) -> None:
        self._schemas[table] = set(columns)

    def columns(self, table: str) -> Optional[Set[str]]:
        schema = self._schemas.get(table)
        return set(schema) if schema is not None else None

    def seed(self, table: str, rows: Iterable[Dict[str, Any]]) -> None:
        """Load rows directly, bypassing column checks. Test and fixture helper."""
        target = self._tables.setdefault(table, [])
        for row in rows:
            stored = copy.deepcopy(row)
            stored.setdefault("id", new_id())
            target.append(stored)

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return self._tables.setdefault(table, [])

    def _check_columns(self, table: str, names: Iterable[str]) -> None:
        schema = self._schemas.get(table)
        if schema is None:
            return
        unknown = [n for n in names if n not in schema]
        if unknown:
            raise UnknownColumnError(self.name, table, unknown)

    async def select(self, table: str, record_filter: Optional[RecordFilter] = None) -> List[Dict[str, Any]]:
        record_filter = record_filter or RecordFilter()
        matched = [r for r in self._rows(table) if record_filter.matches(r)]
        return [copy.deepcopy(r) for r in apply_window(matched, record_filter)]

    async def count(self, table: str, record_filter: Optional[RecordFilter] = None) -> int:
        record_filter = record_filter or RecordFilter()
        return sum(1 for r in self._rows(table) if record_filter.matches(r))

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._check_columns(table, row)
        stored = copy.deepcopy(row)
        if stored.get("id") is None:
            stored["id"] = new_id()
        self._rows(table).append(stored)
        return copy.deepcopy(stored)

    async def update(self, table: str, record_filter: RecordFilter, patch: Dict[str, Any]) -> int:
        self._check_columns(table, patch)
        affected = 0
        for row in self._rows(table):
            if record_filter.matches(row):
                row.update(copy.deepcopy(patch))
                affected += 1
        return affected

    async def delete(self, table: str, record_filter: RecordFilter) -> int:
        rows = self._rows(table)
        kept = [r for r in rows if not record_filter.matches(r)]
        removed = len(rows) - len(kept)
        self._tables[table] = kept
        return removed
