"""Keyed document store used by every ledger.

Records are dataclasses carrying an ``id`` and a ``version``. Writes after
creation go through ``compare_and_set``: the write lands only if the stored
version still equals the version the caller read, so each record transition
is its own critical section and no global lock is needed.

Two implementations share the interface: ``InMemoryStore`` (per-record
asyncio locks, used by tests and single-process deployments) and
``SqlAlchemyStore`` (conditional ``UPDATE ... WHERE version = :v``).
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, fields
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysub.core.exceptions import ConcurrencyError, DuplicateKeyError, NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

FILTER_OPS = ("eq", "ne", "in", "lt", "le", "gt", "ge", "is_null")


@dataclass(frozen=True)
class Filter:
    """Simple predicate over one record attribute."""
    field: str
    op: str = "eq"
    value: Any = None

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op: {self.op}")

    def matches(self, record: Any) -> bool:
        actual = getattr(record, self.field)
        if self.op == "eq":
            return actual == self.value
        if self.op == "ne":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        if self.op == "is_null":
            return (actual is None) == bool(self.value)
        if actual is None:
            return False
        if self.op == "lt":
            return actual < self.value
        if self.op == "le":
            return actual <= self.value
        if self.op == "gt":
            return actual > self.value
        return actual >= self.value


class DocumentStore(ABC, Generic[T]):
    """Storage interface the ledgers depend on."""

    @abstractmethod
    async def create(self, record: T) -> T:
        """Insert a new record. Raises DuplicateKeyError on id or unique key clash."""

    @abstractmethod
    async def get(self, record_id: uuid.UUID) -> Optional[T]:
        """Fetch a record by primary id."""

    @abstractmethod
    async def get_by(self, field: str, value: Any) -> Optional[T]:
        """Fetch a record by a unique secondary key."""

    @abstractmethod
    async def find(
        self,
        *filters: Filter,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[T]:
        """Return all records matching every filter."""

    @abstractmethod
    async def compare_and_set(self, record: T) -> bool:
        """Write ``record`` if the stored version equals ``record.version``.

        On success the stored version is incremented and ``record.version``
        is updated to match. Returns False when another writer got there first.
        """


async def mutate_with_retry(
    store: DocumentStore[T],
    record_id: uuid.UUID,
    mutate: Callable[[T], bool],
    entity: str = "Record",
    max_attempts: int = 5,
) -> tuple[T, bool]:
    """Optimistic read-validate-write loop.

    ``mutate`` edits the record in place and returns True when a write is
    needed, False when the record is already in the desired state. It may
    raise to reject the change; nothing is written in that case.

    Returns:
        Tuple of (record as stored, whether a write happened)
    """
    for attempt in range(1, max_attempts + 1):
        record = await store.get(record_id)
        if record is None:
            raise NotFoundError(f"{entity} {record_id} not found")

        if not mutate(record):
            return record, False

        if await store.compare_and_set(record):
            return record, True

        logger.debug(
            f"{entity} {record_id} changed concurrently, retrying "
            f"(attempt {attempt}/{max_attempts})"
        )

    raise ConcurrencyError(f"{entity} {record_id}: too many concurrent updates")


# ==================== In-memory ====================

class InMemoryStore(DocumentStore[T]):
    """Dict-backed store with per-record locking.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self, unique_fields: Iterable[str] = ()):
        self._records: dict[uuid.UUID, T] = {}
        self._unique_fields = tuple(unique_fields)
        self._locks: defaultdict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._insert_lock = asyncio.Lock()

    def _conflicts(self, record: T) -> Optional[str]:
        for field in self._unique_fields:
            value = getattr(record, field)
            if value is None:
                continue
            for other in self._records.values():
                if other.id != record.id and getattr(other, field) == value:
                    return field
        return None

    async def create(self, record: T) -> T:
        async with self._insert_lock:
            if record.id in self._records:
                raise DuplicateKeyError(f"Record {record.id} already exists")
            clash = self._conflicts(record)
            if clash:
                raise DuplicateKeyError(f"Duplicate value for unique field '{clash}'")
            self._records[record.id] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def get(self, record_id: uuid.UUID) -> Optional[T]:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def get_by(self, field: str, value: Any) -> Optional[T]:
        for record in self._records.values():
            if getattr(record, field) == value:
                return copy.deepcopy(record)
        return None

    async def find(
        self,
        *filters: Filter,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[T]:
        matches = [r for r in self._records.values() if all(f.matches(r) for f in filters)]
        if order_by:
            matches.sort(
                key=lambda r: (getattr(r, order_by) is None, getattr(r, order_by)),
                reverse=descending,
            )
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(r) for r in matches]

    async def compare_and_set(self, record: T) -> bool:
        async with self._locks[record.id]:
            current = self._records.get(record.id)
            if current is None:
                raise NotFoundError(f"Record {record.id} not found")
            if current.version != record.version:
                return False
            clash = self._conflicts(record)
            if clash:
                raise DuplicateKeyError(f"Duplicate value for unique field '{clash}'")
            stored = copy.deepcopy(record)
            stored.version = record.version + 1
            self._records[record.id] = stored
            record.version = stored.version
            return True


# ==================== SQLAlchemy ====================

class SqlAlchemyStore(DocumentStore[T]):
    """Store backed by an ORM row class whose columns mirror the record's fields."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        row_cls: type,
        record_cls: type,
    ):
        self.session_maker = session_maker
        self.row_cls = row_cls
        self.record_cls = record_cls
        self._field_names = [f.name for f in fields(record_cls)]

    def _to_record(self, row: Any) -> T:
        return self.record_cls(**{name: getattr(row, name) for name in self._field_names})

    def _to_values(self, record: T) -> dict[str, Any]:
        return {name: getattr(record, name) for name in self._field_names}

    def _clause(self, flt: Filter):
        column = getattr(self.row_cls, flt.field)
        if flt.op == "eq":
            return column.is_(None) if flt.value is None else column == flt.value
        if flt.op == "ne":
            return column.is_not(None) if flt.value is None else column != flt.value
        if flt.op == "in":
            return column.in_(list(flt.value))
        if flt.op == "is_null":
            return column.is_(None) if flt.value else column.is_not(None)
        if flt.op == "lt":
            return column < flt.value
        if flt.op == "le":
            return column <= flt.value
        if flt.op == "gt":
            return column > flt.value
        return column >= flt.value

    async def create(self, record: T) -> T:
        async with self.session_maker() as session:
            session.add(self.row_cls(**self._to_values(record)))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateKeyError(f"{self.row_cls.__tablename__}: duplicate key") from e
        return record

    async def get(self, record_id: uuid.UUID) -> Optional[T]:
        async with self.session_maker() as session:
            row = await session.get(self.row_cls, record_id)
            return self._to_record(row) if row is not None else None

    async def get_by(self, field: str, value: Any) -> Optional[T]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(self.row_cls).where(getattr(self.row_cls, field) == value)
            )
            row = result.scalars().first()
            return self._to_record(row) if row is not None else None

    async def find(
        self,
        *filters: Filter,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[T]:
        query = select(self.row_cls).where(*[self._clause(f) for f in filters])
        if order_by:
            column = getattr(self.row_cls, order_by)
            query = query.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            query = query.limit(limit)

        async with self.session_maker() as session:
            result = await session.execute(query)
            return [self._to_record(row) for row in result.scalars().all()]

    async def compare_and_set(self, record: T) -> bool:
        values = self._to_values(record)
        expected = values.pop("version")
        record_id = values.pop("id")

        async with self.session_maker() as session:
            try:
                result = await session.execute(
                    update(self.row_cls)
                    .where(self.row_cls.id == record_id, self.row_cls.version == expected)
                    .values(**values, version=expected + 1)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateKeyError(f"{self.row_cls.__tablename__}: duplicate key") from e

        if result.rowcount == 1:
            record.version = expected + 1
            return True
        return False
