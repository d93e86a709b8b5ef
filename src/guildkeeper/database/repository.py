"""
Generic table repository: the persistence interface used by the background layer.

Every persisted entity is a dataclass whose field names match its table's
columns. :class:`Repository` maps between the two and offers the small set of
operations the scheduled jobs, queue writers and notification fan-out need:

- ``get`` / ``upsert`` / ``delete`` for single entities
- ``find_where`` / ``count_where`` for predicate queries
- ``delete_where(where, limit)`` for batched retention deletes

Predicates are :class:`Where` values: a SQL fragment plus its parameters.
Parameters go through :func:`to_db`, so callers pass datetimes, enums and
snowflake wrappers directly.
"""

from __future__ import annotations

import dataclasses
import json
import re
import time
import typing
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Sequence, Type, TypeVar

import aiosqlite

from guildkeeper.database.db_connection import ConnectionManager
from guildkeeper.datatypes.discord_datatypes import Snowflake
from guildkeeper.errors import PersistenceError
from guildkeeper.util.logger import get_logger

logger = get_logger("repository")

T = TypeVar("T")

SLOW_QUERY_SECONDS = 0.1

_ORDER_TERM = re.compile(r"^\s*([a-z_][a-z0-9_]*)(\s+(asc|desc))?\s*$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------

def to_db(value: Any) -> Any:
    """Convert a Python value to its column representation."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, Snowflake):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def _decoder_for(hint: Any) -> Callable[[Any], Any]:
    origin = typing.get_origin(hint)
    if origin is typing.Union:
        inner = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(inner) == 1:
            return _decoder_for(inner[0])
        return lambda v: v
    if origin in (dict, list):
        return lambda v: json.loads(v) if isinstance(v, str) else v
    if hint is datetime:
        return datetime.fromisoformat
    if hint is bool:
        return bool
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint
    return lambda v: v


class EntityCodec(Generic[T]):
    """Row <-> dataclass conversion for one entity type, resolved once."""

    def __init__(self, entity_cls: Type[T]) -> None:
        if not dataclasses.is_dataclass(entity_cls):
            raise TypeError(f"{entity_cls!r} is not a dataclass")
        self.entity_cls = entity_cls
        hints = typing.get_type_hints(entity_cls)
        self.columns: List[str] = [f.name for f in dataclasses.fields(entity_cls)]
        self._decoders: Dict[str, Callable[[Any], Any]] = {name: _decoder_for(hints[name]) for name in self.columns}

    def encode(self, entity: T) -> List[Any]:
        return [to_db(getattr(entity, name)) for name in self.columns]

    def decode(self, row: aiosqlite.Row) -> T:
        values = {}
        for name in self.columns:
            raw = row[name]
            values[name] = None if raw is None else self._decoders[name](raw)
        return self.entity_cls(**values)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Where:
    """SQL predicate fragment with positional parameters."""

    clause: str
    params: tuple = ()

    @classmethod
    def all(cls) -> "Where":
        return cls("1 = 1")

    @classmethod
    def eq(cls, column: str, value: Any) -> "Where":
        if value is None:
            return cls(f"{column} IS NULL")
        return cls(f"{column} = ?", (value,))

    @classmethod
    def before(cls, column: str, moment: datetime) -> "Where":
        return cls(f"{column} < ?", (moment,))

    @classmethod
    def at_or_before(cls, column: str, moment: datetime) -> "Where":
        return cls(f"{column} <= ?", (moment,))

    @classmethod
    def at_or_after(cls, column: str, moment: datetime) -> "Where":
        return cls(f"{column} >= ?", (moment,))

    @classmethod
    def is_in(cls, column: str, values: Sequence[Any]) -> "Where":
        if not values:
            return cls("1 = 0")
        placeholders = ", ".join("?" for _ in values)
        return cls(f"{column} IN ({placeholders})", tuple(values))

    def __and__(self, other: "Where") -> "Where":
        return Where(f"({self.clause}) AND ({other.clause})", self.params + other.params)

    def __or__(self, other: "Where") -> "Where":
        return Where(f"({self.clause}) OR ({other.clause})", self.params + other.params)

    def encoded_params(self) -> tuple:
        return tuple(to_db(p) for p in self.params)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class Repository(Generic[T]):
    """
    Persistence operations for one table.

    Args:
        db: Open connection manager. Writes go through its transaction lock.
        table: Table name (trusted, from code).
        entity_cls: Dataclass whose fields match the table columns.
        key_field: Primary-key field, ``id`` unless the entity is keyed otherwise.
    """

    def __init__(self, db: ConnectionManager, table: str, entity_cls: Type[T], key_field: str = "id") -> None:
        self._db = db
        self.table = table
        self._codec: EntityCodec[T] = EntityCodec(entity_cls)
        if key_field not in self._codec.columns:
            raise ValueError(f"{entity_cls.__name__} has no field {key_field!r}")
        self.key_field = key_field

        columns = ", ".join(self._codec.columns)
        placeholders = ", ".join("?" for _ in self._codec.columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in self._codec.columns if c != key_field)
        self._upsert_sql = (
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT({key_field}) DO UPDATE SET {updates}"
        )

    # -------------------- reads --------------------

    async def get(self, key: Any) -> Optional[T]:
        rows = await self._fetch(f"SELECT * FROM {self.table} WHERE {self.key_field} = ?", (to_db(key),), "get")
        return self._codec.decode(rows[0]) if rows else None

    async def find_where(
        self,
        where: Where,
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        sql = f"SELECT * FROM {self.table} WHERE {where.clause}"
        params = where.encoded_params()
        if order_by:
            sql += f" ORDER BY {self._check_order_by(order_by)}"
        if limit is not None:
            sql += " LIMIT ?"
            params += (int(limit),)
        rows = await self._fetch(sql, params, "find_where")
        return [self._codec.decode(row) for row in rows]

    async def count_where(self, where: Where) -> int:
        rows = await self._fetch(f"SELECT COUNT(*) AS n FROM {self.table} WHERE {where.clause}", where.encoded_params(), "count_where")
        return int(rows[0]["n"]) if rows else 0

    # -------------------- writes --------------------

    async def upsert(self, entity: T) -> T:
        await self._write(self._upsert_sql, [tuple(self._codec.encode(entity))], "upsert")
        return entity

    async def insert_many(self, entities: Iterable[T]) -> int:
        batch = [tuple(self._codec.encode(e)) for e in entities]
        if not batch:
            return 0
        await self._write(self._upsert_sql, batch, "insert_many")
        return len(batch)

    async def delete(self, entity: T) -> bool:
        key = to_db(getattr(entity, self.key_field))
        return await self._execute_write(f"DELETE FROM {self.table} WHERE {self.key_field} = ?", (key,), "delete") > 0

    async def delete_where(self, where: Where, limit: int) -> int:
        """Delete at most ``limit`` matching rows, oldest insertions first. Returns the count deleted."""
        if limit <= 0:
            raise ValueError("limit must be positive")
        sql = (
            f"DELETE FROM {self.table} WHERE rowid IN "
            f"(SELECT rowid FROM {self.table} WHERE {where.clause} ORDER BY rowid LIMIT ?)"
        )
        return await self._execute_write(sql, where.encoded_params() + (int(limit),), "delete_where")

    # -------------------- internals --------------------

    def _check_order_by(self, order_by: str) -> str:
        for term in order_by.split(","):
            match = _ORDER_TERM.match(term)
            if not match or match.group(1) not in self._codec.columns:
                raise ValueError(f"Invalid order_by term for {self.table}: {term!r}")
        return order_by

    async def _fetch(self, sql: str, params: tuple, op: str) -> List[aiosqlite.Row]:
        started = time.perf_counter()
        try:
            async with self._db.read() as conn:
                cursor = await conn.execute(sql, params)
                rows = await cursor.fetchall()
                await cursor.close()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"{self.table}.{op} failed: {exc}") from exc
        self._track(op, time.perf_counter() - started)
        return list(rows)

    async def _write(self, sql: str, batch: List[tuple], op: str) -> None:
        started = time.perf_counter()
        try:
            async with self._db.transaction() as conn:
                await conn.executemany(sql, batch)
        except aiosqlite.Error as exc:
            raise PersistenceError(f"{self.table}.{op} failed: {exc}") from exc
        self._track(op, time.perf_counter() - started)

    async def _execute_write(self, sql: str, params: tuple, op: str) -> int:
        started = time.perf_counter()
        try:
            async with self._db.transaction() as conn:
                cursor = await conn.execute(sql, params)
                affected = cursor.rowcount
                await cursor.close()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"{self.table}.{op} failed: {exc}") from exc
        self._track(op, time.perf_counter() - started)
        return affected

    def _track(self, op: str, duration: float) -> None:
        if duration > SLOW_QUERY_SECONDS:
            logger.warning("[PERFORMANCE] Slow query: %s.%s took %.2fms", self.table, op, duration * 1000)
