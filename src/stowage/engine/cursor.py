"""Re-seeking cursors over stores and indexes."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from stowage.engine.catalog import loads_value, range_clause
from stowage.errors import EngineError
from stowage.filters import resolve_nested_path
from stowage.keys import KeyRange, decode_key

if TYPE_CHECKING:
    from stowage.engine.transaction import Index, ObjectStore


class Direction(str, Enum):
    NEXT = "next"
    NEXT_UNIQUE = "nextunique"
    PREV = "prev"
    PREV_UNIQUE = "prevunique"

    @property
    def descending(self) -> bool:
        return self in (Direction.PREV, Direction.PREV_UNIQUE)

    @property
    def unique(self) -> bool:
        return self in (Direction.NEXT_UNIQUE, Direction.PREV_UNIQUE)


class Cursor:
    """Walks records one at a time in key order.

    Each ``advance()`` issues a single ``LIMIT 1`` query positioned after the
    last visited entry, so records written or deleted through the cursor never
    invalidate it.
    """

    def __init__(
        self,
        store: ObjectStore,
        index: Index | None,
        key_range: KeyRange | None,
        direction: Direction,
    ) -> None:
        self.store = store
        self.index = index
        self.range = key_range
        self.direction = direction
        self.key: Any = None
        self.primary_key: Any = None
        self.value: Any = None
        self._ekey: bytes | None = None
        self._epkey: bytes | None = None
        self._done = False

    @property
    def source(self) -> ObjectStore | Index:
        return self.index if self.index is not None else self.store

    def _query(self) -> tuple[str, list[Any]]:
        table = self.store.structure.table
        desc = self.direction.descending
        if self.index is None:
            clauses, params = range_clause("r.key", self.range)
            if self._ekey is not None:
                clauses.append(f"r.key {'<' if desc else '>'} ?")
                params.append(self._ekey)
            order = "r.key DESC" if desc else "r.key ASC"
            select = f"SELECT r.key, r.key, r.value FROM {table} AS r"
        else:
            clauses, params = range_clause("i.ikey", self.range)
            if self._ekey is not None:
                op = "<" if desc else ">"
                if self.direction.unique:
                    clauses.append(f"i.ikey {op} ?")
                    params.append(self._ekey)
                else:
                    clauses.append(f"(i.ikey {op} ? OR (i.ikey = ? AND i.pkey {op} ?))")
                    params.extend([self._ekey, self._ekey, self._epkey])
            if self.direction is Direction.PREV_UNIQUE:
                order = "i.ikey DESC, i.pkey ASC"
            elif desc:
                order = "i.ikey DESC, i.pkey DESC"
            else:
                order = "i.ikey ASC, i.pkey ASC"
            select = (
                f"SELECT i.ikey, i.pkey, r.value FROM {self.index.structure.table} AS i "
                f"JOIN {table} AS r ON r.key = i.pkey"
            )
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return f"{select}{where} ORDER BY {order} LIMIT 1", params

    async def advance(self) -> bool:
        """Move to the next entry. Returns False once the cursor is exhausted."""
        if self._done:
            return False
        self.store.transaction._ensure_active()
        sql, params = self._query()
        async with self.store._db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        if row is None:
            self._done = True
            self.key = self.primary_key = self.value = None
            return False
        self._ekey, self._epkey, payload = row
        self.key = decode_key(self._ekey)
        self.primary_key = decode_key(self._epkey)
        self.value = loads_value(payload)
        return True

    def _ensure_positioned(self) -> None:
        if self._done or self._epkey is None:
            raise EngineError("Cursor is not positioned on a record", name="InvalidStateError")

    async def update(self, value: Any) -> Any:
        """Replace the record under the cursor, keeping its primary key."""
        self.store.transaction._ensure_active(write=True)
        self._ensure_positioned()
        if not isinstance(value, dict):
            raise EngineError("Records must be objects", name="DataError")
        key_path = self.store.key_path
        if key_path is not None and resolve_nested_path(value, key_path) != self.primary_key:
            raise EngineError(
                "The in-line key of a record cannot change through a cursor", name="DataError"
            )
        await self.store._write(self._epkey, dict(value), overwrite=True)
        self.value = dict(value)
        return self.primary_key

    async def delete(self) -> None:
        """Delete the record under the cursor."""
        self.store.transaction._ensure_active(write=True)
        self._ensure_positioned()
        await self.store._remove(self._epkey)
