"""Transactions, object stores, indexes and the version-upgrade transaction."""

from __future__ import annotations

import logging
import math
import sqlite3
from typing import Any

import aiosqlite

from stowage.engine.catalog import (
    INDEXES_TABLE,
    STORES_TABLE,
    IndexStructure,
    StoreStructure,
    dumps_value,
    index_table,
    load_structures,
    loads_value,
    range_clause,
    store_table,
)
from stowage.engine.cursor import Cursor, Direction
from stowage.errors import AbortError, EngineError
from stowage.filters import resolve_nested_path
from stowage.keys import KeyRange, decode_key, encode_key, is_valid_key

logger = logging.getLogger(__name__)

READONLY = "readonly"
READWRITE = "readwrite"
VERSIONCHANGE = "versionchange"

_MAX_GENERATED_KEY = 2**53


def _where(clauses: list[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def _inject_key(value: dict[str, Any], key_path: str, key: Any) -> None:
    target = value
    segments = key_path.split(".")
    for segment in segments[:-1]:
        target = target.setdefault(segment, {})
        if not isinstance(target, dict):
            raise EngineError(f"Cannot assign generated key at '{key_path}'", name="DataError")
    target[segments[-1]] = key


class Transaction:
    """A transaction over a fixed set of stores.

    Created by ``SQLiteConnection.transaction``; commits when its context
    exits cleanly and rolls back on error or ``abort()``.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        scope: dict[str, StoreStructure],
        mode: str,
    ) -> None:
        self._db = db
        self._scope = scope
        self.mode = mode
        self.aborted = False
        self.finished = False

    @property
    def store_names(self) -> list[str]:
        return sorted(self._scope)

    def object_store(self, name: str) -> ObjectStore:
        self._ensure_active()
        structure = self._scope.get(name)
        if structure is None:
            raise EngineError(
                f"Object store '{name}' is not in the scope of this transaction",
                name="NotFoundError",
            )
        return ObjectStore(self, structure)

    def abort(self) -> None:
        self._ensure_active()
        logger.debug("Transaction over %s aborted", self.store_names)
        self.aborted = True

    def _ensure_active(self, write: bool = False) -> None:
        if self.aborted:
            raise AbortError("Transaction has been aborted")
        if self.finished:
            raise EngineError("Transaction has finished", name="TransactionInactiveError")
        if write and self.mode == READONLY:
            raise EngineError("Transaction is read-only", name="ReadOnlyError")


class ObjectStore:
    """Record primitives for one store inside a transaction."""

    def __init__(self, transaction: Transaction, structure: StoreStructure) -> None:
        self.transaction = transaction
        self.structure = structure
        self._db = transaction._db

    @property
    def name(self) -> str:
        return self.structure.name

    @property
    def key_path(self) -> str | None:
        return self.structure.key_path

    @property
    def auto_increment(self) -> bool:
        return self.structure.auto_increment

    @property
    def index_names(self) -> list[str]:
        return sorted(self.structure.indexes)

    def index(self, name: str) -> Index:
        structure = self.structure.indexes.get(name)
        if structure is None:
            raise EngineError(
                f"Index '{name}' does not exist on '{self.name}'", name="NotFoundError"
            )
        return Index(self, structure)

    # --- Writes ---

    async def add(self, value: Any, key: Any = None) -> Any:
        return await self._store(value, key, overwrite=False)

    async def put(self, value: Any, key: Any = None) -> Any:
        return await self._store(value, key, overwrite=True)

    async def _store(self, value: Any, key: Any, *, overwrite: bool) -> Any:
        self.transaction._ensure_active(write=True)
        if not isinstance(value, dict):
            raise EngineError("Records must be objects", name="DataError")
        value = dict(value)

        if self.key_path is not None:
            if key is not None:
                raise EngineError(
                    "An explicit key cannot be given for a store with an in-line key",
                    name="DataError",
                )
            inline = resolve_nested_path(value, self.key_path)
            if inline is None and self.auto_increment:
                key = await self._generate_key()
                _inject_key(value, self.key_path, key)
            elif not is_valid_key(inline):
                raise EngineError(
                    f"Evaluating key path '{self.key_path}' did not yield a valid key",
                    name="DataError",
                )
            else:
                key = inline
        elif key is None:
            if not self.auto_increment:
                raise EngineError(
                    "The store uses out-of-line keys and has no key generator; a key is required",
                    name="DataError",
                )
            key = await self._generate_key()
        elif not is_valid_key(key):
            raise EngineError(f"Invalid key: {key!r}", name="DataError")

        if self.auto_increment and isinstance(key, (int, float)):
            await self._bump_generator(key)
        await self._write(encode_key(key), value, overwrite=overwrite)
        return key

    async def _write(self, ekey: bytes, value: dict[str, Any], *, overwrite: bool) -> None:
        payload = dumps_value(value)
        if overwrite:
            await self._remove(ekey)
        try:
            await self._db.execute(
                f"INSERT INTO {self.structure.table} (key, value) VALUES (?, ?)", (ekey, payload)
            )
        except sqlite3.IntegrityError as e:
            raise EngineError(
                "Key already exists in the object store", name="ConstraintError"
            ) from e
        for index in self.structure.indexes.values():
            ikey = resolve_nested_path(value, index.key_path)
            if ikey is None or not is_valid_key(ikey):
                continue
            try:
                await self._db.execute(
                    f"INSERT INTO {index.table} (ikey, pkey) VALUES (?, ?)",
                    (encode_key(ikey), ekey),
                )
            except sqlite3.IntegrityError as e:
                raise EngineError(
                    f"Unable to add key to index '{index.name}': "
                    "at least one key does not satisfy the uniqueness requirements",
                    name="ConstraintError",
                ) from e

    async def _remove(self, ekey: bytes) -> None:
        for index in self.structure.indexes.values():
            await self._db.execute(f"DELETE FROM {index.table} WHERE pkey = ?", (ekey,))
        await self._db.execute(f"DELETE FROM {self.structure.table} WHERE key = ?", (ekey,))

    async def _generate_key(self) -> int:
        async with self._db.execute(
            f"SELECT current_key FROM {STORES_TABLE} WHERE id = ?", (self.structure.id,)
        ) as cursor:
            row = await cursor.fetchone()
        current = row[0] if row else 0
        if current >= _MAX_GENERATED_KEY:
            raise EngineError("Key generator exhausted", name="ConstraintError")
        key = current + 1
        await self._db.execute(
            f"UPDATE {STORES_TABLE} SET current_key = ? WHERE id = ?", (key, self.structure.id)
        )
        return key

    async def _bump_generator(self, key: int | float) -> None:
        if math.isinf(key):
            bumped = _MAX_GENERATED_KEY
        else:
            bumped = min(int(math.floor(key)), _MAX_GENERATED_KEY)
        await self._db.execute(
            f"UPDATE {STORES_TABLE} SET current_key = ? WHERE id = ? AND current_key < ?",
            (bumped, self.structure.id, bumped),
        )

    async def delete(self, key: Any) -> None:
        self.transaction._ensure_active(write=True)
        if isinstance(key, KeyRange):
            clauses, params = range_clause("key", key)
            subquery = f"SELECT key FROM {self.structure.table}{_where(clauses)}"
            for index in self.structure.indexes.values():
                await self._db.execute(
                    f"DELETE FROM {index.table} WHERE pkey IN ({subquery})", params
                )
            await self._db.execute(
                f"DELETE FROM {self.structure.table}{_where(clauses)}", params
            )
            return
        if not is_valid_key(key):
            raise EngineError(f"Invalid key: {key!r}", name="DataError")
        await self._remove(encode_key(key))

    async def clear(self) -> None:
        self.transaction._ensure_active(write=True)
        for index in self.structure.indexes.values():
            await self._db.execute(f"DELETE FROM {index.table}")
        await self._db.execute(f"DELETE FROM {self.structure.table}")

    # --- Reads ---

    async def get(self, key: Any) -> Any:
        self.transaction._ensure_active()
        if isinstance(key, KeyRange):
            clauses, params = range_clause("key", key)
        elif is_valid_key(key):
            clauses, params = ["key = ?"], [encode_key(key)]
        else:
            raise EngineError(f"Invalid key: {key!r}", name="DataError")
        async with self._db.execute(
            f"SELECT value FROM {self.structure.table}{_where(clauses)} ORDER BY key LIMIT 1",
            params,
        ) as cursor:
            row = await cursor.fetchone()
        return loads_value(row[0]) if row else None

    async def count(self, key_range: KeyRange | None = None) -> int:
        self.transaction._ensure_active()
        clauses, params = range_clause("key", key_range)
        async with self._db.execute(
            f"SELECT COUNT(*) FROM {self.structure.table}{_where(clauses)}", params
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    def open_cursor(
        self, key_range: KeyRange | None = None, direction: Direction | str = Direction.NEXT
    ) -> Cursor:
        self.transaction._ensure_active()
        return Cursor(self, None, key_range, Direction(direction))


class Index:
    """Read primitives over one index inside a transaction."""

    def __init__(self, store: ObjectStore, structure: IndexStructure) -> None:
        self.object_store = store
        self.structure = structure
        self._db = store._db

    @property
    def name(self) -> str:
        return self.structure.name

    @property
    def key_path(self) -> str:
        return self.structure.key_path

    @property
    def unique(self) -> bool:
        return self.structure.unique

    def _clauses(self, key: Any) -> tuple[list[str], list[Any]]:
        if key is None or isinstance(key, KeyRange):
            return range_clause("i.ikey", key)
        if not is_valid_key(key):
            raise EngineError(f"Invalid key: {key!r}", name="DataError")
        return ["i.ikey = ?"], [encode_key(key)]

    async def get(self, key: Any) -> Any:
        self.object_store.transaction._ensure_active()
        clauses, params = self._clauses(key)
        async with self._db.execute(
            f"SELECT r.value FROM {self.structure.table} AS i "
            f"JOIN {self.object_store.structure.table} AS r ON r.key = i.pkey"
            f"{_where(clauses)} ORDER BY i.ikey, i.pkey LIMIT 1",
            params,
        ) as cursor:
            row = await cursor.fetchone()
        return loads_value(row[0]) if row else None

    async def get_key(self, key: Any) -> Any:
        self.object_store.transaction._ensure_active()
        clauses, params = self._clauses(key)
        async with self._db.execute(
            f"SELECT i.pkey FROM {self.structure.table} AS i"
            f"{_where(clauses)} ORDER BY i.ikey, i.pkey LIMIT 1",
            params,
        ) as cursor:
            row = await cursor.fetchone()
        return decode_key(row[0]) if row else None

    async def count(self, key_range: KeyRange | None = None) -> int:
        self.object_store.transaction._ensure_active()
        clauses, params = self._clauses(key_range)
        async with self._db.execute(
            f"SELECT COUNT(*) FROM {self.structure.table} AS i{_where(clauses)}", params
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    def open_cursor(
        self, key_range: KeyRange | None = None, direction: Direction | str = Direction.NEXT
    ) -> Cursor:
        self.object_store.transaction._ensure_active()
        return Cursor(self.object_store, self, key_range, Direction(direction))


class UpgradeTransaction:
    """The exclusive version-change transaction.

    Structural edits are only possible here. The connection commits the
    transaction (and the new version) only if the upgrade callback returns
    without raising.
    """

    def __init__(self, db: aiosqlite.Connection, old_version: int, new_version: int) -> None:
        self._db = db
        self.old_version = old_version
        self.new_version = new_version
        self.mode = VERSIONCHANGE

    async def snapshot(self) -> dict[str, StoreStructure]:
        return await load_structures(self._db)

    async def _structure(self, name: str) -> StoreStructure:
        structure = (await self.snapshot()).get(name)
        if structure is None:
            raise EngineError(f"Object store '{name}' does not exist", name="NotFoundError")
        return structure

    async def create_store(
        self, name: str, key_path: str | None = None, auto_increment: bool = False
    ) -> StoreStructure:
        if name in await self.snapshot():
            raise EngineError(f"Object store '{name}' already exists", name="ConstraintError")
        async with self._db.execute(
            f"INSERT INTO {STORES_TABLE} (name, key_path, auto_increment) VALUES (?, ?, ?)",
            (name, key_path, int(bool(auto_increment))),
        ) as cursor:
            store_id = cursor.lastrowid
        await self._db.execute(
            f"CREATE TABLE {store_table(store_id)} ("
            "key BLOB PRIMARY KEY NOT NULL, value TEXT NOT NULL) WITHOUT ROWID"
        )
        logger.debug("Created object store '%s' (table %s)", name, store_table(store_id))
        return await self._structure(name)

    async def delete_store(self, name: str) -> None:
        structure = await self._structure(name)
        for index in structure.indexes.values():
            await self._db.execute(f"DROP TABLE IF EXISTS {index.table}")
        await self._db.execute(f"DROP TABLE IF EXISTS {structure.table}")
        await self._db.execute(f"DELETE FROM {INDEXES_TABLE} WHERE store_id = ?", (structure.id,))
        await self._db.execute(f"DELETE FROM {STORES_TABLE} WHERE id = ?", (structure.id,))
        logger.debug("Deleted object store '%s'", name)

    async def create_index(
        self, store_name: str, name: str, key_path: str, unique: bool = False
    ) -> IndexStructure:
        structure = await self._structure(store_name)
        if name in structure.indexes:
            raise EngineError(
                f"Index '{name}' already exists on '{store_name}'", name="ConstraintError"
            )
        async with self._db.execute(
            f"INSERT INTO {INDEXES_TABLE} (store_id, name, key_path, is_unique) VALUES (?, ?, ?, ?)",
            (structure.id, name, key_path, int(bool(unique))),
        ) as cursor:
            index_id = cursor.lastrowid
        table = index_table(index_id)
        if unique:
            await self._db.execute(
                f"CREATE TABLE {table} ("
                "ikey BLOB PRIMARY KEY NOT NULL, pkey BLOB NOT NULL) WITHOUT ROWID"
            )
        else:
            await self._db.execute(
                f"CREATE TABLE {table} ("
                "ikey BLOB NOT NULL, pkey BLOB NOT NULL, PRIMARY KEY (ikey, pkey)) WITHOUT ROWID"
            )
        await self._db.execute(f"CREATE INDEX {table}_pkey ON {table} (pkey)")

        async with self._db.execute(f"SELECT key, value FROM {structure.table}") as cursor:
            rows = await cursor.fetchall()
        for ekey, payload in rows:
            ikey = resolve_nested_path(loads_value(payload), key_path)
            if ikey is None or not is_valid_key(ikey):
                continue
            try:
                await self._db.execute(
                    f"INSERT INTO {table} (ikey, pkey) VALUES (?, ?)", (encode_key(ikey), ekey)
                )
            except sqlite3.IntegrityError as e:
                raise EngineError(
                    f"Unable to create unique index '{name}' on '{store_name}': duplicate keys",
                    name="ConstraintError",
                ) from e
        logger.debug("Created index '%s' on '%s' (%d records)", name, store_name, len(rows))
        return IndexStructure(name=name, key_path=key_path, unique=bool(unique), id=index_id)

    async def delete_index(self, store_name: str, name: str) -> None:
        structure = await self._structure(store_name)
        index = structure.indexes.get(name)
        if index is None:
            raise EngineError(
                f"Index '{name}' does not exist on '{store_name}'", name="NotFoundError"
            )
        await self._db.execute(f"DROP TABLE IF EXISTS {index.table}")
        await self._db.execute(f"DELETE FROM {INDEXES_TABLE} WHERE id = ?", (index.id,))
        logger.debug("Deleted index '%s' on '%s'", name, store_name)
