"""Structural catalog and value serialization for the SQLite engine.

Every store is a ``WITHOUT ROWID`` table keyed by the encoded primary key.
Every index is a table of ``(ikey, pkey)`` pairs, with ``ikey`` as the sole
primary key when the index is unique.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import aiosqlite

from stowage.errors import EngineError
from stowage.keys import KeyRange

STORES_TABLE = "__stowage_stores__"
INDEXES_TABLE = "__stowage_indexes__"

CATALOG_STATEMENTS = (
    f"""CREATE TABLE IF NOT EXISTS {STORES_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        key_path TEXT,
        auto_increment INTEGER NOT NULL DEFAULT 0,
        current_key INTEGER NOT NULL DEFAULT 0
    )""",
    f"""CREATE TABLE IF NOT EXISTS {INDEXES_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        store_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        key_path TEXT NOT NULL,
        is_unique INTEGER NOT NULL DEFAULT 0,
        UNIQUE (store_id, name)
    )""",
)


@dataclass(frozen=True)
class IndexStructure:
    """Live definition of one index."""

    name: str
    key_path: str
    unique: bool
    id: int = field(default=0, compare=False, repr=False)

    @property
    def table(self) -> str:
        return index_table(self.id)


@dataclass(frozen=True)
class StoreStructure:
    """Live definition of one store, as read from the catalog."""

    name: str
    key_path: str | None
    auto_increment: bool
    indexes: dict[str, IndexStructure] = field(default_factory=dict)
    id: int = field(default=0, compare=False, repr=False)

    @property
    def table(self) -> str:
        return store_table(self.id)


def store_table(store_id: int) -> str:
    return f"__stowage_store_{int(store_id)}"


def index_table(index_id: int) -> str:
    return f"__stowage_index_{int(index_id)}"


async def load_structures(db: aiosqlite.Connection) -> dict[str, StoreStructure]:
    """Read every store and index definition from the catalog."""
    async with db.execute(
        f"SELECT id, name, key_path, auto_increment FROM {STORES_TABLE} ORDER BY name"
    ) as cursor:
        store_rows = await cursor.fetchall()
    async with db.execute(
        f"SELECT id, store_id, name, key_path, is_unique FROM {INDEXES_TABLE} ORDER BY name"
    ) as cursor:
        index_rows = await cursor.fetchall()

    by_store: dict[int, dict[str, IndexStructure]] = {}
    for index_id, store_id, name, key_path, is_unique in index_rows:
        by_store.setdefault(store_id, {})[name] = IndexStructure(
            name=name, key_path=key_path, unique=bool(is_unique), id=index_id
        )

    return {
        name: StoreStructure(
            name=name,
            key_path=key_path,
            auto_increment=bool(auto_increment),
            indexes=by_store.get(store_id, {}),
            id=store_id,
        )
        for store_id, name, key_path, auto_increment in store_rows
    }


async def catalog_exists(db: aiosqlite.Connection) -> bool:
    async with db.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (STORES_TABLE,)
    ) as cursor:
        return await cursor.fetchone() is not None


# --- Value serialization ---


def _default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return {"$date": obj.isoformat()}
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {"$bytes": base64.b64encode(bytes(obj)).decode("ascii")}
    raise TypeError(f"Object of type {type(obj).__name__} cannot be stored")


def _escape(value: Any) -> Any:
    # User keys starting with "$" gain one more "$", so only tags use a single one.
    if isinstance(value, dict):
        return {
            ("$" + k if isinstance(k, str) and k.startswith("$") else k): _escape(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_escape(v) for v in value]
    return value


def _object_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1:
        if "$date" in obj:
            return datetime.fromisoformat(obj["$date"])
        if "$bytes" in obj:
            return base64.b64decode(obj["$bytes"])
    if any(k.startswith("$$") for k in obj):
        return {(k[1:] if k.startswith("$$") else k): v for k, v in obj.items()}
    return obj


def dumps_value(value: Any) -> str:
    try:
        return json.dumps(_escape(value), default=_default, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise EngineError(str(e), name="DataCloneError") from e


def loads_value(text: str) -> Any:
    return json.loads(text, object_hook=_object_hook)


def range_clause(column: str, key_range: KeyRange | None) -> tuple[list[str], list[Any]]:
    """SQL conditions selecting encoded keys inside ``key_range``."""
    if key_range is None:
        return [], []
    clauses: list[str] = []
    params: list[Any] = []
    lower, upper = key_range.encoded_bounds()
    if lower is not None:
        clauses.append(f"{column} {'>' if key_range.lower_open else '>='} ?")
        params.append(lower)
    if upper is not None:
        clauses.append(f"{column} {'<' if key_range.upper_open else '<='} ?")
        params.append(upper)
    return clauses, params
