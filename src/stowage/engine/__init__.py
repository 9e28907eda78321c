"""SQLite engine adapter implementing versioned object stores."""

from stowage.engine.catalog import IndexStructure, StoreStructure
from stowage.engine.connection import (
    ConnectionEvent,
    SQLiteConnection,
    SQLiteEngine,
)
from stowage.engine.cursor import Cursor, Direction
from stowage.engine.transaction import (
    READONLY,
    READWRITE,
    VERSIONCHANGE,
    Index,
    ObjectStore,
    Transaction,
    UpgradeTransaction,
)

__all__ = [
    "READONLY",
    "READWRITE",
    "VERSIONCHANGE",
    "ConnectionEvent",
    "Cursor",
    "Direction",
    "Index",
    "IndexStructure",
    "ObjectStore",
    "SQLiteConnection",
    "SQLiteEngine",
    "StoreStructure",
    "Transaction",
    "UpgradeTransaction",
]
