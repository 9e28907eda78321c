"""SQLite-backed engine connections, the open-connection registry and events."""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

import aiosqlite

from stowage.config import StowageConfig
from stowage.engine.catalog import (
    CATALOG_STATEMENTS,
    StoreStructure,
    catalog_exists,
    load_structures,
)
from stowage.engine.transaction import READONLY, READWRITE, Transaction, UpgradeTransaction
from stowage.errors import AbortError, ConcurrencyError, EngineError

logger = logging.getLogger(__name__)

EVENT_TYPES = ("versionchange", "error", "abort", "close")

MEMORY = ":memory:"


@dataclass
class ConnectionEvent:
    """Payload delivered to connection listeners."""

    type: str
    connection: SQLiteConnection
    old_version: int | None = None
    new_version: int | None = None
    error: BaseException | None = None


Listener = Callable[[ConnectionEvent], Any]
UpgradeCallback = Callable[[UpgradeTransaction], Awaitable[Any]]

# Open connections per absolute database path. In-memory databases are private
# to their connection and never registered.
_open_connections: dict[str, list[SQLiteConnection]] = {}


def _registry_key(path: str) -> str | None:
    if path == MEMORY:
        return None
    return os.path.abspath(path)


class SQLiteConnection:
    """An open database connection.

    Transactions on one connection run one at a time. Listeners registered at
    open time receive ``versionchange``, ``error``, ``abort`` and ``close``
    events until the connection closes.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        path: str,
        listeners: dict[str, list[Listener]] | None = None,
    ) -> None:
        self._db = db
        self.path = path
        self.version = 0
        self.closed = False
        self._lock = asyncio.Lock()
        self._structures: dict[str, StoreStructure] = {}
        self._listeners: dict[str, list[Listener]] = {t: [] for t in EVENT_TYPES}
        for event_type, fns in (listeners or {}).items():
            for fn in fns:
                self.add_listener(event_type, fn)

    # --- Events ---

    def add_listener(self, event_type: str, listener: Listener) -> None:
        if event_type not in self._listeners:
            raise ValueError(f"Unknown connection event: {event_type!r}")
        self._listeners[event_type].append(listener)

    def remove_listener(self, event_type: str, listener: Listener) -> None:
        fns = self._listeners.get(event_type, [])
        if listener in fns:
            fns.remove(listener)

    async def dispatch(self, event: ConnectionEvent) -> None:
        for listener in list(self._listeners.get(event.type, [])):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener for '%s' event failed", event.type)

    # --- Structure ---

    @property
    def store_names(self) -> list[str]:
        return sorted(self._structures)

    def structure(self, name: str) -> StoreStructure | None:
        return self._structures.get(name)

    async def _refresh(self) -> None:
        if await catalog_exists(self._db):
            self._structures = await load_structures(self._db)
        else:
            self._structures = {}

    def _ensure_open(self) -> None:
        if self.closed:
            raise ConcurrencyError(f"Connection to '{self.path}' is closed")

    # --- Transactions ---

    @asynccontextmanager
    async def transaction(
        self, store_names: Iterable[str], mode: str = READONLY
    ) -> AsyncIterator[Transaction]:
        """Run a transaction over ``store_names``.

        Commits on clean exit. Rolls back and re-raises on error; rolls back
        and raises AbortError when the body called ``abort()``. The ``error``
        and ``abort`` events are dispatched after the lock is released, so
        listeners may start transactions of their own.
        """
        if mode not in (READONLY, READWRITE):
            raise ValueError(f"Invalid transaction mode: {mode!r}")
        events: list[ConnectionEvent] = []
        try:
            async with self._lock:
                self._ensure_open()
                scope: dict[str, StoreStructure] = {}
                for name in store_names:
                    structure = self._structures.get(name)
                    if structure is None:
                        raise EngineError(
                            f"Object store '{name}' does not exist", name="NotFoundError"
                        )
                    scope[name] = structure

                await self._db.execute("BEGIN" if mode == READONLY else "BEGIN IMMEDIATE")
                tx = Transaction(self._db, scope, mode)
                try:
                    yield tx
                except BaseException as e:
                    tx.finished = True
                    await self._db.execute("ROLLBACK")
                    logger.warning("Transaction over %s rolled back: %r", sorted(scope), e)
                    if isinstance(e, Exception):
                        events.append(ConnectionEvent("error", self, error=e))
                    events.append(ConnectionEvent("abort", self, error=e))
                    raise

                tx.finished = True
                if tx.aborted:
                    await self._db.execute("ROLLBACK")
                    logger.warning("Transaction over %s aborted", sorted(scope))
                    events.append(ConnectionEvent("abort", self))
                    raise AbortError()
                await self._db.execute("COMMIT")
        finally:
            for event in events:
                await self.dispatch(event)

    async def upgrade(
        self, old_version: int, new_version: int, on_upgrade: UpgradeCallback | None
    ) -> None:
        """Run the exclusive version-change transaction.

        The new version is written inside the same SQLite transaction, so a
        failing callback leaves both structure and version untouched.
        """
        async with self._lock:
            self._ensure_open()
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                for statement in CATALOG_STATEMENTS:
                    await self._db.execute(statement)
                if on_upgrade is not None:
                    await on_upgrade(UpgradeTransaction(self._db, old_version, new_version))
                await self._db.execute(f"PRAGMA user_version = {int(new_version)}")
            except BaseException as e:
                await self._db.execute("ROLLBACK")
                logger.warning(
                    "Upgrade of '%s' from version %d to %d rolled back: %r",
                    self.path,
                    old_version,
                    new_version,
                    e,
                )
                raise
            await self._db.execute("COMMIT")
            self.version = new_version
            await self._refresh()
            logger.info("Upgraded '%s' from version %d to %d", self.path, old_version, new_version)

    # --- Lifecycle ---

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        key = _registry_key(self.path)
        if key is not None:
            conns = _open_connections.get(key, [])
            if self in conns:
                conns.remove(self)
            if not conns:
                _open_connections.pop(key, None)
        await self._db.close()
        logger.debug("Closed connection to '%s'", self.path)
        await self.dispatch(ConnectionEvent("close", self))
        for fns in self._listeners.values():
            fns.clear()


class SQLiteEngine:
    """Opens and deletes databases stored as SQLite files."""

    def __init__(self, config: StowageConfig | None = None) -> None:
        self.config = config or StowageConfig()

    async def _connect(self, path: str) -> aiosqlite.Connection:
        db = await aiosqlite.connect(path, isolation_level=None)
        try:
            for pragma in self.config.pragmas():
                await db.execute(pragma)
        except BaseException:
            await db.close()
            raise
        return db

    async def open(
        self,
        path: str,
        version: int,
        *,
        on_upgrade: UpgradeCallback | None = None,
        listeners: dict[str, list[Listener]] | None = None,
    ) -> SQLiteConnection:
        """Open ``path`` at ``version``, upgrading first if it is newer.

        Raises EngineError(VersionError) when ``version`` is lower than the
        stored one, and ConcurrencyError when other connections to the same
        file stay open after receiving ``versionchange``.
        """
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise EngineError(
                f"Version must be a positive integer, got {version!r}", name="TypeError"
            )

        key = _registry_key(path)
        db = await self._connect(path)
        conn = SQLiteConnection(db, path, listeners)
        try:
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            current = int(row[0]) if row else 0
            if version < current:
                raise EngineError(
                    f"Requested version {version} is less than the existing version {current}",
                    name="VersionError",
                )

            if version > current:
                others = [c for c in _open_connections.get(key, []) if not c.closed] if key else []
                for other in others:
                    await other.dispatch(
                        ConnectionEvent("versionchange", other, current, version)
                    )
                if any(not c.closed for c in others):
                    logger.warning(
                        "Upgrade of '%s' to version %d blocked by an open connection", path, version
                    )
                    raise ConcurrencyError(
                        "Can not upgrade because the database is already opened"
                    )
                conn.version = current
                await conn.upgrade(current, version, on_upgrade)
            else:
                conn.version = current
                await conn._refresh()
        except BaseException:
            conn.closed = True
            await db.close()
            raise

        if key is not None:
            _open_connections.setdefault(key, []).append(conn)
        logger.debug("Opened '%s' at version %d", path, conn.version)
        return conn

    async def delete_database(self, path: str) -> None:
        """Delete the database file. Fails while connections to it are open."""
        key = _registry_key(path)
        if key is None:
            return
        if any(not c.closed for c in _open_connections.get(key, [])):
            raise ConcurrencyError(f"Cannot delete '{path}' while it is open")
        for suffix in ("", "-wal", "-shm", "-journal"):
            try:
                os.remove(key + suffix)
            except FileNotFoundError:
                continue
        logger.info("Deleted database '%s'", path)
