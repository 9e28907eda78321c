"""Database session and per-store Box handles."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Iterable, Mapping

from stowage.config import StowageConfig
from stowage.coordinator import TransactionCoordinator
from stowage.engine.connection import EVENT_TYPES, Listener, SQLiteConnection, SQLiteEngine
from stowage.engine.transaction import UpgradeTransaction
from stowage.errors import ConcurrencyError, DefinitionError, ValidationError
from stowage.filters import Predicate, check_predicates
from stowage.migration import MigrationReconciler, MigrationResult
from stowage.schema import ModelMeta, SchemaRegistry, build_meta
from stowage.task import Selection, Task, TaskFactory, interrupt

logger = logging.getLogger(__name__)


class Box:
    """Handle for one declared store.

    Every operation validates its payload immediately (raising
    ValidationError synchronously) and returns an awaitable that runs the
    task in its own transaction. Use ``box.task`` to build tasks for
    ``Database.transaction`` instead.
    """

    def __init__(self, database: Database, meta: ModelMeta) -> None:
        self._database = database
        self.meta = meta
        self.task = TaskFactory(meta)

    def __repr__(self) -> str:
        return f"Box({self.meta.name!r}, version={self.version})"

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def version(self) -> int:
        return self._database.version

    def record(self, initial: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return a record with every declared field, overlaid with ``initial``."""
        return self.meta.validator.record(initial)

    def _run(self, task: Task) -> Awaitable[Any]:
        return self._database._coordinator.run(task)

    def add(self, value: dict[str, Any], key: Any = None) -> Awaitable[Any]:
        return self._run(self.task.add(value, key))

    def get(self, key: Any) -> Awaitable[Any]:
        return self._run(self.task.get(key))

    def put(self, value: dict[str, Any], key: Any = None) -> Awaitable[Any]:
        return self._run(self.task.put(value, key))

    def delete(self, key: Any) -> Awaitable[None]:
        return self._run(self.task.delete(key))

    def clear(self) -> Awaitable[None]:
        return self._run(self.task.clear())

    def count(self) -> Awaitable[int]:
        return self._run(self.task.count())

    def query(self, keys: Any = None, index: str | None = None) -> Selection:
        """Select records by primary-key range, or by range over ``index``."""
        return Selection(self.task, self._run, self.task.range(keys, index))

    def find(self, *predicates: Predicate) -> Selection:
        """Select records matching every predicate."""
        return Selection(self.task, self._run, None, check_predicates(predicates))


class Database:
    """A versioned database of declared stores.

    Declare every store with ``model()`` before ``open()``. Opening at a
    version newer than the stored one reconciles the stores with the
    declarations inside the upgrade transaction.

    Example::

        db = Database("app.db", 1)
        users = db.model("users", {"id": Field(DataType.NUMBER, key=True), "name": DataType.STRING})
        await db.open()
        await users.add({"id": 1, "name": "a"})
    """

    def __init__(
        self,
        path: str,
        version: int,
        config: StowageConfig | None = None,
        *,
        engine: SQLiteEngine | None = None,
    ) -> None:
        if not isinstance(path, str) or not path:
            raise ValidationError("Database path must be a non-empty string")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ValidationError(f"Database version must be a positive integer, got {version!r}")
        self._path = path
        self._version = version
        self.config = config or StowageConfig()
        self._engine = engine or SQLiteEngine(self.config)
        self._registry = SchemaRegistry()
        self._reconciler = MigrationReconciler()
        self._coordinator = TransactionCoordinator()
        self._connection: SQLiteConnection | None = None
        self._listeners: dict[str, list[Listener]] = {t: [] for t in EVENT_TYPES}
        self.last_migration: MigrationResult | None = None

    def __repr__(self) -> str:
        return f"Database({self._path!r}, version={self._version}, ready={self.is_ready})"

    async def __aenter__(self) -> Database:
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self.is_ready:
            await self.close()

    @property
    def name(self) -> str:
        return self._path

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_ready(self) -> bool:
        return self._connection is not None and not self._connection.closed

    # --- Declaration ---

    def model(
        self,
        name: str,
        schema: Mapping[str, Any],
        *,
        auto_increment: bool = False,
        force: bool = False,
    ) -> Box:
        """Declare a store for this database version and return its Box."""
        if self.is_ready:
            raise DefinitionError("Cannot define model after database opened")
        meta = build_meta(name, schema, auto_increment=auto_increment, force=force)
        self._registry.register(self._version, meta)
        return Box(self, meta)

    def model_names(self) -> list[str]:
        return self._registry.names(self._version)

    def box(self, name: str) -> Box:
        """Return the Box of a store declared with ``model()``."""
        meta = self._registry.get(self._version, name)
        if meta is None:
            raise DefinitionError(f"{name} model is not defined on version {self._version}")
        return Box(self, meta)

    # --- Events ---

    def on(self, event: str, listener: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown database event: {event!r}")
        self._listeners[event].append(listener)
        if self.is_ready:
            self._connection.add_listener(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        fns = self._listeners.get(event, [])
        if listener in fns:
            fns.remove(listener)
        if self.is_ready:
            self._connection.remove_listener(event, listener)

    # --- Lifecycle ---

    async def _upgrade(self, tx: UpgradeTransaction) -> None:
        self.last_migration = await self._reconciler.reconcile(
            tx, self._registry.entries(self._version)
        )

    async def open(self) -> Database:
        """Connect, upgrading stores first when the version increased.

        Raises ConcurrencyError when already open or when another open
        connection blocks the upgrade; DefinitionError when the declared
        stores cannot be reconciled. A failed open leaves the database at its
        previous version.
        """
        if self.is_ready:
            raise ConcurrencyError(f"Database '{self._path}' is already open")
        self._connection = await self._engine.open(
            self._path,
            self._version,
            on_upgrade=self._upgrade,
            listeners={t: list(fns) for t, fns in self._listeners.items()},
        )
        self._coordinator.connection = self._connection
        logger.debug("Database '%s' ready at version %d", self._path, self._version)
        return self

    async def close(self) -> None:
        if not self.is_ready:
            raise ConcurrencyError(f"Database '{self._path}' is not open")
        conn = self._connection
        self._connection = None
        self._coordinator.connection = None
        await conn.close()
        for fns in self._listeners.values():
            fns.clear()

    async def delete(self) -> None:
        """Delete the database file. The database must be closed."""
        if self.is_ready:
            raise ConcurrencyError(f"Close '{self._path}' before deleting it")
        await self._engine.delete_database(self._path)

    # --- Tasks ---

    async def transaction(self, tasks: Iterable[Task]) -> None:
        """Run ``tasks`` atomically, in order, in one transaction."""
        await self._coordinator.run_all(tasks)

    @staticmethod
    def interrupt() -> Task:
        """Task that aborts the ``transaction()`` batch it appears in."""
        return interrupt()
