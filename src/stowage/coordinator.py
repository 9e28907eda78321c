"""Executes task descriptors inside engine transactions."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from stowage.engine.connection import SQLiteConnection
from stowage.engine.cursor import Cursor, Direction
from stowage.engine.transaction import READONLY, READWRITE, ObjectStore, Transaction
from stowage.errors import AbortError, ConcurrencyError, EngineError, ValidationError
from stowage.filters import matches_all
from stowage.task import Task, TaskKind, TaskRange

logger = logging.getLogger(__name__)


_VALUE_KINDS = frozenset({TaskKind.ADD, TaskKind.PUT, TaskKind.BULK_UPDATE})
_KEY_KINDS = frozenset({TaskKind.GET, TaskKind.DELETE})


def _check_task(task: Any) -> Task:
    """Reject malformed task descriptors before they reach the engine."""
    if not isinstance(task, Task):
        raise ValidationError(f"Expected a Task, got {type(task).__name__}")
    if not isinstance(task.kind, TaskKind):
        raise ValidationError(f"Unknown task kind: {task.kind!r}")
    if task.kind is TaskKind.INTERRUPT:
        return task
    if not isinstance(task.store_name, str) or not task.store_name:
        raise ValidationError(f"{task.kind.value} task has no store name")
    if task.kind in _VALUE_KINDS and not isinstance(task.value, dict):
        raise ValidationError(
            f"{task.kind.value} task on '{task.store_name}' needs a dict value, "
            f"got {type(task.value).__name__}"
        )
    if task.kind in _KEY_KINDS and task.key is None:
        raise ValidationError(f"{task.kind.value} task on '{task.store_name}' needs a key")
    if task.range is not None and not isinstance(task.range, TaskRange):
        raise ValidationError(f"Task range must be a TaskRange, got {task.range!r}")
    if not isinstance(task.predicates, tuple) or not all(callable(p) for p in task.predicates):
        raise ValidationError(
            f"Task predicates on '{task.store_name}' must be a tuple of callables"
        )
    return task


@contextmanager
def _engine_errors() -> Iterator[None]:
    """Surface raw SQLite failures as EngineError."""
    try:
        yield
    except sqlite3.IntegrityError as e:
        raise EngineError(str(e), name="ConstraintError") from e
    except sqlite3.OperationalError as e:
        name = "TimeoutError" if "locked" in str(e) or "busy" in str(e) else "UnknownError"
        raise EngineError(str(e), name=name) from e
    except sqlite3.Error as e:
        raise EngineError(str(e)) from e


class TransactionCoordinator:
    """Runs single tasks and atomic batches against the open connection.

    ``connection`` is set by the owning ``Database`` on open and cleared on
    close; every call made while it is unset raises ConcurrencyError.
    """

    def __init__(self, connection: SQLiteConnection | None = None) -> None:
        self.connection = connection

    def _require_connection(self) -> SQLiteConnection:
        conn = self.connection
        if conn is None or conn.closed:
            raise ConcurrencyError("Database is not open")
        return conn

    async def run(self, task: Task) -> Any:
        """Execute one task in its own transaction and return its result."""
        _check_task(task)
        if task.kind is TaskKind.INTERRUPT:
            logger.debug("Interrupt outside a batch has no transaction to abort")
            return None
        conn = self._require_connection()
        mode = READONLY if task.read_only else READWRITE
        with _engine_errors():
            async with conn.transaction([task.store_name], mode) as tx:
                return await self._execute(tx, task)

    async def run_all(self, tasks: Iterable[Task]) -> None:
        """Execute ``tasks`` in order inside one read-write transaction.

        If any task fails the whole batch rolls back and the error is
        re-raised. An interrupt task aborts the batch with AbortError.
        """
        batch = list(tasks)
        for task in batch:
            _check_task(task)
        if not batch:
            return None

        store_names = sorted({t.store_name for t in batch if t.kind is not TaskKind.INTERRUPT})
        if not store_names:
            logger.warning("Batch of %d task(s) interrupted before it started", len(batch))
            raise AbortError("Transaction aborted by interrupt")

        conn = self._require_connection()
        with _engine_errors():
            async with conn.transaction(store_names, READWRITE) as tx:
                for position, task in enumerate(batch):
                    if task.kind is TaskKind.INTERRUPT:
                        logger.debug("Interrupt at position %d of batch", position)
                        tx.abort()
                        break
                    await self._execute(tx, task)
        logger.debug("Committed batch of %d task(s) over %s", len(batch), store_names)
        return None

    # --- Execution ---

    async def _execute(self, tx: Transaction, task: Task) -> Any:
        logger.debug("Executing %s on '%s'", task.kind.value, task.store_name)
        store = tx.object_store(task.store_name)
        kind = task.kind
        if kind is TaskKind.ADD:
            return await store.add(task.value, task.key)
        if kind is TaskKind.PUT:
            return await store.put(task.value, task.key)
        if kind is TaskKind.GET:
            return await store.get(task.key)
        if kind is TaskKind.DELETE:
            await store.delete(task.key)
            return None
        if kind is TaskKind.CLEAR:
            await store.clear()
            return None
        if kind is TaskKind.COUNT:
            return await store.count()
        if task.is_bulk:
            return await self._bulk(store, task)
        raise ValidationError(f"Unsupported task kind: {kind!r}")

    def _open_cursor(self, store: ObjectStore, task: Task) -> Cursor:
        direction = Direction(task.order.value)
        if task.range is None:
            return store.open_cursor(None, direction)
        if task.range.index is not None:
            return store.index(task.range.index).open_cursor(task.range.keys, direction)
        return store.open_cursor(task.range.keys, direction)

    async def _bulk(self, store: ObjectStore, task: Task) -> list[Any] | None:
        cursor = self._open_cursor(store, task)
        results: list[Any] = []
        visited = 0
        affected = 0
        while await cursor.advance():
            visited += 1
            record = cursor.value
            if not matches_all(task.predicates, record):
                continue
            affected += 1
            if task.kind is TaskKind.BULK_GET:
                results.append(record)
                if task.limit is not None and len(results) >= task.limit:
                    break
            elif task.kind is TaskKind.BULK_UPDATE:
                await cursor.update({**record, **task.value})
            else:
                await cursor.delete()
        logger.debug(
            "%s on '%s' visited %d record(s), matched %d",
            task.kind.value,
            store.name,
            visited,
            affected,
        )
        if task.kind is TaskKind.BULK_GET:
            return results
        return None
