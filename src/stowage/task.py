"""Task descriptors and the per-store task factory."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from stowage.errors import ValidationError
from stowage.filters import Predicate, check_predicates
from stowage.keys import KeyRange, is_valid_key, to_key_range
from stowage.schema import ModelMeta

__all__ = [
    "TaskKind",
    "Order",
    "TaskRange",
    "Task",
    "TaskFactory",
    "Selection",
    "interrupt",
]


class TaskKind(str, Enum):
    ADD = "add"
    GET = "get"
    PUT = "put"
    DELETE = "delete"
    CLEAR = "clear"
    COUNT = "count"
    BULK_GET = "bulk_get"
    BULK_UPDATE = "bulk_update"
    BULK_DELETE = "bulk_delete"
    INTERRUPT = "interrupt"


_READ_ONLY = frozenset({TaskKind.GET, TaskKind.COUNT, TaskKind.BULK_GET})
_BULK = frozenset({TaskKind.BULK_GET, TaskKind.BULK_UPDATE, TaskKind.BULK_DELETE})


class Order(str, Enum):
    """Cursor traversal direction. Unique variants skip duplicate index keys."""

    ASC = "next"
    ASC_UNIQUE = "nextunique"
    DESC = "prev"
    DESC_UNIQUE = "prevunique"


@dataclass(frozen=True)
class TaskRange:
    """Key range over the primary key (``index=None``) or a named index."""

    keys: KeyRange | None = None
    index: str | None = None


@dataclass(frozen=True)
class Task:
    """Immutable description of one storage operation."""

    kind: TaskKind
    store_name: str | None
    value: Any = None
    key: Any = None
    range: TaskRange | None = None
    predicates: tuple[Predicate, ...] = ()
    order: Order = Order.ASC
    limit: int | None = None

    @property
    def read_only(self) -> bool:
        return self.kind in _READ_ONLY

    @property
    def is_bulk(self) -> bool:
        return self.kind in _BULK


def interrupt() -> Task:
    """Task that aborts the batch transaction it runs in."""
    return Task(TaskKind.INTERRUPT, None)


def _coerce_order(order: Order | str) -> Order:
    try:
        return Order(order)
    except ValueError:
        raise ValidationError(f"Unknown cursor order: {order!r}")


def _check_limit(limit: int | None) -> int | None:
    if limit is None:
        return None
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValidationError(f"limit must be a positive integer, got {limit!r}")
    return limit


class TaskFactory:
    """Builds validated tasks for one store.

    Payload checks run here, before a task can reach the engine.
    """

    def __init__(self, meta: ModelMeta) -> None:
        self.meta = meta

    def _check_key(self, key: Any, value: dict[str, Any]) -> None:
        meta = self.meta
        if meta.key_path is not None:
            if key is not None:
                raise ValidationError(
                    f"'{meta.name}' uses in-line key '{meta.key_path}'; "
                    "an explicit key cannot be given"
                )
            inline = value.get(meta.key_path)
            if inline is None and meta.auto_increment:
                return
            if not is_valid_key(inline):
                raise ValidationError(
                    f"In-line key '{meta.key_path}' of '{meta.name}' is not a valid key: {inline!r}"
                )
            return
        if key is None:
            if not meta.auto_increment:
                raise ValidationError(
                    f"'{meta.name}' has no key generator; an explicit key is required"
                )
            return
        if not is_valid_key(key):
            raise ValidationError(f"Invalid key: {key!r}")

    def _lookup_key(self, key: Any) -> Any:
        if key is None:
            raise ValidationError(f"A key is required for '{self.meta.name}'")
        if isinstance(key, KeyRange):
            return key
        if not is_valid_key(key):
            raise ValidationError(f"Invalid key: {key!r}")
        return key

    def range(self, keys: Any = None, index: str | None = None) -> TaskRange | None:
        key_range = to_key_range(keys) if keys is not None else None
        if index is None or index == self.meta.key_path:
            return TaskRange(key_range) if key_range is not None else None
        if index not in self.meta.index_map():
            raise ValidationError(f"'{index}' is not an index of '{self.meta.name}'")
        return TaskRange(key_range, index)

    # --- Single-record tasks ---

    def add(self, value: dict[str, Any], key: Any = None) -> Task:
        self.meta.validator.validate(value)
        self._check_key(key, value)
        return Task(TaskKind.ADD, self.meta.name, value=value, key=key)

    def put(self, value: dict[str, Any], key: Any = None) -> Task:
        self.meta.validator.validate(value, partial=True)
        self._check_key(key, value)
        return Task(TaskKind.PUT, self.meta.name, value=value, key=key)

    def get(self, key: Any) -> Task:
        return Task(TaskKind.GET, self.meta.name, key=self._lookup_key(key))

    def delete(self, key: Any) -> Task:
        return Task(TaskKind.DELETE, self.meta.name, key=self._lookup_key(key))

    def clear(self) -> Task:
        return Task(TaskKind.CLEAR, self.meta.name)

    def count(self) -> Task:
        return Task(TaskKind.COUNT, self.meta.name)

    # --- Bulk tasks ---

    def bulk_get(
        self,
        range: TaskRange | None = None,
        predicates: tuple[Predicate, ...] = (),
        order: Order | str = Order.ASC,
        limit: int | None = None,
    ) -> Task:
        return Task(
            TaskKind.BULK_GET,
            self.meta.name,
            range=range,
            predicates=check_predicates(predicates),
            order=_coerce_order(order),
            limit=_check_limit(limit),
        )

    def bulk_update(
        self,
        value: dict[str, Any],
        range: TaskRange | None = None,
        predicates: tuple[Predicate, ...] = (),
    ) -> Task:
        self.meta.validator.validate(value, partial=True)
        if self.meta.key_path is not None and self.meta.key_path in value:
            raise ValidationError(
                f"Bulk update cannot change in-line key '{self.meta.key_path}' of '{self.meta.name}'"
            )
        return Task(
            TaskKind.BULK_UPDATE,
            self.meta.name,
            value=value,
            range=range,
            predicates=check_predicates(predicates),
        )

    def bulk_delete(
        self, range: TaskRange | None = None, predicates: tuple[Predicate, ...] = ()
    ) -> Task:
        return Task(
            TaskKind.BULK_DELETE,
            self.meta.name,
            range=range,
            predicates=check_predicates(predicates),
        )

    def query(self, keys: Any = None, index: str | None = None) -> Selection:
        return Selection(self, None, self.range(keys, index))

    def find(self, *predicates: Predicate) -> Selection:
        return Selection(self, None, None, check_predicates(predicates))


Executor = Callable[[Task], Awaitable[Any]]


class Selection:
    """A range and/or predicate selection over one store.

    With an executor, ``get``/``update``/``delete`` run immediately and
    return awaitables. Without one they return tasks for ``transaction()``.
    """

    def __init__(
        self,
        factory: TaskFactory,
        executor: Executor | None,
        range: TaskRange | None = None,
        predicates: tuple[Predicate, ...] = (),
    ) -> None:
        self._factory = factory
        self._executor = executor
        self.range = range
        self.predicates = predicates

    def where(self, *predicates: Predicate) -> Selection:
        return Selection(
            self._factory,
            self._executor,
            self.range,
            self.predicates + check_predicates(predicates),
        )

    def _emit(self, task: Task) -> Any:
        if self._executor is None:
            return task
        return self._executor(task)

    def get(self, order: Order | str = Order.ASC, limit: int | None = None) -> Any:
        return self._emit(self._factory.bulk_get(self.range, self.predicates, order, limit))

    def update(self, value: dict[str, Any]) -> Any:
        return self._emit(self._factory.bulk_update(value, self.range, self.predicates))

    def delete(self) -> Any:
        return self._emit(self._factory.bulk_delete(self.range, self.predicates))
