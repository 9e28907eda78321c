"""Stowage: typed, transactional object stores with versioned migrations."""

__version__ = "0.1.0"

from stowage.config import StowageConfig
from stowage.database import Box, Database
from stowage.errors import (
    AbortError,
    ConcurrencyError,
    DefinitionError,
    EngineError,
    StowageError,
    ValidationError,
)
from stowage.filters import where
from stowage.keys import KeyRange
from stowage.migration import MigrationPlan, MigrationResult
from stowage.task import Order, Selection, Task, TaskKind
from stowage.types import DataType, Field

__all__ = [
    "__version__",
    "Database",
    "Box",
    "Selection",
    "DataType",
    "Field",
    "KeyRange",
    "Order",
    "Task",
    "TaskKind",
    "where",
    "StowageConfig",
    "MigrationPlan",
    "MigrationResult",
    "StowageError",
    "ValidationError",
    "DefinitionError",
    "ConcurrencyError",
    "EngineError",
    "AbortError",
]
