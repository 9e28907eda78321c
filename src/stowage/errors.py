"""Structured error types for Stowage."""

from __future__ import annotations


class StowageError(Exception):
    """Base error for all Stowage errors."""


class ValidationError(StowageError):
    """Raised when a record, key or task payload fails shape/type checks.

    Always raised before the engine is touched.
    """

    def __init__(self, message: str, *, errors: list[dict] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class DefinitionError(StowageError):
    """Raised for schema declaration conflicts and illegal migration transitions."""


class ConcurrencyError(StowageError):
    """Raised when the database is not ready or an upgrade is blocked."""


class EngineError(StowageError):
    """Raised when the storage engine reports a failure.

    ``name`` mirrors the engine's error name (``ConstraintError``,
    ``DataError``, ``NotFoundError``, ``ReadOnlyError``, ``VersionError``, ...).
    """

    def __init__(self, message: str, *, name: str = "UnknownError") -> None:
        self.name = name
        super().__init__(message)


class AbortError(StowageError):
    """Raised when a transaction was aborted before it could commit."""

    def __init__(self, message: str = "Transaction aborted") -> None:
        super().__init__(message)
