"""Configuration for the Stowage engine connection."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class StowageConfig:
    """Connection settings forwarded to the SQLite engine on open."""

    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"
    busy_timeout_ms: int = 5000
    foreign_keys: bool = False

    def pragmas(self) -> list[str]:
        return [
            f"PRAGMA journal_mode={self.journal_mode}",
            f"PRAGMA synchronous={self.synchronous}",
            f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}",
            f"PRAGMA foreign_keys={'ON' if self.foreign_keys else 'OFF'}",
        ]
