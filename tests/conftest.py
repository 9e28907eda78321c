"""Shared test fixtures for Stowage tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from stowage import Database, DataType, Field

# --- Test schemas ---

USER_SCHEMA = {
    "id": Field(DataType.NUMBER, key=True),
    "name": Field(DataType.STRING, index=True),
    "age": Field(DataType.NUMBER, index=True),
    "email": Field(DataType.STRING, index=True, unique=True),
    "tags": DataType.ARRAY,
}

NOTE_SCHEMA = {
    "title": DataType.STRING,
    "body": DataType.STRING,
    "created_at": Field(DataType.DATE, index=True),
}


def user(id: int, name: str, age: int, email: str | None = None) -> dict:
    return {
        "id": id,
        "name": name,
        "age": age,
        "email": email if email is not None else f"{name.lower()}@example.com",
        "tags": [],
    }


# --- Fixtures ---


@pytest.fixture
def tmp_db(tmp_path):
    """Create a temporary SQLite database path."""
    return str(tmp_path / "test.db")


@pytest_asyncio.fixture
async def db(tmp_db):
    """An open version-1 database with ``users`` and ``notes`` stores."""
    database = Database(tmp_db, 1)
    database.model("users", USER_SCHEMA)
    database.model("notes", NOTE_SCHEMA, auto_increment=True)
    await database.open()
    yield database
    if database.is_ready:
        await database.close()


@pytest.fixture
def users(db):
    return db.box("users")


@pytest.fixture
def notes(db):
    return db.box("notes")
