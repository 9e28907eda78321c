"""Tests for the SQLite engine adapter: stores, indexes, cursors and upgrades."""

from __future__ import annotations

import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from stowage.engine import READONLY, READWRITE, Direction, SQLiteEngine
from stowage.errors import AbortError, ConcurrencyError, EngineError
from stowage.keys import KeyRange


async def _schema_v1(tx):
    await tx.create_store("people", key_path="id")
    await tx.create_index("people", "age", "age")
    await tx.create_index("people", "email", "email", unique=True)
    await tx.create_store("blobs", auto_increment=True)


@pytest_asyncio.fixture
async def conn(tmp_db):
    connection = await SQLiteEngine().open(tmp_db, 1, on_upgrade=_schema_v1)
    yield connection
    await connection.close()


async def _seed(conn, *records):
    async with conn.transaction(["people"], READWRITE) as tx:
        store = tx.object_store("people")
        for record in records:
            await store.add(record)


PEOPLE = [
    {"id": 1, "name": "a", "age": 30, "email": "a@x"},
    {"id": 2, "name": "b", "age": 20, "email": "b@x"},
    {"id": 3, "name": "c", "age": 30, "email": "c@x"},
    {"id": 4, "name": "d", "age": 10},
]


class TestOpen:
    @pytest.mark.asyncio
    async def test_new_database_runs_upgrade(self, conn):
        assert conn.version == 1
        assert conn.store_names == ["blobs", "people"]
        assert sorted(conn.structure("people").indexes) == ["age", "email"]

    @pytest.mark.asyncio
    async def test_same_version_skips_upgrade(self, tmp_db):
        conn = await SQLiteEngine().open(tmp_db, 1, on_upgrade=_schema_v1)
        await conn.close()

        async def fail(tx):
            raise AssertionError("upgrade must not run")

        conn = await SQLiteEngine().open(tmp_db, 1, on_upgrade=fail)
        assert conn.store_names == ["blobs", "people"]
        await conn.close()

    @pytest.mark.asyncio
    async def test_lower_version_rejected(self, tmp_db):
        conn = await SQLiteEngine().open(tmp_db, 2, on_upgrade=_schema_v1)
        await conn.close()
        with pytest.raises(EngineError) as exc:
            await SQLiteEngine().open(tmp_db, 1)
        assert exc.value.name == "VersionError"

    @pytest.mark.asyncio
    async def test_failed_upgrade_keeps_previous_version(self, tmp_db):
        conn = await SQLiteEngine().open(tmp_db, 1, on_upgrade=_schema_v1)
        await conn.close()

        async def broken(tx):
            await tx.delete_store("people")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await SQLiteEngine().open(tmp_db, 2, on_upgrade=broken)

        conn = await SQLiteEngine().open(tmp_db, 1)
        assert conn.version == 1
        assert "people" in conn.store_names
        await conn.close()

    @pytest.mark.asyncio
    async def test_blocked_upgrade(self, conn, tmp_db):
        seen = []
        conn.add_listener("versionchange", lambda e: seen.append((e.old_version, e.new_version)))
        with pytest.raises(ConcurrencyError):
            await SQLiteEngine().open(tmp_db, 2)
        assert seen == [(1, 2)]
        assert conn.version == 1

    @pytest.mark.asyncio
    async def test_versionchange_listener_can_unblock(self, conn, tmp_db):
        async def close_on_change(event):
            await event.connection.close()

        conn.add_listener("versionchange", close_on_change)
        newer = await SQLiteEngine().open(tmp_db, 2)
        assert newer.version == 2
        assert conn.closed
        await newer.close()

    @pytest.mark.asyncio
    async def test_delete_database(self, tmp_db):
        engine = SQLiteEngine()
        conn = await engine.open(tmp_db, 1, on_upgrade=_schema_v1)
        with pytest.raises(ConcurrencyError):
            await engine.delete_database(tmp_db)
        await conn.close()
        await engine.delete_database(tmp_db)
        assert not os.path.exists(tmp_db)


class TestObjectStore:
    @pytest.mark.asyncio
    async def test_add_get(self, conn):
        await _seed(conn, PEOPLE[0])
        async with conn.transaction(["people"]) as tx:
            assert await tx.object_store("people").get(1) == PEOPLE[0]
            assert await tx.object_store("people").get(99) is None

    @pytest.mark.asyncio
    async def test_add_duplicate_key(self, conn):
        await _seed(conn, PEOPLE[0])
        with pytest.raises(EngineError) as exc:
            await _seed(conn, PEOPLE[0])
        assert exc.value.name == "ConstraintError"

    @pytest.mark.asyncio
    async def test_put_replaces_and_reindexes(self, conn):
        await _seed(conn, PEOPLE[0])
        async with conn.transaction(["people"], READWRITE) as tx:
            await tx.object_store("people").put({"id": 1, "age": 99, "email": "a@x"})
        async with conn.transaction(["people"]) as tx:
            index = tx.object_store("people").index("age")
            assert await index.count(KeyRange.only(30)) == 0
            assert (await index.get(99))["id"] == 1

    @pytest.mark.asyncio
    async def test_unique_index_violation(self, conn):
        await _seed(conn, PEOPLE[0])
        with pytest.raises(EngineError) as exc:
            await _seed(conn, {"id": 9, "email": "a@x"})
        assert exc.value.name == "ConstraintError"

    @pytest.mark.asyncio
    async def test_missing_index_value_not_indexed(self, conn):
        await _seed(conn, *PEOPLE)
        async with conn.transaction(["people"]) as tx:
            assert await tx.object_store("people").index("email").count() == 3

    @pytest.mark.asyncio
    async def test_inline_key_must_be_valid(self, conn):
        with pytest.raises(EngineError) as exc:
            await _seed(conn, {"name": "no id"})
        assert exc.value.name == "DataError"

    @pytest.mark.asyncio
    async def test_generated_keys(self, conn):
        async with conn.transaction(["blobs"], READWRITE) as tx:
            store = tx.object_store("blobs")
            assert await store.add({"v": 1}) == 1
            assert await store.add({"v": 2}) == 2
            assert await store.put({"v": 3}, 10) == 10
            assert await store.add({"v": 4}) == 11
            assert await store.add({"v": 5}, "name") == "name"
            assert await store.add({"v": 6}) == 12

    @pytest.mark.asyncio
    async def test_delete_count_clear(self, conn):
        await _seed(conn, *PEOPLE)
        async with conn.transaction(["people"], READWRITE) as tx:
            store = tx.object_store("people")
            await store.delete(1)
            assert await store.count() == 3
            await store.delete(KeyRange.bound(2, 3))
            assert await store.count() == 1
            assert await store.index("age").count() == 1
            await store.clear()
            assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_values_round_trip_dates_and_bytes(self, conn):
        when = datetime(2024, 3, 4, 5, 6, tzinfo=timezone.utc)
        async with conn.transaction(["blobs"], READWRITE) as tx:
            key = await tx.object_store("blobs").add({"at": when, "raw": b"\x00\x01"})
        async with conn.transaction(["blobs"]) as tx:
            assert await tx.object_store("blobs").get(key) == {"at": when, "raw": b"\x00\x01"}

    @pytest.mark.asyncio
    async def test_values_shaped_like_tags_round_trip(self, conn):
        value = {
            "meta": {"$date": "not a date"},
            "nested": [{"$bytes": "AAE="}, {"$$x": 1, "plain": 2}],
        }
        async with conn.transaction(["blobs"], READWRITE) as tx:
            key = await tx.object_store("blobs").add(value)
        async with conn.transaction(["blobs"]) as tx:
            assert await tx.object_store("blobs").get(key) == value

    @pytest.mark.asyncio
    async def test_unserializable_value(self, conn):
        with pytest.raises(EngineError) as exc:
            async with conn.transaction(["blobs"], READWRITE) as tx:
                await tx.object_store("blobs").add({"v": object()})
        assert exc.value.name == "DataCloneError"


class TestTransactions:
    @pytest.mark.asyncio
    async def test_readonly_rejects_writes(self, conn):
        with pytest.raises(EngineError) as exc:
            async with conn.transaction(["people"], READONLY) as tx:
                await tx.object_store("people").add(PEOPLE[0])
        assert exc.value.name == "ReadOnlyError"

    @pytest.mark.asyncio
    async def test_error_rolls_back(self, conn):
        with pytest.raises(RuntimeError):
            async with conn.transaction(["people"], READWRITE) as tx:
                await tx.object_store("people").add(PEOPLE[0])
                raise RuntimeError("boom")
        async with conn.transaction(["people"]) as tx:
            assert await tx.object_store("people").count() == 0

    @pytest.mark.asyncio
    async def test_abort_rolls_back(self, conn):
        events = []
        conn.add_listener("abort", lambda e: events.append(e.type))
        with pytest.raises(AbortError):
            async with conn.transaction(["people"], READWRITE) as tx:
                await tx.object_store("people").add(PEOPLE[0])
                tx.abort()
        async with conn.transaction(["people"]) as tx:
            assert await tx.object_store("people").count() == 0
        assert events == ["abort"]

    @pytest.mark.asyncio
    async def test_unknown_store(self, conn):
        with pytest.raises(EngineError) as exc:
            async with conn.transaction(["nope"]):
                pass
        assert exc.value.name == "NotFoundError"

    @pytest.mark.asyncio
    async def test_out_of_scope_store(self, conn):
        with pytest.raises(EngineError):
            async with conn.transaction(["people"]) as tx:
                tx.object_store("blobs")

    @pytest.mark.asyncio
    async def test_closed_connection(self, tmp_db):
        conn = await SQLiteEngine().open(tmp_db, 1, on_upgrade=_schema_v1)
        await conn.close()
        with pytest.raises(ConcurrencyError):
            async with conn.transaction(["people"]):
                pass


class TestCursors:
    async def _walk(self, cursor):
        seen = []
        while await cursor.advance():
            seen.append((cursor.key, cursor.primary_key))
        return seen

    @pytest.mark.asyncio
    async def test_store_cursor_directions(self, conn):
        await _seed(conn, *PEOPLE)
        async with conn.transaction(["people"]) as tx:
            store = tx.object_store("people")
            assert [k for k, _ in await self._walk(store.open_cursor())] == [1, 2, 3, 4]
            assert [k for k, _ in await self._walk(store.open_cursor(None, "prev"))] == [4, 3, 2, 1]
            ranged = store.open_cursor(KeyRange.bound(2, 4, upper_open=True))
            assert [k for k, _ in await self._walk(ranged)] == [2, 3]

    @pytest.mark.asyncio
    async def test_index_cursor_directions(self, conn):
        await _seed(conn, *PEOPLE)
        async with conn.transaction(["people"]) as tx:
            index = tx.object_store("people").index("age")
            assert await self._walk(index.open_cursor()) == [(10, 4), (20, 2), (30, 1), (30, 3)]
            assert await self._walk(index.open_cursor(None, Direction.NEXT_UNIQUE)) == [
                (10, 4),
                (20, 2),
                (30, 1),
            ]
            assert await self._walk(index.open_cursor(None, Direction.PREV)) == [
                (30, 3),
                (30, 1),
                (20, 2),
                (10, 4),
            ]
            assert await self._walk(index.open_cursor(None, Direction.PREV_UNIQUE)) == [
                (30, 1),
                (20, 2),
                (10, 4),
            ]
            ranged = index.open_cursor(KeyRange.lower_bound(20, open=True))
            assert await self._walk(ranged) == [(30, 1), (30, 3)]

    @pytest.mark.asyncio
    async def test_cursor_update_and_delete(self, conn):
        await _seed(conn, *PEOPLE)
        async with conn.transaction(["people"], READWRITE) as tx:
            cursor = tx.object_store("people").index("age").open_cursor(KeyRange.only(30))
            while await cursor.advance():
                if cursor.primary_key == 1:
                    await cursor.delete()
                else:
                    await cursor.update({**cursor.value, "age": 31})
        async with conn.transaction(["people"]) as tx:
            store = tx.object_store("people")
            assert await store.get(1) is None
            assert (await store.get(3))["age"] == 31
            assert await store.index("age").count(KeyRange.only(30)) == 0

    @pytest.mark.asyncio
    async def test_cursor_update_cannot_change_key(self, conn):
        await _seed(conn, PEOPLE[0])
        with pytest.raises(EngineError) as exc:
            async with conn.transaction(["people"], READWRITE) as tx:
                cursor = tx.object_store("people").open_cursor()
                await cursor.advance()
                await cursor.update({**cursor.value, "id": 2})
        assert exc.value.name == "DataError"

    @pytest.mark.asyncio
    async def test_exhausted_cursor(self, conn):
        async with conn.transaction(["people"]) as tx:
            cursor = tx.object_store("people").open_cursor()
            assert await cursor.advance() is False
            assert await cursor.advance() is False
            assert cursor.value is None


class TestUpgradeTransaction:
    @pytest.mark.asyncio
    async def test_create_index_backfills(self, tmp_db):
        conn = await SQLiteEngine().open(tmp_db, 1, on_upgrade=_schema_v1)
        await _seed(conn, *PEOPLE)
        await conn.close()

        async def add_name_index(tx):
            await tx.create_index("people", "name", "name")

        conn = await SQLiteEngine().open(tmp_db, 2, on_upgrade=add_name_index)
        async with conn.transaction(["people"]) as tx:
            assert await tx.object_store("people").index("name").count() == 4
        await conn.close()

    @pytest.mark.asyncio
    async def test_unique_backfill_violation(self, tmp_db):
        conn = await SQLiteEngine().open(tmp_db, 1, on_upgrade=_schema_v1)
        await _seed(conn, *PEOPLE)
        await conn.close()

        async def unique_age(tx):
            await tx.delete_index("people", "age")
            await tx.create_index("people", "age", "age", unique=True)

        with pytest.raises(EngineError) as exc:
            await SQLiteEngine().open(tmp_db, 2, on_upgrade=unique_age)
        assert exc.value.name == "ConstraintError"

        conn = await SQLiteEngine().open(tmp_db, 1)
        assert conn.structure("people").indexes["age"].unique is False
        await conn.close()

    @pytest.mark.asyncio
    async def test_duplicate_store(self, tmp_db):
        async def twice(tx):
            await tx.create_store("a")
            await tx.create_store("a")

        with pytest.raises(EngineError) as exc:
            await SQLiteEngine().open(tmp_db, 1, on_upgrade=twice)
        assert exc.value.name == "ConstraintError"

    @pytest.mark.asyncio
    async def test_snapshot(self, tmp_db):
        snapshots = []

        async def capture(tx):
            await tx.create_store("a", key_path="k", auto_increment=True)
            snapshots.append(await tx.snapshot())

        conn = await SQLiteEngine().open(tmp_db, 1, on_upgrade=capture)
        structure = snapshots[0]["a"]
        assert structure.key_path == "k"
        assert structure.auto_increment is True
        assert structure.indexes == {}
        await conn.close()
