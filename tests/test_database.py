"""End-to-end tests for Database, Box and batched transactions."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from stowage import (
    AbortError,
    ConcurrencyError,
    Database,
    DataType,
    DefinitionError,
    EngineError,
    Field,
    KeyRange,
    Order,
    Task,
    TaskKind,
    ValidationError,
    where,
)

from tests.conftest import USER_SCHEMA, user


async def _seed_ages(users, ages):
    await users._database.transaction(
        [users.task.add(user(i, f"u{i}", age)) for i, age in enumerate(ages, start=1)]
    )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_properties(self, db, tmp_db):
        assert db.is_ready
        assert db.name == tmp_db
        assert db.version == 1
        assert db.model_names() == ["users", "notes"]
        assert db.box("users").version == 1

    @pytest.mark.asyncio
    async def test_model_after_open_rejected(self, db):
        with pytest.raises(DefinitionError, match="after database opened"):
            db.model("late", {"v": DataType.ANY})

    def test_duplicate_model_rejected(self, tmp_db):
        database = Database(tmp_db, 1)
        database.model("users", USER_SCHEMA)
        with pytest.raises(DefinitionError):
            database.model("users", USER_SCHEMA)

    def test_invalid_version(self, tmp_db):
        with pytest.raises(ValidationError):
            Database(tmp_db, 0)

    @pytest.mark.asyncio
    async def test_operations_before_open(self, tmp_db):
        database = Database(tmp_db, 1)
        users = database.model("users", USER_SCHEMA)
        with pytest.raises(ConcurrencyError):
            await users.get(1)
        with pytest.raises(ConcurrencyError):
            await database.transaction([users.task.count()])

    @pytest.mark.asyncio
    async def test_close(self, db, users):
        await db.close()
        assert not db.is_ready
        with pytest.raises(ConcurrencyError):
            await users.count()
        with pytest.raises(ConcurrencyError):
            await db.close()

    @pytest.mark.asyncio
    async def test_open_twice(self, db):
        with pytest.raises(ConcurrencyError):
            await db.open()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, tmp_db):
        database = Database(tmp_db, 1)
        users = database.model("users", USER_SCHEMA)
        async with database:
            await users.add(user(1, "Ann", 30))
        assert not database.is_ready

    @pytest.mark.asyncio
    async def test_delete(self, tmp_db):
        database = Database(tmp_db, 1)
        users = database.model("users", USER_SCHEMA)
        async with database:
            await users.add(user(1, "Ann", 30))
        await database.delete()

        async with database:
            assert await users.count() == 0

    @pytest.mark.asyncio
    async def test_blocked_open(self, db, tmp_db):
        newer = Database(tmp_db, 2)
        newer.model("users", USER_SCHEMA)
        with pytest.raises(ConcurrencyError):
            await newer.open()
        assert not newer.is_ready
        assert db.is_ready
        assert db.last_migration.new_version == 1


class TestEvents:
    @pytest.mark.asyncio
    async def test_versionchange_and_close(self, db, tmp_db):
        seen = []

        async def on_change(event):
            seen.append(("versionchange", event.old_version, event.new_version))
            await db.close()

        db.on("versionchange", on_change)
        db.on("close", lambda event: seen.append(("close",)))

        newer = Database(tmp_db, 2)
        newer.model("users", USER_SCHEMA)
        await newer.open()
        assert seen == [("versionchange", 1, 2), ("close",)]
        assert newer.last_migration.stores_deleted == ["notes"]
        await newer.close()

    @pytest.mark.asyncio
    async def test_error_and_abort_events(self, db, users):
        seen = []
        db.on("error", lambda event: seen.append(("error", type(event.error).__name__)))
        db.on("abort", lambda event: seen.append(("abort",)))
        await users.add(user(1, "Ann", 30))
        with pytest.raises(EngineError):
            await users.add(user(1, "Ann", 30))
        assert seen == [("error", "EngineError"), ("abort",)]

    @pytest.mark.asyncio
    async def test_listeners_can_query(self, db, users):
        counts = []

        async def on_error(event):
            counts.append(("error", await users.count()))

        async def on_abort(event):
            counts.append(("abort", await users.count()))

        db.on("error", on_error)
        db.on("abort", on_abort)
        await users.add(user(1, "Ann", 30))
        with pytest.raises(EngineError):
            await asyncio.wait_for(users.add(user(1, "Ann", 30)), timeout=5)
        with pytest.raises(AbortError):
            await asyncio.wait_for(
                db.transaction([users.task.clear(), Database.interrupt()]), timeout=5
            )
        assert counts == [("error", 1), ("abort", 1), ("abort", 1)]

    @pytest.mark.asyncio
    async def test_off(self, db, users):
        seen = []
        listener = lambda event: seen.append(event.type)  # noqa: E731
        db.on("abort", listener)
        db.off("abort", listener)
        with pytest.raises(AbortError):
            await db.transaction([users.task.clear(), Database.interrupt()])
        assert seen == []

    def test_unknown_event(self, tmp_db):
        with pytest.raises(ValueError):
            Database(tmp_db, 1).on("commit", print)


class TestBox:
    @pytest.mark.asyncio
    async def test_add_then_get(self, tmp_db):
        database = Database(tmp_db, 1)
        kv = database.model("kv", {"name": DataType.STRING})
        async with database:
            assert await kv.add({"name": "a"}, key=1) == 1
            assert await kv.get(1) == {"name": "a"}

    @pytest.mark.asyncio
    async def test_put_upserts(self, users):
        await users.add(user(1, "Ann", 30))
        assert await users.put({"id": 1, "name": "Annie"}) == 1
        assert await users.get(1) == {"id": 1, "name": "Annie"}
        assert await users.count() == 1

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, users):
        await _seed_ages(users, [10, 20, 30])
        await users.delete(1)
        assert await users.get(1) is None
        await users.delete(KeyRange.lower_bound(3))
        assert await users.count() == 1
        await users.clear()
        assert await users.count() == 0

    @pytest.mark.asyncio
    async def test_validation_is_synchronous(self, users):
        with pytest.raises(ValidationError):
            users.add({"id": 1})
        with pytest.raises(ValidationError):
            users.put({"id": 1, "age": "old"})

    @pytest.mark.asyncio
    async def test_generated_keys(self, notes):
        when = datetime(2024, 1, 2, tzinfo=timezone.utc)
        first = await notes.add({"title": "a", "body": "x", "created_at": when})
        second = await notes.add({"title": "b", "body": "y", "created_at": None})
        assert (first, second) == (1, 2)
        assert (await notes.get(1))["created_at"] == when

    @pytest.mark.asyncio
    async def test_inline_auto_increment_key(self, tmp_db):
        database = Database(tmp_db, 1)
        seq = database.model(
            "seq", {"id": Field(DataType.NUMBER, key=True), "v": DataType.STRING}, auto_increment=True
        )
        async with database:
            assert await seq.add({"v": "a"}) == 1
            assert await seq.add({"id": 7, "v": "b"}) == 7
            assert await seq.add({"id": None, "v": "c"}) == 8
            assert await seq.get(8) == {"id": 8, "v": "c"}

    @pytest.mark.asyncio
    async def test_unique_constraint(self, users):
        await users.add(user(1, "Ann", 30, "dup@x"))
        with pytest.raises(EngineError) as exc:
            await users.add(user(2, "Bob", 31, "dup@x"))
        assert exc.value.name == "ConstraintError"

    @pytest.mark.asyncio
    async def test_record_factory(self, users):
        assert users.record() == {
            "id": None,
            "name": None,
            "age": None,
            "email": None,
            "tags": None,
        }
        assert users.record(user(1, "x", 20)) == user(1, "x", 20)

    @pytest.mark.asyncio
    async def test_record_factory_needs_complete_initial(self, users):
        with pytest.raises(ValidationError):
            users.record({"name": "x"})


class TestBulkOperations:
    @pytest.mark.asyncio
    async def test_ascending_limit(self, users):
        await _seed_ages(users, [50, 40, 30, 20, 10])
        records = await users.query().get(limit=3)
        assert [r["id"] for r in records] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_descending(self, users):
        await _seed_ages(users, [50, 40, 30])
        records = await users.query().get(Order.DESC)
        assert [r["id"] for r in records] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_index_range(self, users):
        await _seed_ages(users, [50, 40, 30, 20, 10])
        records = await users.query(KeyRange.bound(20, 40), index="age").get()
        assert [r["age"] for r in records] == [20, 30, 40]

    @pytest.mark.asyncio
    async def test_unique_order_skips_duplicates(self, users):
        await _seed_ages(users, [30, 10, 30])
        records = await users.query(index="age").get("nextunique")
        assert [(r["age"], r["id"]) for r in records] == [(10, 2), (30, 1)]

    @pytest.mark.asyncio
    async def test_predicate_bulk_delete(self, users):
        await _seed_ages(users, [10, 20, 30])
        await users.find(where("age") > 15).delete()
        remaining = await users.query().get()
        assert [r["age"] for r in remaining] == [10]

    @pytest.mark.asyncio
    async def test_predicate_with_range(self, users):
        await _seed_ages(users, [10, 20, 30, 40])
        records = await users.query(KeyRange.bound(2, 4)).where(lambda r: r["age"] != 30).get()
        assert [r["id"] for r in records] == [2, 4]

    @pytest.mark.asyncio
    async def test_limit_counts_matches_only(self, users):
        await _seed_ages(users, [10, 20, 30, 40])
        records = await users.find(where("age") > 15).get(limit=2)
        assert [r["age"] for r in records] == [20, 30]

    @pytest.mark.asyncio
    async def test_bulk_update_merges(self, users):
        await _seed_ages(users, [10, 20, 30])
        await users.find(where("age") >= 20).update({"name": "senior"})
        records = await users.query().get()
        assert [r["name"] for r in records] == ["u1", "senior", "senior"]
        assert [r["age"] for r in records] == [10, 20, 30]
        renamed = await users.query("senior", index="name").get()
        assert len(renamed) == 2

    @pytest.mark.asyncio
    async def test_bulk_update_on_index(self, users):
        await _seed_ages(users, [10, 20, 30])
        await users.query(KeyRange.upper_bound(20), index="age").update({"age": 99})
        ages = [r["age"] for r in await users.query().get()]
        assert ages == [99, 99, 30]


class TestBatches:
    @pytest.mark.asyncio
    async def test_batch_commits_in_order(self, db, users, notes):
        await db.transaction(
            [
                users.task.add(user(1, "Ann", 30)),
                users.task.put({"id": 1, "name": "Ann", "age": 31}),
                notes.task.add({"title": "t", "body": "b", "created_at": None}),
            ]
        )
        assert (await users.get(1))["age"] == 31
        assert await notes.count() == 1

    @pytest.mark.asyncio
    async def test_batch_atomicity(self, db, users, notes):
        await users.add(user(1, "Ann", 30))
        with pytest.raises(EngineError):
            await db.transaction(
                [
                    notes.task.add({"title": "t", "body": "b", "created_at": None}),
                    users.task.add(user(2, "Bob", 40)),
                    users.task.add(user(1, "Ann again", 30, "other@x")),
                ]
            )
        assert await users.count() == 1
        assert await notes.count() == 0

    @pytest.mark.asyncio
    async def test_bulk_tasks_in_batch(self, db, users):
        await _seed_ages(users, [10, 20, 30])
        await db.transaction(
            [
                users.task.find(where("age") < 15).delete(),
                users.task.query(KeyRange.lower_bound(2)).update({"name": "kept"}),
            ]
        )
        records = await users.query().get()
        assert [(r["id"], r["name"]) for r in records] == [(2, "kept"), (3, "kept")]

    @pytest.mark.asyncio
    async def test_interrupt_aborts_batch(self, db, users):
        with pytest.raises(AbortError):
            await db.transaction([users.task.add(user(1, "Ann", 30)), Database.interrupt()])
        assert await users.count() == 0

    @pytest.mark.asyncio
    async def test_interrupt_outside_batch(self, db):
        assert await db._coordinator.run(Database.interrupt()) is None

    @pytest.mark.asyncio
    async def test_empty_batch(self, db):
        assert await db.transaction([]) is None

    @pytest.mark.asyncio
    async def test_hand_built_tasks_checked(self, db, users):
        malformed = [
            Task(TaskKind.BULK_UPDATE, "users"),
            Task(TaskKind.GET, "users"),
            Task(TaskKind.DELETE, "users"),
            Task(TaskKind.PUT, "users", value=["not", "a", "dict"]),
            Task(TaskKind.COUNT, None),
            Task(TaskKind.BULK_GET, "users", predicates=("age > 1",)),
            Task(TaskKind.BULK_DELETE, "users", predicates=[lambda r: True]),
        ]
        for task in malformed:
            with pytest.raises(ValidationError):
                await db._coordinator.run(task)

    @pytest.mark.asyncio
    async def test_malformed_task_rejects_whole_batch(self, db, users):
        with pytest.raises(ValidationError):
            await db.transaction(
                [users.task.add(user(1, "Ann", 30)), Task(TaskKind.ADD, "users")]
            )
        assert await users.count() == 0

    @pytest.mark.asyncio
    async def test_non_task_rejected(self, db, users):
        with pytest.raises(ValidationError):
            await db.transaction([users.task.count(), "add"])
        assert await users.count() == 0
