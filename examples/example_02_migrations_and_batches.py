"""Example 02: Version Upgrades and Atomic Batches.

This example demonstrates:
- Batching tasks with db.transaction() so they commit or roll back together
- Aborting a batch with Database.interrupt()
- Bulk update and delete over a selection
- Re-opening at a higher version to add an index and drop a store
- Error handling with the stowage error hierarchy
"""

import asyncio
import logging
import os
import tempfile

from stowage import (
    AbortError,
    Database,
    DataType,
    DefinitionError,
    EngineError,
    Field,
    where,
)

ITEM_SCHEMA = {
    "sku": Field(DataType.STRING, key=True),
    "name": DataType.STRING,
    "price": DataType.NUMBER,
    "stock": DataType.NUMBER,
}


async def version_1(path):
    db = Database(path, 1)
    items = db.model("items", ITEM_SCHEMA)
    db.model("scratch", {"v": DataType.ANY}, auto_increment=True)

    async with db:
        await db.transaction(
            [
                items.task.add({"sku": "A1", "name": "Anvil", "price": 120, "stock": 3}),
                items.task.add({"sku": "B2", "name": "Bucket", "price": 8.5, "stock": 40}),
                items.task.add({"sku": "C3", "name": "Chisel", "price": 15, "stock": 0}),
            ]
        )
        print(f"✓ Batch committed: {await items.count()} items")

        # A failing task rolls back every task in the batch.
        try:
            await db.transaction(
                [
                    items.task.add({"sku": "D4", "name": "Drill", "price": 90, "stock": 5}),
                    items.task.add({"sku": "A1", "name": "Duplicate", "price": 1, "stock": 1}),
                ]
            )
        except EngineError as e:
            print(f"✓ Batch rolled back ({e.name}); still {await items.count()} items")

        try:
            await db.transaction([items.task.clear(), Database.interrupt()])
        except AbortError:
            print(f"✓ Interrupted batch; still {await items.count()} items")

        await items.find(where("stock") == 0).delete()
        await items.find(where("price") > 100).update({"stock": 2})
        print(f"✓ Bulk edits applied: {await items.query().get()}")


async def version_2(path):
    db = Database(path, 2)
    # "scratch" is no longer declared, so the upgrade deletes it.
    schema = dict(ITEM_SCHEMA, price=Field(DataType.NUMBER, index=True))
    items = db.model("items", schema)

    async with db:
        plan = db.last_migration.plan
        print(f"\n✓ Upgraded to version 2 with {len(plan.edits)} edit(s):")
        for edit in plan.edits:
            print(f"  - {edit}")
        cheap = await items.query(index="price").get(limit=1)
        print(f"Cheapest item: {cheap[0]['name']}")


async def version_3_invalid(path):
    db = Database(path, 3)
    db.model("items", ITEM_SCHEMA, auto_increment=True)
    try:
        await db.open()
    except DefinitionError as e:
        print(f"\n✓ Upgrade refused, database left at version 2: {e}")


async def main():
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")
    path = os.path.join(tempfile.mkdtemp(), "inventory.db")
    await version_1(path)
    await version_2(path)
    await version_3_invalid(path)


if __name__ == "__main__":
    asyncio.run(main())
