"""Example 01: Basic Usage - Stowage Fundamentals.

This example demonstrates the fundamental operations:
- Declaring stores with DataType tags and Field(key=, index=, unique=)
- Opening a versioned database
- add/get/put/delete/count on a Box
- Range queries over the primary key and over an index
- Predicate filtering with where()
"""

import asyncio
import os
import tempfile

from stowage import Database, DataType, Field, KeyRange, Order, where


async def main():
    """Run the basic usage example."""
    print("=" * 80)
    print("STOWAGE BASIC USAGE EXAMPLE")
    print("=" * 80)

    path = os.path.join(tempfile.mkdtemp(), "basic.db")

    # Step 1: Declare stores before opening.
    db = Database(path, 1)
    people = db.model(
        "people",
        {
            "email": Field(DataType.STRING, key=True),
            "name": Field(DataType.STRING, index=True),
            "age": Field(DataType.NUMBER, index=True),
            "city": DataType.STRING,
        },
    )
    notes = db.model("notes", {"text": DataType.STRING}, auto_increment=True)

    # Step 2: Open. A new file is created at version 1 with both stores.
    async with db:
        print(f"\n✓ Opened {db.name} at version {db.version}: {db.model_names()}")

        await people.add({"email": "ann@x", "name": "Ann", "age": 34, "city": "Oslo"})
        await people.add({"email": "bob@x", "name": "Bob", "age": 27, "city": None})
        await people.add({"email": "cy@x", "name": "Cy", "age": 41, "city": "Rome"})
        key = await notes.add({"text": "generated key"})
        print(f"✓ Added 3 people and a note with key {key}")

        print(f"\nGet 'ann@x': {await people.get('ann@x')}")

        await people.put({"email": "bob@x", "name": "Bob", "age": 28})
        print(f"Put replaced 'bob@x': {await people.get('bob@x')}")

        # Step 3: Range queries.
        adults = await people.query(KeyRange.lower_bound(30), index="age").get()
        print(f"\nAge >= 30 via index: {[p['name'] for p in adults]}")

        oldest = await people.query(index="age").get(Order.DESC, limit=1)
        print(f"Oldest: {oldest[0]['name']}")

        # Step 4: Predicates run in memory over a scan.
        o_cities = await people.find(where("city").startswith("O")).get()
        print(f"City starts with 'O': {[p['name'] for p in o_cities]}")

        await people.delete("cy@x")
        print(f"\n✓ Deleted 'cy@x'; {await people.count()} people left")


if __name__ == "__main__":
    asyncio.run(main())
