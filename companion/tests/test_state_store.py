import pytest
import pytest_asyncio

from companion.db.session import Database, normalize_database_url
from companion.db.state_store import BOND, MEMORY, InMemoryStateStore, SQLStateStore


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request):
    if request.param == "memory":
        yield InMemoryStateStore()
        return
    database = Database("sqlite+aiosqlite:///:memory:", echo=False)
    await database.create_all()
    try:
        yield SQLStateStore(database)
    finally:
        await database.dispose()


def test_plain_sqlite_url_gets_async_driver():
    assert normalize_database_url("sqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"
    assert normalize_database_url("sqlite+aiosqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"


@pytest.mark.asyncio
async def test_put_bumps_version(any_store):
    assert await any_store.get(BOND, "s:h") is None
    assert await any_store.put(BOND, "s:h", {"trust": 0.1}) == 1
    assert await any_store.put(BOND, "s:h", {"trust": 0.2}) == 2

    record = await any_store.get(BOND, "s:h")
    assert record.version == 2
    assert record.value == {"trust": 0.2}


@pytest.mark.asyncio
async def test_returned_values_are_copies(any_store):
    await any_store.put(BOND, "s:h", {"trust": 0.1})
    record = await any_store.get(BOND, "s:h")
    record.value["trust"] = 0.9
    assert (await any_store.get(BOND, "s:h")).value == {"trust": 0.1}


@pytest.mark.asyncio
async def test_compare_and_set(any_store):
    assert await any_store.compare_and_set(BOND, "s:h", {"trust": 0.1}, expected_version=0)
    assert not await any_store.compare_and_set(BOND, "s:h", {"trust": 0.5}, expected_version=0)
    assert await any_store.compare_and_set(BOND, "s:h", {"trust": 0.2}, expected_version=1)
    assert not await any_store.compare_and_set(BOND, "s:h", {"trust": 0.3}, expected_version=1)

    record = await any_store.get(BOND, "s:h")
    assert record.version == 2
    assert record.value == {"trust": 0.2}


@pytest.mark.asyncio
async def test_append_respects_capacity_and_order(any_store):
    for i in range(5):
        await any_store.append(MEMORY, "s:h", {"n": i, "timestamp": 100.0 + i}, capacity=3)

    assert [item["n"] for item in await any_store.items(MEMORY, "s:h")] == [2, 3, 4]
    assert [item["n"] for item in await any_store.items(MEMORY, "s:h", limit=2)] == [3, 4]
    assert await any_store.items(MEMORY, "other") == []


@pytest.mark.asyncio
async def test_prune_items_drops_older_entries(any_store):
    for ts in (10.0, 20.0, 30.0):
        await any_store.append(MEMORY, "s:h", {"timestamp": ts})

    assert await any_store.prune_items(MEMORY, "s:h", older_than=25.0) == 2
    assert await any_store.items(MEMORY, "s:h") == [{"timestamp": 30.0}]
    assert await any_store.prune_items(MEMORY, "s:h", older_than=25.0) == 0


@pytest.mark.asyncio
async def test_identities_cover_records_and_items(any_store):
    await any_store.put(BOND, "s:a", {})
    await any_store.append(BOND, "s:b", {"timestamp": 1.0})
    await any_store.put(MEMORY, "s:c", {})

    assert await any_store.identities(BOND) == ["s:a", "s:b"]
