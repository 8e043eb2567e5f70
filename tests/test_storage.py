# tests/test_storage.py
import asyncio

import pytest

from madlan_crawler.db import DuckDBStorage, SqliteStorage, open_storage
from madlan_crawler.errors import IntegrityViolation, StorageError, StorageInitError


async def test_initialize_is_idempotent(storage):
    await storage.initialize()
    rows = await storage.query("SELECT COUNT(*) AS n FROM property_urls_cache")
    assert rows == [{"n": 0}]


async def test_query_one_returns_none_when_empty(storage):
    assert await storage.query_one("SELECT id FROM properties WHERE id = ?", ["nope"]) is None


async def test_transaction_commits(storage):
    async def work():
        await storage.execute("INSERT INTO properties (id, url, city, crawl_count) VALUES (?, ?, ?, ?)",
                              ["p1", "https://www.madlan.co.il/listings/p1", "חיפה", 1])
        return "done"

    assert await storage.transaction(work) == "done"
    row = await storage.query_one("SELECT city FROM properties WHERE id = ?", ["p1"])
    assert row["city"] == "חיפה"


async def test_transaction_rolls_back_on_error(storage):
    async def work():
        await storage.execute("INSERT INTO properties (id, url, city, crawl_count) VALUES (?, ?, ?, ?)",
                              ["p1", "u", "חיפה", 1])
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await storage.transaction(work)
    assert await storage.query_one("SELECT id FROM properties WHERE id = ?", ["p1"]) is None


async def test_nested_transaction_is_reentrant(storage):
    async def inner():
        await storage.execute("INSERT INTO properties (id, url, city, crawl_count) VALUES (?, ?, ?, ?)",
                              ["p2", "u", "חיפה", 1])

    async def outer():
        await storage.transaction(inner)
        raise RuntimeError("abort outer")

    with pytest.raises(RuntimeError):
        await storage.transaction(outer)
    # the inner write belonged to the outer transaction and was rolled back with it
    assert await storage.query_one("SELECT id FROM properties WHERE id = ?", ["p2"]) is None


async def test_readers_wait_for_open_transaction(storage):
    seen = []
    entered = asyncio.Event()

    async def writer():
        async def work():
            await storage.execute("INSERT INTO properties (id, url, city, crawl_count) VALUES (?, ?, ?, ?)",
                                  ["p3", "u", "חיפה", 1])
            entered.set()
            await asyncio.sleep(0.05)
            await storage.execute("UPDATE properties SET price = ? WHERE id = ?", [1_000_000, "p3"])
        await storage.transaction(work)

    async def reader():
        await entered.wait()
        seen.append(await storage.query_one("SELECT price FROM properties WHERE id = ?", ["p3"]))

    await asyncio.gather(writer(), reader())
    assert seen == [{"price": 1_000_000}]


async def test_constraint_violation_maps_to_integrity_violation(storage):
    sql = "INSERT INTO properties (id, url, city, crawl_count) VALUES (?, ?, ?, ?)"
    await storage.execute(sql, ["dup", "u", "חיפה", 1])
    with pytest.raises(IntegrityViolation):
        await storage.execute(sql, ["dup", "u", "חיפה", 1])


async def test_bad_sql_raises_storage_error(storage):
    with pytest.raises(StorageError):
        await storage.query("SELECT * FROM no_such_table")


async def test_identity_support_differs_by_backend(storage):
    expected = isinstance(storage, SqliteStorage)
    assert storage.supports_identity is expected


async def test_unwritable_path_raises_init_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    storage = SqliteStorage(str(blocker / "properties.db"))
    with pytest.raises(StorageInitError):
        await storage.initialize()


async def test_calls_before_initialize_fail(tmp_path):
    storage = DuckDBStorage(str(tmp_path / "x.duckdb"))
    with pytest.raises(StorageError):
        await storage.query("SELECT 1")


def test_open_storage_rejects_unknown_backend(tmp_path):
    assert isinstance(open_storage("duckdb", str(tmp_path / "a.duckdb")), DuckDBStorage)
    with pytest.raises(StorageError):
        open_storage("postgres", "x")
