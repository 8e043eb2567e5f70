# madlan_crawler/frontier.py
"""Persistent URL frontier backed by the ``property_urls_cache`` table.

An entry is created once per discovered URL and flips from unprocessed to
processed exactly once; only `clear` / `clear_all` ever remove entries.
Uniqueness of ``url`` is the de-duplication mechanism.
"""
from typing import Iterable, List

from .db import StoragePort
from .errors import IntegrityViolation
from .schemas import FrontierEntry, FrontierStats
from .utils import logger


class Frontier:
    def __init__(self, storage: StoragePort):
        self.storage = storage

    async def enqueue_if_absent(self, url: str, city: str, page: int) -> bool:
        """Record ``url``; False if it was already known."""
        async def work():
            if await self.storage.query_one("SELECT id FROM property_urls_cache WHERE url = ?", [url]):
                return False
            if self.storage.supports_identity:
                await self.storage.execute(
                    "INSERT INTO property_urls_cache (url, city, search_page, processed) VALUES (?, ?, ?, ?)",
                    [url, city, page, False],
                )
            else:
                row = await self.storage.query_one(
                    "SELECT COALESCE(MAX(id), 0) + 1 AS next_id FROM property_urls_cache"
                )
                await self.storage.execute(
                    "INSERT INTO property_urls_cache (id, url, city, search_page, processed) VALUES (?, ?, ?, ?, ?)",
                    [int(row["next_id"]), url, city, page, False],
                )
            return True

        try:
            return await self.storage.transaction(work)
        except IntegrityViolation:
            logger.debug("URL already in frontier: %s", url)
            return False

    async def enqueue_many(self, urls: Iterable[str], city: str, page: int) -> int:
        inserted = 0
        for url in urls:
            if await self.enqueue_if_absent(url, city, page):
                inserted += 1
        return inserted

    async def next_unprocessed_batch(self, city: str, limit: int) -> List[FrontierEntry]:
        rows = await self.storage.query(
            "SELECT * FROM property_urls_cache WHERE city = ? AND processed = ? "
            "ORDER BY search_page ASC, id ASC LIMIT ?",
            [city, False, limit],
        )
        return [FrontierEntry.model_validate(r) for r in rows]

    async def mark_processed(self, url: str, success: bool, error: str = None) -> bool:
        """Record the outcome of ``url``; False if it was unknown or already processed."""
        n = await self.storage.execute(
            "UPDATE property_urls_cache SET processed = ?, processed_at = CURRENT_TIMESTAMP, "
            "crawl_successful = ?, error_message = ? WHERE url = ? AND processed = ?",
            [True, bool(success), None if success else error, url, False],
        )
        if n == 0:
            logger.debug("Not marking %s: unknown or already processed", url)
        return n > 0

    async def record_search_page(self, city: str, page: int) -> None:
        """Remember that search ``page`` was fetched, even if it yielded no new URLs."""
        async def work():
            row = await self.storage.query_one("SELECT last_page FROM search_progress WHERE city = ?", [city])
            if row is None:
                await self.storage.execute(
                    "INSERT INTO search_progress (city, last_page) VALUES (?, ?)", [city, page]
                )
            elif page > int(row["last_page"]):
                await self.storage.execute(
                    "UPDATE search_progress SET last_page = ?, updated_at = CURRENT_TIMESTAMP WHERE city = ?",
                    [page, city],
                )
        await self.storage.transaction(work)

    async def get_stats(self, city: str) -> FrontierStats:
        row = await self.storage.query_one(
            "SELECT COUNT(*) AS total, "
            "MAX(search_page) AS last_page, "
            "SUM(CASE WHEN processed THEN 1 ELSE 0 END) AS processed, "
            "SUM(CASE WHEN processed THEN 0 ELSE 1 END) AS unprocessed, "
            "SUM(CASE WHEN processed AND crawl_successful THEN 1 ELSE 0 END) AS successful, "
            "SUM(CASE WHEN processed AND NOT crawl_successful THEN 1 ELSE 0 END) AS failed "
            "FROM property_urls_cache WHERE city = ?",
            [city],
        )
        stats = FrontierStats(**{k: int(v or 0) for k, v in (row or {}).items()})
        progress = await self.storage.query_one("SELECT last_page FROM search_progress WHERE city = ?", [city])
        if progress is not None:
            stats.last_page = max(stats.last_page, int(progress["last_page"]))
        return stats

    async def urls_by_page(self, city: str, page: int = None) -> List[FrontierEntry]:
        if page is None:
            rows = await self.storage.query(
                "SELECT * FROM property_urls_cache WHERE city = ? ORDER BY search_page ASC, id ASC", [city]
            )
        else:
            rows = await self.storage.query(
                "SELECT * FROM property_urls_cache WHERE city = ? AND search_page = ? ORDER BY id ASC",
                [city, page],
            )
        return [FrontierEntry.model_validate(r) for r in rows]

    async def clear(self, city: str) -> int:
        async def work():
            row = await self.storage.query_one(
                "SELECT COUNT(*) AS n FROM property_urls_cache WHERE city = ?", [city]
            )
            await self.storage.execute("DELETE FROM property_urls_cache WHERE city = ?", [city])
            await self.storage.execute("DELETE FROM search_progress WHERE city = ?", [city])
            return int(row["n"])
        removed = await self.storage.transaction(work)
        logger.info("Cleared %d frontier entries for %s", removed, city)
        return removed

    async def clear_all(self) -> int:
        async def work():
            row = await self.storage.query_one("SELECT COUNT(*) AS n FROM property_urls_cache")
            await self.storage.execute("DELETE FROM property_urls_cache")
            await self.storage.execute("DELETE FROM search_progress")
            return int(row["n"])
        removed = await self.storage.transaction(work)
        logger.info("Cleared %d frontier entries", removed)
        return removed
