# madlan_crawler/crud.py
"""Repositories for properties and their child record-sets.

Each repository talks to a `StoragePort` with plain positional SQL so the
same code runs on both backends. Where the backend has no identity columns
the row id is ``MAX(id)+1``, read inside the same transaction as the insert;
the port lock serializes transactions, so two writers never read the same
MAX. Child sets are keyed by ``property_id`` and hold the latest crawl only.
"""
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from pydantic import BaseModel

from . import schemas
from .db import StoragePort
from .models import CHILD_TABLES

Row = Dict[str, Any]


def _as_dict(record) -> Dict[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump()
    return dict(record)


class ChildRepository:
    """Shared insert/find/delete/count for tables keyed by ``property_id``."""

    table: str = ""
    schema = None
    order_by = "id ASC"

    def __init__(self, storage: StoragePort):
        self.storage = storage
        self.columns = list(self.schema.model_fields)

    async def _next_id(self) -> int:
        row = await self.storage.query_one(f"SELECT COALESCE(MAX(id), 0) + 1 AS next_id FROM {self.table}")
        return int(row["next_id"])

    async def _insert_row(self, property_id: str, record, row_id: Optional[int]) -> None:
        data = _as_dict(self.schema.model_validate(_as_dict(record)))
        cols = ["property_id"] + self.columns
        values = [property_id] + [data.get(c) for c in self.columns]
        if row_id is not None:
            cols.insert(0, "id")
            values.insert(0, row_id)
        placeholders = ", ".join("?" for _ in cols)
        await self.storage.execute(
            f"INSERT INTO {self.table} ({', '.join(cols)}) VALUES ({placeholders})", values
        )

    async def insert(self, property_id: str, record) -> None:
        async def work():
            row_id = None if self.storage.supports_identity else await self._next_id()
            await self._insert_row(property_id, record, row_id)
        await self.storage.transaction(work)

    async def insert_many(self, property_id: str, records: Iterable) -> int:
        records = list(records)
        if not records:
            return 0

        async def work():
            first_id = None if self.storage.supports_identity else await self._next_id()
            for offset, record in enumerate(records):
                await self._insert_row(property_id, record, None if first_id is None else first_id + offset)
            return len(records)
        return await self.storage.transaction(work)

    async def find_by_property_id(self, property_id: str) -> List[Row]:
        return await self.storage.query(
            f"SELECT * FROM {self.table} WHERE property_id = ? ORDER BY {self.order_by}", [property_id]
        )

    async def delete_by_property_id(self, property_id: str) -> int:
        async def work():
            n = await self.count_by_property_id(property_id)
            await self.storage.execute(f"DELETE FROM {self.table} WHERE property_id = ?", [property_id])
            return n
        return await self.storage.transaction(work)

    async def count_by_property_id(self, property_id: str) -> int:
        row = await self.storage.query_one(
            f"SELECT COUNT(*) AS n FROM {self.table} WHERE property_id = ?", [property_id]
        )
        return int(row["n"]) if row else 0

    async def replace(self, property_id: str, records: Iterable) -> int:
        """Delete the current set and insert ``records`` in one transaction."""
        records = list(records)

        async def work():
            await self.delete_by_property_id(property_id)
            return await self.insert_many(property_id, records)
        return await self.storage.transaction(work)


class ImageRepository(ChildRepository):
    table = "property_images"
    schema = schemas.PropertyImageInput
    order_by = "image_order ASC, id ASC"


class TransactionHistoryRepository(ChildRepository):
    table = "transaction_history"
    schema = schemas.TransactionInput
    order_by = "transaction_date IS NULL, transaction_date DESC, id ASC"


class SchoolsRepository(ChildRepository):
    table = "nearby_schools"
    schema = schemas.SchoolInput
    order_by = "distance_meters IS NULL, distance_meters ASC, id ASC"


class PriceComparisonRepository(ChildRepository):
    table = "price_comparisons"
    schema = schemas.PriceComparisonInput
    order_by = "room_count ASC, id ASC"


class ConstructionProjectsRepository(ChildRepository):
    table = "new_construction_projects"
    schema = schemas.ConstructionProjectInput
    order_by = "distance_meters IS NULL, distance_meters ASC, id ASC"


class RatingsRepository(ChildRepository):
    """Zero or one ratings row per property."""

    table = "neighborhood_ratings"
    schema = schemas.RatingsInput

    async def upsert(self, property_id: str, ratings) -> None:
        async def work():
            await self.delete_by_property_id(property_id)
            row_id = None if self.storage.supports_identity else await self._next_id()
            await self._insert_row(property_id, ratings, row_id)
        await self.storage.transaction(work)

    async def find_by_property_id(self, property_id: str) -> Optional[Row]:
        return await self.storage.query_one(
            f"SELECT * FROM {self.table} WHERE property_id = ?", [property_id]
        )


_PROPERTY_COLUMNS = [c for c in schemas.PropertyInput.model_fields if c != "id"]


class PropertyRepository:
    table = "properties"

    def __init__(self, storage: StoragePort):
        self.storage = storage

    async def upsert(self, prop: schemas.PropertyInput) -> bool:
        """Insert or refresh a property. Returns True if the row is new."""
        data = prop.model_dump()
        values = [data[c] for c in _PROPERTY_COLUMNS]

        async def work():
            existing = await self.storage.query_one(
                "SELECT id FROM properties WHERE id = ?", [prop.id]
            )
            if existing:
                assignments = ", ".join(f"{c} = ?" for c in _PROPERTY_COLUMNS)
                await self.storage.execute(
                    f"UPDATE properties SET {assignments}, crawl_count = crawl_count + 1, "
                    "last_crawled_at = CURRENT_TIMESTAMP WHERE id = ?",
                    values + [prop.id],
                )
                return False
            cols = ["id"] + _PROPERTY_COLUMNS + ["crawl_count"]
            placeholders = ", ".join("?" for _ in cols)
            await self.storage.execute(
                f"INSERT INTO properties ({', '.join(cols)}) VALUES ({placeholders})",
                [prop.id] + values + [1],
            )
            return True
        return await self.storage.transaction(work)

    async def find_by_id(self, property_id: str) -> Optional[Row]:
        return await self.storage.query_one("SELECT * FROM properties WHERE id = ?", [property_id])

    async def find_by_url(self, url: str) -> Optional[Row]:
        return await self.storage.query_one("SELECT * FROM properties WHERE url = ?", [url])

    async def find_by_city(self, city: str, limit: int = 100, offset: int = 0) -> List[Row]:
        return await self.storage.query(
            "SELECT * FROM properties WHERE city = ? ORDER BY last_crawled_at DESC, id ASC LIMIT ? OFFSET ?",
            [city, limit, offset],
        )

    async def count(self) -> int:
        row = await self.storage.query_one("SELECT COUNT(*) AS n FROM properties")
        return int(row["n"])

    async def count_by_city(self, city: str) -> int:
        row = await self.storage.query_one("SELECT COUNT(*) AS n FROM properties WHERE city = ?", [city])
        return int(row["n"])

    async def delete(self, property_id: str) -> bool:
        """Remove a property and every child row it owns."""
        async def work():
            if not await self.find_by_id(property_id):
                return False
            for table in CHILD_TABLES:
                await self.storage.execute(f"DELETE FROM {table} WHERE property_id = ?", [property_id])
            await self.storage.execute("DELETE FROM properties WHERE id = ?", [property_id])
            return True
        return await self.storage.transaction(work)

    async def prune_orphans(self) -> Dict[str, int]:
        """Delete child rows whose property no longer exists."""
        orphan_filter = "property_id NOT IN (SELECT id FROM properties)"

        async def work():
            removed = {}
            for table in CHILD_TABLES:
                row = await self.storage.query_one(f"SELECT COUNT(*) AS n FROM {table} WHERE {orphan_filter}")
                removed[table] = int(row["n"])
                if removed[table]:
                    await self.storage.execute(f"DELETE FROM {table} WHERE {orphan_filter}")
            return removed
        return await self.storage.transaction(work)


class CrawlSessionRepository:
    """Run records (``crawl_sessions``) and their categorized error log."""

    _STAT_COLUMNS = {
        "properties_found": "found",
        "properties_new": "new",
        "properties_updated": "updated",
        "properties_failed": "failed",
        "search_pages": "search_pages",
    }

    def __init__(self, storage: StoragePort):
        self.storage = storage

    async def _next_id(self, table: str) -> Optional[int]:
        if self.storage.supports_identity:
            return None
        row = await self.storage.query_one(f"SELECT COALESCE(MAX(id), 0) + 1 AS next_id FROM {table}")
        return int(row["next_id"])

    async def _insert(self, table: str, data: Dict[str, Any]) -> None:
        async def work():
            row_id = await self._next_id(table)
            cols = list(data)
            values = [data[c] for c in cols]
            if row_id is not None:
                cols.insert(0, "id")
                values.insert(0, row_id)
            placeholders = ", ".join("?" for _ in cols)
            await self.storage.execute(f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})", values)
        await self.storage.transaction(work)

    async def start(self, city: str, max_properties: Optional[int] = None) -> str:
        session_id = uuid4().hex
        await self._insert("crawl_sessions", {
            "session_id": session_id,
            "target_city": city,
            "max_properties": max_properties,
            "status": "running",
            "properties_found": 0,
            "properties_new": 0,
            "properties_updated": 0,
            "properties_failed": 0,
            "search_pages": 0,
        })
        return session_id

    async def update_stats(self, session_id: str, summary: schemas.CrawlSummary) -> int:
        assignments = ", ".join(f"{c} = ?" for c in self._STAT_COLUMNS)
        values = [getattr(summary, f) for f in self._STAT_COLUMNS.values()]
        return await self.storage.execute(
            f"UPDATE crawl_sessions SET {assignments} WHERE session_id = ?", values + [session_id]
        )

    async def complete(self, session_id: str, summary: schemas.CrawlSummary, status: str,
                       error: Optional[str] = None) -> int:
        assignments = ", ".join(f"{c} = ?" for c in self._STAT_COLUMNS)
        values = [getattr(summary, f) for f in self._STAT_COLUMNS.values()]
        return await self.storage.execute(
            f"UPDATE crawl_sessions SET {assignments}, status = ?, stop_reason = ?, error_message = ?, "
            "end_time = CURRENT_TIMESTAMP WHERE session_id = ?",
            values + [status, summary.stop_reason, error, session_id],
        )

    async def log_error(self, session_id: str, category: schemas.ErrorCategory, message: str,
                        url: Optional[str] = None, property_id: Optional[str] = None) -> None:
        await self._insert("crawl_errors", {
            "session_id": session_id,
            "error_type": schemas.ErrorCategory(category).value,
            "error_message": message,
            "url": url,
            "property_id": property_id,
        })

    async def find_by_session_id(self, session_id: str) -> Optional[schemas.CrawlSessionRecord]:
        row = await self.storage.query_one("SELECT * FROM crawl_sessions WHERE session_id = ?", [session_id])
        return schemas.CrawlSessionRecord.model_validate(row) if row else None

    async def recent(self, city: Optional[str] = None, limit: int = 5) -> List[schemas.CrawlSessionRecord]:
        if city is None:
            rows = await self.storage.query(
                "SELECT * FROM crawl_sessions ORDER BY start_time DESC, id DESC LIMIT ?", [limit]
            )
        else:
            rows = await self.storage.query(
                "SELECT * FROM crawl_sessions WHERE target_city = ? ORDER BY start_time DESC, id DESC LIMIT ?",
                [city, limit],
            )
        return [schemas.CrawlSessionRecord.model_validate(r) for r in rows]

    async def errors(self, session_id: str) -> List[Row]:
        return await self.storage.query(
            "SELECT * FROM crawl_errors WHERE session_id = ? ORDER BY id ASC", [session_id]
        )

    async def error_stats(self, session_id: str) -> Dict[str, int]:
        rows = await self.storage.query(
            "SELECT error_type, COUNT(*) AS n FROM crawl_errors WHERE session_id = ? "
            "GROUP BY error_type ORDER BY error_type ASC",
            [session_id],
        )
        return {r["error_type"]: int(r["n"]) for r in rows}


class Repositories:
    """All repositories bound to one storage port."""

    def __init__(self, storage: StoragePort):
        self.storage = storage
        self.properties = PropertyRepository(storage)
        self.images = ImageRepository(storage)
        self.transactions = TransactionHistoryRepository(storage)
        self.schools = SchoolsRepository(storage)
        self.ratings = RatingsRepository(storage)
        self.price_comparisons = PriceComparisonRepository(storage)
        self.construction_projects = ConstructionProjectsRepository(storage)
        self.sessions = CrawlSessionRepository(storage)
