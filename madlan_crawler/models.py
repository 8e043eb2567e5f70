# madlan_crawler/models.py
"""SQLAlchemy table definitions for the persisted crawl store.

These models are the single schema source for both storage backends: SQLite
creates them through ``Base.metadata.create_all`` and DuckDB executes DDL
compiled from the same metadata (without foreign keys, which DuckDB cannot
cascade). Child tables hold exactly one crawl's facet set per property.
"""
from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, func,
)

from .db import Base


class Property(Base):
    __tablename__ = "properties"
    id = Column(String, primary_key=True)
    url = Column(Text, nullable=False)
    city = Column(String, nullable=False)
    price = Column(Integer)
    rooms = Column(Float)
    size = Column(Float)
    floor = Column(Integer)
    total_floors = Column(Integer)
    address = Column(Text)
    neighborhood = Column(Text)
    property_type = Column(String)
    description = Column(Text)
    has_parking = Column(Boolean)
    has_elevator = Column(Boolean)
    has_balcony = Column(Boolean)
    has_air_conditioning = Column(Boolean)
    has_security_door = Column(Boolean)
    has_bars = Column(Boolean)
    has_storage = Column(Boolean)
    has_shelter = Column(Boolean)
    is_accessible = Column(Boolean)
    is_renovated = Column(Boolean)
    is_furnished = Column(Boolean)
    contact_name = Column(Text)
    contact_phone = Column(String)
    contact_agency = Column(Text)
    entry_date = Column(String)
    listing_date = Column(String)
    first_crawled_at = Column(DateTime, server_default=func.current_timestamp())
    last_crawled_at = Column(DateTime, server_default=func.current_timestamp())
    crawl_count = Column(Integer, nullable=False, default=1)


def _property_fk():
    return ForeignKey("properties.id", ondelete="CASCADE")


class PropertyImage(Base):
    __tablename__ = "property_images"
    id = Column(Integer, primary_key=True)
    property_id = Column(String, _property_fk(), nullable=False)
    image_url = Column(Text, nullable=False)
    image_order = Column(Integer, nullable=False, default=0)
    is_main_image = Column(Boolean)
    created_at = Column(DateTime, server_default=func.current_timestamp())


class TransactionHistory(Base):
    __tablename__ = "transaction_history"
    id = Column(Integer, primary_key=True)
    property_id = Column(String, _property_fk(), nullable=False)
    transaction_address = Column(Text)
    transaction_date = Column(String)  # ISO yyyy-mm-dd
    transaction_price = Column(Integer)
    transaction_size = Column(Float)
    transaction_price_per_sqm = Column(Integer)
    transaction_floor = Column(Integer)
    transaction_rooms = Column(Float)
    year_built = Column(Integer)


class NearbySchool(Base):
    __tablename__ = "nearby_schools"
    id = Column(Integer, primary_key=True)
    property_id = Column(String, _property_fk(), nullable=False)
    school_name = Column(Text, nullable=False)
    school_address = Column(Text)
    school_type = Column(String)
    grades_offered = Column(String)
    school_rating = Column(Integer)
    distance_meters = Column(Integer)


class NeighborhoodRatings(Base):
    __tablename__ = "neighborhood_ratings"
    id = Column(Integer, primary_key=True)
    property_id = Column(String, _property_fk(), nullable=False, unique=True)
    community_feeling = Column(Float)
    cleanliness_maintenance = Column(Float)
    schools_quality = Column(Float)
    public_transport = Column(Float)
    shopping_convenience = Column(Float)
    entertainment_leisure = Column(Float)
    overall_rating = Column(Float)


class PriceComparison(Base):
    __tablename__ = "price_comparisons"
    id = Column(Integer, primary_key=True)
    property_id = Column(String, _property_fk(), nullable=False)
    room_count = Column(Integer, nullable=False)
    average_price = Column(Integer)
    old_price = Column(Integer)
    new_price = Column(Integer)
    price_trend = Column(String)


class ConstructionProject(Base):
    __tablename__ = "new_construction_projects"
    id = Column(Integer, primary_key=True)
    property_id = Column(String, _property_fk(), nullable=False)
    project_name = Column(Text)
    project_location = Column(Text)
    room_range = Column(String)
    total_floors = Column(Integer)
    starting_price = Column(Integer)
    distance_meters = Column(Integer)
    project_status = Column(String)
    completion_date = Column(String)


class PropertyUrlCache(Base):
    """URL frontier: one row per discovered property page."""
    __tablename__ = "property_urls_cache"
    id = Column(Integer, primary_key=True)
    url = Column(Text, nullable=False, unique=True)
    city = Column(String, nullable=False)
    search_page = Column(Integer, nullable=False, default=0)
    discovered_at = Column(DateTime, server_default=func.current_timestamp())
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime)
    crawl_successful = Column(Boolean)
    error_message = Column(Text)


class SearchProgress(Base):
    """Highest search page fetched per city, including pages with no new URLs."""
    __tablename__ = "search_progress"
    city = Column(String, primary_key=True)
    last_page = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, server_default=func.current_timestamp())


class CrawlSession(Base):
    __tablename__ = "crawl_sessions"
    id = Column(Integer, primary_key=True)
    session_id = Column(String, nullable=False, unique=True)
    target_city = Column(String)
    max_properties = Column(Integer)
    status = Column(String, nullable=False, default="running")  # running | completed | interrupted | failed
    stop_reason = Column(String)
    start_time = Column(DateTime, server_default=func.current_timestamp())
    end_time = Column(DateTime)
    properties_found = Column(Integer, nullable=False, default=0)
    properties_new = Column(Integer, nullable=False, default=0)
    properties_updated = Column(Integer, nullable=False, default=0)
    properties_failed = Column(Integer, nullable=False, default=0)
    search_pages = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)


class CrawlErrorRecord(Base):
    __tablename__ = "crawl_errors"
    id = Column(Integer, primary_key=True)
    session_id = Column(String, ForeignKey("crawl_sessions.session_id", ondelete="CASCADE"), nullable=False)
    error_type = Column(String, nullable=False)
    error_message = Column(Text)
    url = Column(Text)
    property_id = Column(String)
    occurred_at = Column(DateTime, server_default=func.current_timestamp())


CHILD_TABLES = (
    "property_images",
    "transaction_history",
    "nearby_schools",
    "neighborhood_ratings",
    "price_comparisons",
    "new_construction_projects",
)

Index("idx_properties_city", Property.city)
Index("idx_urls_cache_city_processed", PropertyUrlCache.city, PropertyUrlCache.processed)
Index("idx_crawl_sessions_city", CrawlSession.target_city)
Index("idx_crawl_errors_session", CrawlErrorRecord.session_id)
for _table in CHILD_TABLES:
    _t = Base.metadata.tables[_table]
    Index(f"idx_{_table}_property_id", _t.c.property_id)
