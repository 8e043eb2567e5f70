# madlan_crawler/schemas.py
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PropertyInput(BaseModel):
    id: str = Field(..., max_length=255)
    url: str
    city: str
    price: Optional[int] = None
    rooms: Optional[float] = None
    size: Optional[float] = None
    floor: Optional[int] = None
    total_floors: Optional[int] = None
    address: Optional[str] = None
    neighborhood: Optional[str] = None
    property_type: Optional[str] = None
    description: Optional[str] = None
    has_parking: Optional[bool] = None
    has_elevator: Optional[bool] = None
    has_balcony: Optional[bool] = None
    has_air_conditioning: Optional[bool] = None
    has_security_door: Optional[bool] = None
    has_bars: Optional[bool] = None
    has_storage: Optional[bool] = None
    has_shelter: Optional[bool] = None
    is_accessible: Optional[bool] = None
    is_renovated: Optional[bool] = None
    is_furnished: Optional[bool] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_agency: Optional[str] = None
    entry_date: Optional[str] = None
    listing_date: Optional[str] = None


class PropertyImageInput(BaseModel):
    image_url: str
    image_order: int = 0
    is_main_image: Optional[bool] = None


class TransactionInput(BaseModel):
    transaction_address: Optional[str] = None
    transaction_date: Optional[str] = None
    transaction_price: Optional[int] = None
    transaction_size: Optional[float] = None
    transaction_price_per_sqm: Optional[int] = None
    transaction_floor: Optional[int] = None
    transaction_rooms: Optional[float] = None
    year_built: Optional[int] = None


class SchoolInput(BaseModel):
    school_name: str
    school_address: Optional[str] = None
    school_type: Optional[str] = None
    grades_offered: Optional[str] = None
    school_rating: Optional[int] = None
    distance_meters: Optional[int] = None


class RatingsInput(BaseModel):
    community_feeling: Optional[float] = None
    cleanliness_maintenance: Optional[float] = None
    schools_quality: Optional[float] = None
    public_transport: Optional[float] = None
    shopping_convenience: Optional[float] = None
    entertainment_leisure: Optional[float] = None
    overall_rating: Optional[float] = None


class PriceComparisonInput(BaseModel):
    room_count: int
    average_price: Optional[int] = None
    old_price: Optional[int] = None
    new_price: Optional[int] = None
    price_trend: Optional[str] = None


class ConstructionProjectInput(BaseModel):
    project_name: Optional[str] = None
    project_location: Optional[str] = None
    room_range: Optional[str] = None
    total_floors: Optional[int] = None
    starting_price: Optional[int] = None
    distance_meters: Optional[int] = None
    project_status: Optional[str] = None
    completion_date: Optional[str] = None


class PropertyBundle(BaseModel):
    """One property page's worth of data, persisted as a single unit."""
    property: PropertyInput
    images: List[PropertyImageInput] = []
    transactions: List[TransactionInput] = []
    schools: List[SchoolInput] = []
    ratings: Optional[RatingsInput] = None
    price_comparisons: List[PriceComparisonInput] = []
    construction_projects: List[ConstructionProjectInput] = []


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNSET = "unset"


class FrontierEntry(BaseModel):
    id: int
    url: str
    city: str
    search_page: int = 0
    discovered_at: Optional[datetime] = None
    processed: bool = False
    processed_at: Optional[datetime] = None
    crawl_successful: Optional[bool] = None
    error_message: Optional[str] = None

    @property
    def outcome(self) -> Outcome:
        if self.crawl_successful is None:
            return Outcome.UNSET
        return Outcome.SUCCESS if self.crawl_successful else Outcome.FAILURE


class FrontierStats(BaseModel):
    total: int = 0
    last_page: int = 0
    processed: int = 0
    unprocessed: int = 0
    successful: int = 0
    failed: int = 0


class CrawlSummary(BaseModel):
    city: str
    found: int = 0
    new: int = 0
    updated: int = 0
    failed: int = 0
    search_pages: int = 0
    duration_seconds: float = 0.0
    stop_reason: str = "exhausted"
    errors: Dict[str, str] = {}
    session_id: Optional[str] = None


class ErrorCategory(str, Enum):
    BLOCKING = "blocking"
    FETCH = "fetch"
    EXTRACTION = "extraction"
    PERSISTENCE = "persistence"


class CrawlSessionRecord(BaseModel):
    """One row of ``crawl_sessions``."""
    id: int
    session_id: str
    target_city: Optional[str] = None
    max_properties: Optional[int] = None
    status: str = "running"
    stop_reason: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    properties_found: int = 0
    properties_new: int = 0
    properties_updated: int = 0
    properties_failed: int = 0
    search_pages: int = 0
    error_message: Optional[str] = None
