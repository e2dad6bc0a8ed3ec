"""Structured data models shared across the pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Plan(str, Enum):
    """Subscription tier."""

    DEMO = "demo"
    STARTER = "starter"
    PRO = "pro"


class ActionType(str, Enum):
    """Per-request pricing gate actions."""

    EXPORT = "export"
    CRAWL = "crawl"
    DISCOVER = "discover"


class UsageAction(str, Enum):
    """Monthly usage counters."""

    EXPORT = "export"
    CRAWL = "crawl"
    DATASET = "dataset"


class ContactType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    MOBILE = "mobile"


class PageType(str, Enum):
    HOMEPAGE = "homepage"
    CONTACT = "contact"
    ABOUT = "about"
    COMPANY = "company"
    FOOTER = "footer"
    OTHER = "other"


class CrawlStatus(str, Enum):
    """Lifecycle of a single website crawl."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    NOT_CRAWLED = "not_crawled"
    BLOCKED = "blocked"


class ExportFormat(str, Enum):
    CSV = "csv"
    XLSX = "xlsx"


class GridPoint(BaseModel):
    """A sampled coordinate used to fan out places searches."""

    model_config = {"frozen": True}

    lat: float
    lng: float


class City(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    radius_km: Optional[float] = None


class Industry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str


class Dataset(BaseModel):
    """A user-owned collection of businesses for one city and industry."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    city_id: UUID
    industry_id: UUID
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_refreshed_at: Optional[datetime] = None


class PlaceCandidate(BaseModel):
    """A business returned by the places-search API."""

    place_id: str = Field(description="External place identifier used for global deduplication")
    name: str
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    rating: Optional[float] = None
    user_rating_count: Optional[int] = None
    city_name: Optional[str] = Field(default=None, description="Locality parsed from address components")
    postal_code: Optional[str] = None


class Business(BaseModel):
    """A discovered business owned by exactly one dataset."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    normalized_name: str = Field(description="Dedup key, unique per dataset")
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city_id: Optional[UUID] = None
    industry_id: Optional[UUID] = None
    external_place_id: Optional[str] = Field(default=None, description="Unique per dataset")
    dataset_id: UUID
    owner_user_id: UUID
    phone: Optional[str] = None
    rating: Optional[float] = None
    reviews_count: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Website(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    business_id: UUID
    url: str
    last_crawled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Contact(BaseModel):
    """A contact value; exactly one of email/phone/mobile is set, matching ``contact_type``."""

    id: UUID = Field(default_factory=uuid4)
    business_id: UUID
    contact_type: ContactType
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    is_generic: bool = False
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_verified_at: datetime = Field(default_factory=utcnow)
    is_active: bool = True

    @property
    def value(self) -> str:
        return self.email or self.phone or self.mobile or ""


class ContactSource(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    contact_id: UUID
    source_url: str
    page_type: PageType
    content_hash: str
    created_at: datetime = Field(default_factory=utcnow)


class ContactCandidate(BaseModel):
    """A contact value extracted from one page."""

    contact_type: ContactType
    value: str
    source_url: str
    confidence: float = Field(ge=0.0, le=1.0)
    is_generic: bool = False
    obfuscated: bool = False


class SocialLink(BaseModel):
    model_config = {"frozen": True}

    platform: str
    url: str


class SocialLinks(BaseModel):
    facebook: Optional[str] = None
    instagram: Optional[str] = None
    linkedin: Optional[str] = None
    twitter: Optional[str] = None
    youtube: Optional[str] = None


class CrawlError(BaseModel):
    url: str
    message: str


class CrawlResult(BaseModel):
    """Current crawl outcome for one business within one dataset (upserted, not appended)."""

    business_id: UUID
    dataset_id: UUID
    website_url: str
    started_at: datetime
    finished_at: datetime
    pages_visited: int = 0
    crawl_status: CrawlStatus = CrawlStatus.NOT_CRAWLED
    emails: List[ContactCandidate] = Field(default_factory=list)
    phones: List[ContactCandidate] = Field(default_factory=list)
    contact_pages: List[str] = Field(default_factory=list)
    social: SocialLinks = Field(default_factory=SocialLinks)
    errors: List[CrawlError] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)


class Subscription(BaseModel):
    """Subscription source of truth for a user (populated by billing)."""

    user_id: UUID
    plan: Plan = Plan.DEMO
    is_internal_user: bool = False


class UserPermissions(BaseModel):
    plan: Plan
    max_export_rows: int
    max_crawl_pages: int
    max_datasets: int
    can_refresh: bool
    is_internal_user: bool = False


class UsageCounters(BaseModel):
    """Per-user, per-calendar-month usage."""

    user_id: UUID
    period: str = Field(description="Calendar month as YYYY-MM")
    exports: int = 0
    crawls: int = 0
    datasets_created: int = 0

    def count_for(self, action: "UsageAction") -> int:
        if action is UsageAction.EXPORT:
            return self.exports
        if action is UsageAction.CRAWL:
            return self.crawls
        return self.datasets_created


class ExportLog(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    dataset_id: UUID
    user_id: UUID
    plan: Plan
    format: ExportFormat
    rows_returned: int
    rows_total: int
    gated: bool
    watermark: str = ""
    filename: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class DiscoveryStats(BaseModel):
    grid_points_generated: int = 0
    api_calls_made: int = 0
    businesses_found: int = 0
    unique_place_ids: int = 0
    duplicates_skipped: int = 0
    errors: List[str] = Field(default_factory=list)


class DiscoveryResult(BaseModel):
    success: bool
    dataset_id: Optional[UUID] = None
    dataset_reused: bool = False
    businesses_found: int = 0
    businesses_created: int = 0
    businesses_skipped: int = 0
    websites_created: int = 0
    stats: DiscoveryStats = Field(default_factory=DiscoveryStats)
    errors: List[str] = Field(default_factory=list)
    gated: bool = False
    reason: Optional[str] = None
    upgrade_hint: Optional[str] = None
    error: Optional[str] = None


class ContactChangeSummary(BaseModel):
    added: int = 0
    verified: int = 0
    deactivated: int = 0


class CrawlWorkerResult(BaseModel):
    success: bool
    business_id: UUID
    dataset_id: UUID
    website_url: str
    pages_visited: int = 0
    pages_limit: int = 0
    crawl_status: CrawlStatus = CrawlStatus.NOT_CRAWLED
    emails_found: int = 0
    phones_found: int = 0
    contact_pages_found: int = 0
    contacts: ContactChangeSummary = Field(default_factory=ContactChangeSummary)
    gated: bool = False
    retryable: bool = True
    reason: Optional[str] = None
    upgrade_hint: Optional[str] = None
    error: Optional[str] = None


class DatasetCrawlSummary(BaseModel):
    success: bool
    dataset_id: UUID
    websites: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)
    results: List[CrawlWorkerResult] = Field(default_factory=list)
    gated: bool = False
    reason: Optional[str] = None
    upgrade_hint: Optional[str] = None
    error: Optional[str] = None


class ExportResult(BaseModel):
    success: bool
    format: ExportFormat
    rows_returned: int = 0
    rows_total: int = 0
    gated: bool = False
    watermark: Optional[str] = None
    file: Optional[bytes] = Field(default=None, exclude=True)
    filename: Optional[str] = None
    reason: Optional[str] = None
    upgrade_hint: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def coerce_uuid(value: Union[UUID, str], name: str = "id") -> UUID:
    """Accept a UUID or its string form; anything else is a ``ValueError``."""

    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValueError(f"{name} is not a valid UUID: {value!r}") from exc
