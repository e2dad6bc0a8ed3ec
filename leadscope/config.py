"""Configuration helpers for the discovery, crawl, and export pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class PlacesSettings:
    """Google Places API (v1) connection details."""

    api_key: str = os.getenv("GOOGLE_MAPS_API_KEY", "")
    base_url: str = os.getenv("GOOGLE_PLACES_BASE_URL", "https://places.googleapis.com/v1")
    language_code: str = os.getenv("GOOGLE_PLACES_LANGUAGE", "el")
    region_code: str = os.getenv("GOOGLE_PLACES_REGION", "GR")
    request_timeout_s: float = float(os.getenv("GOOGLE_PLACES_TIMEOUT_S", "15"))
    location_bias_radius_m: float = float(os.getenv("GOOGLE_PLACES_BIAS_RADIUS_M", "1500"))


@dataclass(frozen=True)
class DiscoverySettings:
    """Geo-grid fan-out and rate limiting parameters."""

    grid_step_km: float = float(os.getenv("DISCOVERY_GRID_STEP_KM", "1.5"))
    default_city_radius_km: float = float(os.getenv("DISCOVERY_CITY_RADIUS_KM", "10"))
    concurrency: int = int(os.getenv("DISCOVERY_CONCURRENCY", "1"))
    interval_s: float = float(os.getenv("DISCOVERY_INTERVAL_S", "1.0"))
    interval_cap: int = int(os.getenv("DISCOVERY_INTERVAL_CAP", "5"))
    retry_attempts: int = int(os.getenv("DISCOVERY_RETRY_ATTEMPTS", "3"))
    retry_backoff_s: float = float(os.getenv("DISCOVERY_RETRY_BACKOFF_S", "1.0"))
    dataset_reuse_days: int = int(os.getenv("DATASET_REUSE_DAYS", "30"))


@dataclass(frozen=True)
class CrawlSettings:
    """Hard safety caps and politeness parameters for website crawling."""

    user_agent: str = os.getenv("CRAWL_USER_AGENT", "LeadScopeBot/1.0 (+https://leadscope.ai/bot)")
    max_concurrent_crawls: int = int(os.getenv("CRAWL_MAX_CONCURRENT", "1"))
    max_pages_per_crawl: int = int(os.getenv("CRAWL_MAX_PAGES", "50"))
    crawl_timeout_s: float = float(os.getenv("CRAWL_TIMEOUT_S", "60"))
    page_timeout_s: float = float(os.getenv("CRAWL_PAGE_TIMEOUT_S", "12"))
    max_depth: int = int(os.getenv("CRAWL_MAX_DEPTH", "2"))
    page_delay_s: float = float(os.getenv("CRAWL_PAGE_DELAY_S", "0.4"))
    max_response_bytes: int = int(os.getenv("CRAWL_MAX_RESPONSE_BYTES", str(int(1.5 * 1024 * 1024))))
    robots_timeout_s: float = float(os.getenv("CRAWL_ROBOTS_TIMEOUT_S", "5"))
    respect_robots: bool = os.getenv("CRAWL_RESPECT_ROBOTS", "true").lower() == "true"
    fetch_backend: str = os.getenv("CRAWL_FETCH_BACKEND", "http")


@dataclass(frozen=True)
class ExtractionSettings:
    """Contact extraction tuning."""

    default_phone_region: str = os.getenv("PHONE_DEFAULT_REGION", "GR")


@dataclass(frozen=True)
class ExportSettings:
    """Export rendering parameters."""

    worksheet_name: str = os.getenv("EXPORT_WORKSHEET_NAME", "Export")
    output_dir: str = os.getenv("EXPORT_OUTPUT_DIR", "exports")


@dataclass(frozen=True)
class SupabaseSettings:
    """Supabase connection details."""

    url: Optional[str] = os.getenv("SUPABASE_URL")
    key: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY")
    cities_table: str = os.getenv("SUPABASE_CITIES_TABLE", "cities")
    industries_table: str = os.getenv("SUPABASE_INDUSTRIES_TABLE", "industries")
    datasets_table: str = os.getenv("SUPABASE_DATASETS_TABLE", "datasets")
    business_table: str = os.getenv("SUPABASE_BUSINESS_TABLE", "businesses")
    website_table: str = os.getenv("SUPABASE_WEBSITE_TABLE", "websites")
    contact_table: str = os.getenv("SUPABASE_CONTACT_TABLE", "contacts")
    contact_source_table: str = os.getenv("SUPABASE_CONTACT_SOURCE_TABLE", "contact_sources")
    crawl_results_table: str = os.getenv("SUPABASE_CRAWL_RESULTS_TABLE", "crawl_results")
    subscriptions_table: str = os.getenv("SUPABASE_SUBSCRIPTIONS_TABLE", "subscriptions")
    usage_table: str = os.getenv("SUPABASE_USAGE_TABLE", "usage_tracking")
    exports_table: str = os.getenv("SUPABASE_EXPORTS_TABLE", "exports")
    local_fallback_path: str = os.getenv("LOCAL_STORE_PATH", ".local-store/store.json")


@dataclass(frozen=True)
class LoggingSettings:
    """Structured logging output."""

    level: str = os.getenv("LOG_LEVEL", "INFO")
    json: bool = os.getenv("LOG_JSON", "true").lower() == "true"


places_settings = PlacesSettings()
discovery_settings = DiscoverySettings()
crawl_settings = CrawlSettings()
extraction_settings = ExtractionSettings()
export_settings = ExportSettings()
supabase_settings = SupabaseSettings()
logging_settings = LoggingSettings()
