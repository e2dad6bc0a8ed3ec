"""Lead discovery, website crawling and export building blocks."""

from .models import (
    Business,
    Contact,
    CrawlResult,
    CrawlStatus,
    CrawlWorkerResult,
    DatasetCrawlSummary,
    DiscoveryResult,
    ExportResult,
    Plan,
)
from .pipeline import LeadScopePipeline, crawl_dataset, refresh_dataset
from .storage import InMemoryStore, LocalStore, Store

__all__ = [
    "Business",
    "Contact",
    "CrawlResult",
    "CrawlStatus",
    "CrawlWorkerResult",
    "DatasetCrawlSummary",
    "DiscoveryResult",
    "ExportResult",
    "Plan",
    "LeadScopePipeline",
    "crawl_dataset",
    "refresh_dataset",
    "InMemoryStore",
    "LocalStore",
    "Store",
]
