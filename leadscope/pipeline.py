"""Dataset-level crawl orchestration and the pipeline facade used by the CLI."""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import List, Optional, Union
from uuid import UUID

import httpx
import structlog

from . import discovery, exports, site_crawler
from .action_log import log_action
from .concurrency import CrawlSlotPool
from .config import (
    CrawlSettings,
    DiscoverySettings,
    ExportSettings,
    PlacesSettings,
    SupabaseSettings,
    crawl_settings,
    discovery_settings,
    export_settings,
    places_settings,
    supabase_settings,
)
from .errors import DatasetNotFoundError
from .fetcher import BrowserFetcher, Fetcher, HttpFetcher
from .google_maps import PlacesClient
from .models import (
    CrawlWorkerResult,
    DatasetCrawlSummary,
    DiscoveryResult,
    ExportFormat,
    ExportResult,
    GridPoint,
    coerce_uuid,
    utcnow,
)
from .permissions import (
    PermissionsResolver,
    SubscriptionPermissionsResolver,
    UsageReservations,
    usage_reservations,
)
from .pricing import next_plan
from .robots import RobotsGuard
from .storage import Store, build_store

logger = structlog.get_logger(__name__)


async def crawl_dataset(
    dataset_id: Union[UUID, str],
    user_id: Union[UUID, str],
    *,
    store: Store,
    permissions: PermissionsResolver,
    slots: CrawlSlotPool,
    fetcher: Fetcher,
    robots: Optional[RobotsGuard],
    settings: CrawlSettings = crawl_settings,
    reservations: UsageReservations = usage_reservations,
) -> DatasetCrawlSummary:
    """Run ``crawl_worker`` for every business website in a dataset.

    All workers are started together; the slot pool keeps at most
    ``slots.size`` crawls running at once.
    """

    dataset_id = coerce_uuid(dataset_id, "dataset_id")
    user_id = coerce_uuid(user_id, "user_id")
    dataset = store.get_dataset(dataset_id)
    if dataset is None:
        raise DatasetNotFoundError(dataset_id)
    if dataset.user_id != user_id:
        return DatasetCrawlSummary(success=False, dataset_id=dataset_id, error="Dataset does not belong to user")

    targets = []
    for business in store.list_businesses(dataset_id):
        website = store.get_website(business.id)
        if website is not None:
            targets.append((business.id, website.url))
    logger.info("dataset_crawl_started", dataset_id=str(dataset_id), websites=len(targets))

    results: List[CrawlWorkerResult] = await asyncio.gather(
        *(
            site_crawler.crawl_worker(
                business_id,
                dataset_id,
                url,
                user_id,
                store=store,
                permissions=permissions,
                slots=slots,
                fetcher=fetcher,
                robots=robots,
                settings=settings,
                reservations=reservations,
            )
            for business_id, url in targets
        )
    )

    counts = Counter(result.crawl_status.value for result in results)
    gated = [r for r in results if r.gated]
    summary = DatasetCrawlSummary(
        success=any(r.success for r in results) or not results,
        dataset_id=dataset_id,
        websites=len(targets),
        status_counts=dict(counts),
        results=results,
        gated=bool(gated),
    )
    if gated:
        summary.reason = gated[0].reason
        summary.upgrade_hint = gated[0].upgrade_hint
    if not summary.success:
        summary.error = "No website in the dataset could be crawled"
    logger.info("dataset_crawl_finished", dataset_id=str(dataset_id), **summary.status_counts)
    return summary


async def refresh_dataset(
    dataset_id: Union[UUID, str],
    user_id: Union[UUID, str],
    *,
    store: Store,
    permissions: PermissionsResolver,
    slots: CrawlSlotPool,
    fetcher: Fetcher,
    robots: Optional[RobotsGuard],
    settings: CrawlSettings = crawl_settings,
    reservations: UsageReservations = usage_reservations,
) -> DatasetCrawlSummary:
    """Re-crawl a dataset for plans that allow refreshes, then mark it refreshed."""

    dataset_id = coerce_uuid(dataset_id, "dataset_id")
    user_id = coerce_uuid(user_id, "user_id")
    if store.get_dataset(dataset_id) is None:
        raise DatasetNotFoundError(dataset_id)

    user = permissions.resolve(user_id)
    if not user.can_refresh and not user.is_internal_user:
        target = next_plan(user.plan)
        summary = DatasetCrawlSummary(
            success=False,
            dataset_id=dataset_id,
            gated=True,
            reason=f"{user.plan.value.capitalize()} plan does not include dataset refresh.",
            upgrade_hint=f"Upgrade to {target.value.capitalize()} plan to refresh datasets." if target else None,
        )
    else:
        summary = await crawl_dataset(
            dataset_id,
            user_id,
            store=store,
            permissions=permissions,
            slots=slots,
            fetcher=fetcher,
            robots=robots,
            settings=settings,
            reservations=reservations,
        )
        if summary.success:
            store.mark_dataset_refreshed(dataset_id, utcnow())

    log_action(
        user_id=user_id,
        action="refresh",
        dataset_id=dataset_id,
        result_summary=f"{summary.websites} websites: {summary.status_counts}",
        gated=summary.gated,
        error=summary.error,
    )
    return summary


class LeadScopePipeline:
    """Wire a store, an HTTP client, the crawl slot pool and the workers together.

    Use as an async context manager so the HTTP client (and a browser, when the
    browser backend is selected) are closed on exit.
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        permissions: Optional[PermissionsResolver] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        fetcher: Optional[Fetcher] = None,
        crawl: CrawlSettings = crawl_settings,
        discovery_config: DiscoverySettings = discovery_settings,
        places_config: PlacesSettings = places_settings,
        export_config: ExportSettings = export_settings,
        supabase_config: SupabaseSettings = supabase_settings,
    ) -> None:
        self.store = store or build_store(supabase_config)
        self.permissions = permissions or SubscriptionPermissionsResolver(self.store)
        self.crawl_settings = crawl
        self.discovery_settings = discovery_config
        self.export_settings = export_config
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(headers={"User-Agent": crawl.user_agent})
        self.slots = CrawlSlotPool(crawl.max_concurrent_crawls)
        self.robots = RobotsGuard(self.client, crawl.user_agent, crawl.robots_timeout_s)
        self.places = PlacesClient(self.client, places_config)
        if fetcher is not None:
            self.fetcher = fetcher
        elif crawl.fetch_backend == "browser":
            self.fetcher = BrowserFetcher(crawl)
        else:
            self.fetcher = HttpFetcher(self.client, crawl)

    async def __aenter__(self) -> "LeadScopePipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if isinstance(self.fetcher, BrowserFetcher):
            await self.fetcher.close()
        if self._owns_client:
            await self.client.aclose()
        self.store.close()

    async def discover_businesses(
        self,
        industry: str,
        city: str,
        user_id: Union[UUID, str],
        dataset_id: Union[UUID, str, None] = None,
        *,
        coordinates: Optional[GridPoint] = None,
        radius_km: Optional[float] = None,
    ) -> DiscoveryResult:
        return await discovery.discover_businesses(
            industry,
            city,
            user_id,
            dataset_id,
            store=self.store,
            permissions=self.permissions,
            places=self.places,
            coordinates=coordinates,
            radius_km=radius_km,
            settings=self.discovery_settings,
        )

    async def crawl_worker(
        self,
        business_id: Union[UUID, str],
        dataset_id: Union[UUID, str],
        website_url: str,
        user_id: Union[UUID, str],
    ) -> CrawlWorkerResult:
        return await site_crawler.crawl_worker(
            business_id,
            dataset_id,
            website_url,
            user_id,
            store=self.store,
            permissions=self.permissions,
            slots=self.slots,
            fetcher=self.fetcher,
            robots=self.robots,
            settings=self.crawl_settings,
        )

    async def crawl_dataset(self, dataset_id: Union[UUID, str], user_id: Union[UUID, str]) -> DatasetCrawlSummary:
        return await crawl_dataset(
            dataset_id,
            user_id,
            store=self.store,
            permissions=self.permissions,
            slots=self.slots,
            fetcher=self.fetcher,
            robots=self.robots,
            settings=self.crawl_settings,
        )

    async def refresh_dataset(self, dataset_id: Union[UUID, str], user_id: Union[UUID, str]) -> DatasetCrawlSummary:
        return await refresh_dataset(
            dataset_id,
            user_id,
            store=self.store,
            permissions=self.permissions,
            slots=self.slots,
            fetcher=self.fetcher,
            robots=self.robots,
            settings=self.crawl_settings,
        )

    async def export_dataset(
        self,
        dataset_id: Union[UUID, str],
        user_id: Union[UUID, str],
        format: Union[ExportFormat, str] = ExportFormat.CSV,
    ) -> ExportResult:
        return await exports.export_dataset(
            dataset_id,
            user_id,
            format,
            store=self.store,
            permissions=self.permissions,
            settings=self.export_settings,
        )

