"""Geo-grid business discovery and the discovery worker."""

from __future__ import annotations

import asyncio
import re
import time
import unicodedata
from collections import deque
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Deque, List, Optional, Tuple, Union
from uuid import UUID

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .action_log import log_action
from .config import DiscoverySettings, discovery_settings
from .errors import DatasetNotFoundError, PlacesAPIError
from .geo_grid import generate_grid_points
from .google_maps import PlacesClient
from .models import (
    ActionType,
    Business,
    City,
    Dataset,
    DiscoveryResult,
    DiscoveryStats,
    GridPoint,
    Industry,
    PlaceCandidate,
    UsageAction,
    UserPermissions,
    Website,
    coerce_uuid,
    utcnow,
)
from .permissions import PermissionsResolver, check_user_usage, record_usage
from .pricing import UNLIMITED, check_pricing_gate, next_plan
from .urls import normalize_url

logger = structlog.get_logger(__name__)

_NON_WORD = re.compile(r"[\W_]+", re.UNICODE)


def normalize_business_name(name: str) -> str:
    """Dedup key: lowercase, accents stripped, punctuation collapsed to single spaces."""

    decomposed = unicodedata.normalize("NFKD", name or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_WORD.sub(" ", stripped.lower()).strip()


class RateLimiter:
    """At most ``concurrency`` calls in flight and ``interval_cap`` starts per ``interval_s``."""

    def __init__(self, concurrency: int = 1, interval_s: float = 1.0, interval_cap: int = 5) -> None:
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._interval_s = interval_s
        self._interval_cap = max(1, interval_cap)
        self._starts: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def _reserve(self) -> None:
        while True:
            async with self._lock:
                now = time.monotonic()
                while self._starts and now - self._starts[0] >= self._interval_s:
                    self._starts.popleft()
                if len(self._starts) < self._interval_cap:
                    self._starts.append(now)
                    return
                wait = self._interval_s - (now - self._starts[0])
            await asyncio.sleep(wait)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            await self._reserve()
            yield


class GeoGridDiscovery:
    """Fans one text query out over grid points, deduplicating by place id."""

    def __init__(self, places: PlacesClient, settings: DiscoverySettings = discovery_settings) -> None:
        self._places = places
        self._settings = settings
        self._limiter = RateLimiter(settings.concurrency, settings.interval_s, settings.interval_cap)

    async def _search_point(self, query: str, point: GridPoint, stats: DiscoveryStats) -> List[PlaceCandidate]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self._settings.retry_attempts)),
            wait=wait_exponential(multiplier=self._settings.retry_backoff_s, min=0, max=30),
            retry=retry_if_exception_type(PlacesAPIError),
            reraise=True,
        )
        results: List[PlaceCandidate] = []
        async for attempt in retrying:
            with attempt:
                async with self._limiter.slot():
                    stats.api_calls_made += 1
                    results = await self._places.search_places(query, point)
        return results

    async def discover(
        self,
        query: str,
        center: GridPoint,
        radius_km: float,
        step_km: Optional[float] = None,
    ) -> Tuple[List[PlaceCandidate], DiscoveryStats]:
        points = generate_grid_points(center.lat, center.lng, radius_km, step_km or self._settings.grid_step_km)
        stats = DiscoveryStats(grid_points_generated=len(points))
        logger.info("discovery_started", query=query, grid_points=len(points), radius_km=radius_km)

        async def run(point: GridPoint) -> List[PlaceCandidate]:
            try:
                return await self._search_point(query, point, stats)
            except PlacesAPIError as exc:
                stats.errors.append(f"Grid point ({point.lat}, {point.lng}): {exc}")
                return []

        batches = await asyncio.gather(*(run(point) for point in points))

        unique: List[PlaceCandidate] = []
        seen: set[str] = set()
        for batch in batches:
            for candidate in batch:
                stats.businesses_found += 1
                if candidate.place_id in seen:
                    stats.duplicates_skipped += 1
                    continue
                seen.add(candidate.place_id)
                unique.append(candidate)
        stats.unique_place_ids = len(unique)
        logger.info(
            "discovery_finished",
            query=query,
            api_calls=stats.api_calls_made,
            unique=stats.unique_place_ids,
            duplicates=stats.duplicates_skipped,
            errors=len(stats.errors),
        )
        return unique, stats


def _resolve_reference(store, name: str, finder: str, saver: str, model):
    existing = getattr(store, finder)(name)
    if existing is not None:
        return existing
    return getattr(store, saver)(model(name=name.strip()))


def _gated(reason: Optional[str], hint: Optional[str], **extra) -> DiscoveryResult:
    return DiscoveryResult(success=False, gated=True, reason=reason, upgrade_hint=hint, **extra)


def _check_new_dataset(store, user: UserPermissions, user_id: UUID) -> Optional[DiscoveryResult]:
    usage = check_user_usage(store, user, user_id, UsageAction.DATASET)
    if not usage.allowed:
        return _gated(usage.reason, usage.upgrade_hint)
    if not user.is_internal_user and user.max_datasets < UNLIMITED:
        owned = store.count_datasets(user_id)
        if owned >= user.max_datasets:
            target = next_plan(user.plan)
            hint = f"Upgrade to {target.value.capitalize()} plan for more datasets." if target else None
            return _gated(
                f"{user.plan.value.capitalize()} plan allows up to {user.max_datasets} datasets. You have {owned}.",
                hint,
            )
    return None


async def discover_businesses(
    industry: str,
    city: str,
    user_id: Union[UUID, str],
    dataset_id: Union[UUID, str, None] = None,
    *,
    store,
    permissions: PermissionsResolver,
    places: PlacesClient,
    coordinates: Optional[GridPoint] = None,
    radius_km: Optional[float] = None,
    step_km: Optional[float] = None,
    settings: DiscoverySettings = discovery_settings,
) -> DiscoveryResult:
    """Discover businesses for an industry in a city and persist them into a dataset.

    Without ``dataset_id`` a dataset for the same (user, city, industry) refreshed
    within the reuse window is reused, otherwise a new one is created behind the
    dataset usage gate and ``max_datasets``. Raises ``ValueError`` for malformed
    ids and ``DatasetNotFoundError`` for an unknown explicit dataset.
    """

    user_id = coerce_uuid(user_id, "user_id")
    explicit_dataset = coerce_uuid(dataset_id, "dataset_id") if dataset_id is not None else None

    def finish(result: DiscoveryResult) -> DiscoveryResult:
        log_action(
            user_id=user_id,
            action="discovery",
            dataset_id=result.dataset_id,
            result_summary=(
                f"{result.businesses_found} found, {result.businesses_created} created, "
                f"{result.websites_created} websites"
            ),
            gated=result.gated,
            error=result.error,
            metadata={
                "industry": industry,
                "city": city,
                "dataset_reused": result.dataset_reused,
                "api_calls": result.stats.api_calls_made,
                "grid_points": result.stats.grid_points_generated,
            },
        )
        return result

    user = permissions.resolve(user_id)
    city_row: City = _resolve_reference(store, city, "find_city_by_name", "save_city", City)
    industry_row: Industry = _resolve_reference(store, industry, "find_industry_by_name", "save_industry", Industry)

    dataset: Optional[Dataset] = None
    if explicit_dataset is not None:
        dataset = store.get_dataset(explicit_dataset)
        if dataset is None:
            raise DatasetNotFoundError(explicit_dataset)
        if dataset.user_id != user_id:
            return finish(DiscoveryResult(success=False, dataset_id=dataset.id, error="Dataset does not belong to user"))
        if not user.is_internal_user:
            cities = {b.city_id for b in store.list_businesses(dataset.id) if b.city_id} | {dataset.city_id}
            if city_row.id not in cities:
                gate = check_pricing_gate(user.plan, ActionType.DISCOVER, cities_per_dataset=len(cities) + 1)
                if not gate.allowed:
                    return finish(_gated(gate.reason, gate.upgrade_hint, dataset_id=dataset.id))

    center = coordinates
    radius = radius_km
    if center is None and city_row.lat is not None and city_row.lng is not None:
        center = GridPoint(lat=city_row.lat, lng=city_row.lng)
        radius = radius or city_row.radius_km
    if center is None:
        try:
            resolved = await places.get_city_coordinates(city_row.name)
        except PlacesAPIError as exc:
            return finish(DiscoveryResult(success=False, error=f"City lookup failed: {exc}"))
        if resolved is None:
            return finish(DiscoveryResult(success=False, error=f"Could not resolve coordinates for city {city!r}"))
        city_row = store.save_city(
            city_row.model_copy(update={"lat": resolved.lat, "lng": resolved.lng, "radius_km": resolved.radius_km})
        )
        center = GridPoint(lat=resolved.lat, lng=resolved.lng)
        radius = radius or resolved.radius_km
    radius = radius or settings.default_city_radius_km

    reused = False
    created_dataset = False
    if dataset is None:
        since = utcnow() - timedelta(days=settings.dataset_reuse_days)
        dataset = store.find_reusable_dataset(user_id, city_row.id, industry_row.id, since)
        if dataset is not None:
            reused = True
        else:
            denied = _check_new_dataset(store, user, user_id)
            if denied is not None:
                return finish(denied)
            dataset = store.create_dataset(
                Dataset(
                    user_id=user_id,
                    city_id=city_row.id,
                    industry_id=industry_row.id,
                    name=f"{industry_row.name} - {city_row.name}",
                )
            )
            created_dataset = True
            record_usage(store, user_id, UsageAction.DATASET)

    engine = GeoGridDiscovery(places, settings)
    candidates, stats = await engine.discover(f"{industry_row.name} {city_row.name}", center, radius, step_km)

    result = DiscoveryResult(
        success=stats.grid_points_generated == 0 or len(stats.errors) < stats.grid_points_generated,
        dataset_id=dataset.id,
        dataset_reused=reused,
        businesses_found=len(candidates),
        stats=stats,
        errors=list(stats.errors),
    )
    with store.batch():
        for candidate in candidates:
            business, created = store.create_business(
                Business(
                    name=candidate.name,
                    normalized_name=normalize_business_name(candidate.name),
                    address=candidate.address,
                    postal_code=candidate.postal_code,
                    city_id=city_row.id,
                    industry_id=industry_row.id,
                    external_place_id=candidate.place_id,
                    dataset_id=dataset.id,
                    owner_user_id=user_id,
                    phone=candidate.phone,
                    rating=candidate.rating,
                    reviews_count=candidate.user_rating_count,
                )
            )
            if created:
                result.businesses_created += 1
            else:
                result.businesses_skipped += 1
            website_url = normalize_url(candidate.website)
            if website_url:
                _, website_created = store.save_website(Website(business_id=business.id, url=website_url))
                result.websites_created += int(website_created)

    if created_dataset or result.businesses_created > 0:
        store.mark_dataset_refreshed(dataset.id, utcnow())
    if not result.success:
        result.error = "All places searches failed"
    return finish(result)
