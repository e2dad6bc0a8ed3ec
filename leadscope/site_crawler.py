"""Bounded BFS website crawler and the crawl worker built on it."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set, Tuple, Union
from uuid import UUID

import structlog

from .action_log import log_action
from .change_detector import PageRecord, apply_contact_changes, contact_key
from .concurrency import CrawlSlotPool
from .config import CrawlSettings, crawl_settings
from .errors import DatasetNotFoundError, FetchError
from .extractor import classify_page, content_hash, extract_contacts, extract_social, parse_page
from .fetcher import Fetcher
from .models import (
    ActionType,
    ContactCandidate,
    ContactType,
    CrawlError,
    CrawlResult,
    CrawlStatus,
    CrawlWorkerResult,
    SocialLinks,
    UsageAction,
    coerce_uuid,
    utcnow,
)
from .permissions import PermissionsResolver, UsageReservations, record_usage, usage_reservations
from .pricing import check_pricing_gate
from .robots import RobotsGuard
from .urls import canonicalize, normalize_url, same_registrable_domain, should_skip_url

logger = structlog.get_logger(__name__)

TIMEOUT_GUIDANCE = "Crawl stopped due to safety timeout limit. This crawl will not be retried."


@dataclass
class CrawlOutcome:
    """Everything one BFS traversal produced."""

    start_url: str
    status: CrawlStatus = CrawlStatus.NOT_CRAWLED
    pages_visited: int = 0
    pages_fetched: int = 0
    page_cap_hit: bool = False
    timed_out: bool = False
    candidates: List[ContactCandidate] = field(default_factory=list)
    pages: List[PageRecord] = field(default_factory=list)
    contact_pages: List[str] = field(default_factory=list)
    social: SocialLinks = field(default_factory=SocialLinks)
    errors: List[CrawlError] = field(default_factory=list)

    @property
    def emails(self) -> List[ContactCandidate]:
        return [c for c in self.candidates if c.contact_type is ContactType.EMAIL]

    @property
    def phones(self) -> List[ContactCandidate]:
        return [c for c in self.candidates if c.contact_type is not ContactType.EMAIL]


def _merge_candidates(
    merged: Dict[Tuple[str, str, UUID], ContactCandidate],
    business_id: UUID,
    found: List[ContactCandidate],
) -> List[Tuple[str, str, UUID]]:
    keys = []
    for candidate in found:
        key = contact_key(business_id, candidate.contact_type, candidate.value)
        keys.append(key)
        current = merged.get(key)
        if current is None or candidate.confidence > current.confidence:
            merged[key] = candidate
    return keys


async def crawl_website(
    start_url: str,
    *,
    fetcher: Fetcher,
    robots: Optional[RobotsGuard],
    max_pages: int,
    settings: CrawlSettings = crawl_settings,
    business_id: Optional[UUID] = None,
) -> CrawlOutcome:
    """Breadth-first crawl of one site under page, depth and wall-clock limits.

    ``start_url`` must already be canonical. The crawl never fetches more than
    ``max_pages`` distinct canonical URLs and checks the wall clock before every
    fetch; an in-flight fetch is bounded by what is left of the budget.
    """

    outcome = CrawlOutcome(start_url=start_url)
    key_owner = business_id or UUID(int=0)

    if robots is not None and settings.respect_robots and not await robots.allowed(start_url):
        outcome.status = CrawlStatus.BLOCKED
        return outcome

    queue: Deque[Tuple[str, int]] = deque([(start_url, 0)])
    queued: Set[str] = {start_url}
    visited: Set[str] = set()
    merged: Dict[Tuple[str, str, UUID], ContactCandidate] = {}
    contact_pages: List[str] = []
    started = time.monotonic()

    def time_left() -> float:
        return settings.crawl_timeout_s - (time.monotonic() - started)

    while queue and outcome.pages_visited < max_pages:
        if time_left() <= 0:
            outcome.timed_out = True
            break

        url, depth = queue.popleft()
        if url in visited or should_skip_url(url):
            continue
        if depth > 0 and robots is not None and settings.respect_robots and not await robots.allowed(url):
            continue

        if outcome.pages_visited:
            await asyncio.sleep(min(settings.page_delay_s, max(time_left(), 0)))
            if time_left() <= 0:
                outcome.timed_out = True
                break
        visited.add(url)
        outcome.pages_visited += 1

        remaining = time_left()
        budget = min(settings.page_timeout_s, remaining)
        try:
            page = await asyncio.wait_for(fetcher.fetch(url, timeout_s=budget), timeout=budget)
        except asyncio.TimeoutError:
            if budget >= remaining:
                outcome.timed_out = True
                break
            outcome.errors.append(CrawlError(url=url, message=f"Page fetch timed out after {budget:g}s"))
            continue
        except FetchError as exc:
            outcome.errors.append(CrawlError(url=url, message=str(exc)))
            continue

        if not page.ok:
            outcome.errors.append(CrawlError(url=url, message=f"HTTP {page.status}"))
            continue

        outcome.pages_fetched += 1
        final_url = canonicalize(page.final_url) or url
        visited.add(final_url)
        queued.add(final_url)

        found = extract_contacts(page.content, final_url)
        keys = _merge_candidates(merged, key_owner, found)
        outcome.pages.append(
            PageRecord(
                url=final_url,
                page_type=classify_page(final_url, depth),
                content_hash=content_hash(page.content),
                values=keys,
            )
        )
        if depth == 0:
            outcome.social = extract_social(page.content)

        parsed = parse_page(page.content, page.final_url or url)
        for link in parsed.contact_page_urls:
            if link not in contact_pages:
                contact_pages.append(link)
        if depth + 1 > settings.max_depth:
            continue
        for link in parsed.links:
            if link in queued or not same_registrable_domain(link, start_url) or should_skip_url(link):
                continue
            queued.add(link)
            queue.append((link, depth + 1))

    # only links the loop would actually have fetched count as cut off by the cap
    pending = [u for u, _ in queue if u not in visited and not should_skip_url(u)]
    if pending and outcome.pages_visited >= max_pages and robots is not None and settings.respect_robots:
        pending = [u for u in pending if await robots.allowed(u)]
    outcome.page_cap_hit = outcome.pages_visited >= max_pages and bool(pending)
    outcome.candidates = list(merged.values())
    outcome.contact_pages = contact_pages
    if outcome.timed_out:
        outcome.errors.append(CrawlError(url=start_url, message=f"Crawl timeout after {settings.crawl_timeout_s:g}s"))

    if outcome.pages_fetched == 0:
        outcome.status = CrawlStatus.NOT_CRAWLED
    elif outcome.timed_out or outcome.page_cap_hit or outcome.errors:
        outcome.status = CrawlStatus.PARTIAL
    else:
        outcome.status = CrawlStatus.COMPLETED
    return outcome


async def crawl_worker(
    business_id: Union[UUID, str],
    dataset_id: Union[UUID, str],
    website_url: str,
    user_id: Union[UUID, str],
    *,
    store,
    permissions: PermissionsResolver,
    slots: CrawlSlotPool,
    fetcher: Fetcher,
    robots: Optional[RobotsGuard],
    settings: CrawlSettings = crawl_settings,
    reservations: UsageReservations = usage_reservations,
) -> CrawlWorkerResult:
    """Crawl one business website and reconcile its contacts.

    Raises ``ValueError`` for malformed ids and ``DatasetNotFoundError`` for an
    unknown dataset. Gate denials and fatal conditions come back as results.
    The monthly crawl quota is claimed through ``reservations`` while the crawl
    runs, so workers started together cannot overrun it.
    """

    business_id = coerce_uuid(business_id, "business_id")
    dataset_id = coerce_uuid(dataset_id, "dataset_id")
    user_id = coerce_uuid(user_id, "user_id")

    dataset = store.get_dataset(dataset_id)
    if dataset is None:
        raise DatasetNotFoundError(dataset_id)

    base = dict(business_id=business_id, dataset_id=dataset_id, website_url=website_url or "")

    def finish(result: CrawlWorkerResult) -> CrawlWorkerResult:
        log_action(
            user_id=user_id,
            action="crawl",
            dataset_id=dataset_id,
            result_summary=f"{result.crawl_status.value}: {result.pages_visited} pages, "
            f"{result.emails_found} emails, {result.phones_found} phones",
            gated=result.gated,
            error=result.error,
            metadata={"business_id": str(business_id), "website_url": website_url, "retryable": result.retryable},
        )
        return result

    if dataset.user_id != user_id:
        return finish(
            CrawlWorkerResult(success=False, retryable=False, error="Dataset does not belong to user", **base)
        )
    business = store.get_business(business_id)
    if business is None or business.dataset_id != dataset_id:
        return finish(
            CrawlWorkerResult(success=False, retryable=False, error="Business not found in dataset", **base)
        )

    async with slots.slot():
        user = permissions.resolve(user_id)
        with reservations.claim(store, user, user_id, UsageAction.CRAWL) as usage:
            if not usage.allowed:
                return finish(
                    CrawlWorkerResult(
                        success=False,
                        gated=True,
                        retryable=False,
                        reason=usage.reason,
                        upgrade_hint=usage.upgrade_hint,
                        **base,
                    )
                )

            if user.is_internal_user:
                page_cap = settings.max_pages_per_crawl
            else:
                page_cap = min(user.max_crawl_pages, settings.max_pages_per_crawl)

            start_url = normalize_url(website_url)
            if start_url is None:
                return finish(
                    CrawlWorkerResult(
                        success=False, retryable=False, pages_limit=page_cap, error=f"Invalid website URL: {website_url!r}", **base
                    )
                )
            base["website_url"] = start_url

            started_at = utcnow()
            logger.info("crawl_started", business_id=str(business_id), url=start_url, page_cap=page_cap)
            outcome = await crawl_website(
                start_url,
                fetcher=fetcher,
                robots=robots,
                max_pages=page_cap,
                settings=settings,
                business_id=business_id,
            )
            finished_at = utcnow()

            store.upsert_crawl_result(
                CrawlResult(
                    business_id=business_id,
                    dataset_id=dataset_id,
                    website_url=start_url,
                    started_at=started_at,
                    finished_at=finished_at,
                    pages_visited=outcome.pages_visited,
                    crawl_status=outcome.status,
                    emails=outcome.emails,
                    phones=outcome.phones,
                    contact_pages=outcome.contact_pages,
                    social=outcome.social,
                    errors=outcome.errors,
                    updated_at=finished_at,
                )
            )

            result = CrawlWorkerResult(
                success=outcome.pages_fetched > 0 or outcome.status is CrawlStatus.BLOCKED,
                pages_visited=outcome.pages_visited,
                pages_limit=page_cap,
                crawl_status=outcome.status,
                emails_found=len(outcome.emails),
                phones_found=len(outcome.phones),
                contact_pages_found=len(outcome.contact_pages),
                **base,
            )

            if outcome.pages_fetched > 0:
                changes = apply_contact_changes(
                    store,
                    business_id,
                    outcome.candidates,
                    outcome.pages,
                    now=finished_at,
                    allow_deactivation=outcome.status is CrawlStatus.COMPLETED,
                )
                result.contacts = changes.summary()
                store.touch_website(business_id, finished_at)
                record_usage(store, user_id, UsageAction.CRAWL)
                log_action(
                    user_id=user_id,
                    action="usage_increment",
                    dataset_id=dataset_id,
                    result_summary="crawl counted",
                )

            if outcome.status is CrawlStatus.BLOCKED:
                result.retryable = False
                result.reason = "Disallowed by robots.txt"
            elif outcome.timed_out:
                result.success = False
                result.gated = True
                result.retryable = False
                result.reason = TIMEOUT_GUIDANCE
            elif outcome.page_cap_hit:
                result.retryable = False
                if page_cap < settings.max_pages_per_crawl:
                    gate = check_pricing_gate(user.plan, ActionType.CRAWL, crawl_pages=page_cap + 1)
                    result.gated = True
                    result.reason = gate.reason
                    result.upgrade_hint = gate.upgrade_hint
            elif outcome.status is CrawlStatus.NOT_CRAWLED:
                result.error = outcome.errors[0].message if outcome.errors else "No pages could be fetched"

            logger.info(
                "crawl_finished",
                business_id=str(business_id),
                status=outcome.status.value,
                pages=outcome.pages_visited,
                errors=len(outcome.errors),
            )
            return finish(result)
