import asyncio
import time
from uuid import uuid4

import pytest

from conftest import FakeFetcher, Seed, fast_crawl_settings, robots_client
from leadscope.concurrency import CrawlSlotPool
from leadscope.errors import DatasetNotFoundError, FetchError
from leadscope.models import CrawlStatus, Plan, UsageAction
from leadscope.permissions import SubscriptionPermissionsResolver, current_period, usage_reservations
from leadscope.robots import RobotsGuard
from leadscope.site_crawler import TIMEOUT_GUIDANCE, crawl_website, crawl_worker
from leadscope.storage import InMemoryStore

SITE = "https://dentist.gr/"


def _home(*paths, extra=""):
    links = "".join(f'<a href="{p}">{p}</a>' for p in paths)
    return f"<html><body>{links}{extra}</body></html>"


async def _work(seed, business, fetcher, *, settings=None, robots=None, slots=None, url=SITE):
    return await crawl_worker(
        business.id,
        seed.dataset.id,
        url,
        seed.user_id,
        store=seed.store,
        permissions=SubscriptionPermissionsResolver(seed.store),
        slots=slots or CrawlSlotPool(1),
        fetcher=fetcher,
        robots=robots,
        settings=settings or fast_crawl_settings(),
    )


def test_robots_disallow_blocks_the_crawl():
    seed = Seed(InMemoryStore(), plan=Plan.PRO)
    business = seed.add_business("Smile Clinic", SITE)
    fetcher = FakeFetcher({SITE: _home(extra="info@dentist.gr")})

    async def run():
        async with robots_client("User-agent: *\nDisallow: /\n") as client:
            robots = RobotsGuard(client, "LeadScopeBot/1.0")
            return await _work(seed, business, fetcher, robots=robots)

    result = asyncio.run(run())

    assert result.crawl_status is CrawlStatus.BLOCKED
    assert result.pages_visited == 0
    assert result.emails_found == 0
    assert not result.retryable
    assert fetcher.calls == []
    assert seed.store.list_contacts(business.id) == []
    assert seed.store.get_crawl_result(business.id, seed.dataset.id).crawl_status is CrawlStatus.BLOCKED


def test_missing_robots_fails_open_and_inner_disallow_is_skipped():
    fetcher = FakeFetcher(
        {
            SITE: _home("/private/team", "/contact"),
            "https://dentist.gr/contact": "<p>info@dentist.gr</p>",
            "https://dentist.gr/private/team": "<p>secret@dentist.gr</p>",
        }
    )

    async def run(rules):
        async with robots_client(rules) as client:
            robots = RobotsGuard(client, "LeadScopeBot/1.0")
            return await crawl_website(SITE, fetcher=fetcher, robots=robots, max_pages=10, settings=fast_crawl_settings())

    open_outcome = asyncio.run(run(None))
    assert open_outcome.pages_fetched == 3

    fetcher.calls.clear()
    guarded = asyncio.run(run("User-agent: *\nDisallow: /private\n"))
    assert "https://dentist.gr/private/team" not in fetcher.calls
    assert [c.value for c in guarded.emails] == ["info@dentist.gr"]


def test_page_cap_is_never_exceeded_and_is_gated():
    seed = Seed(InMemoryStore(), plan=Plan.DEMO)
    business = seed.add_business("Smile Clinic", SITE)
    pages = {SITE: _home("/a", "/b", "/c", "/d", "/e")}
    for name in "abcde":
        pages[f"https://dentist.gr/{name}"] = f"<p>page {name}</p>"
    fetcher = FakeFetcher(pages)

    result = asyncio.run(_work(seed, business, fetcher))

    assert len(fetcher.calls) == 3
    assert len(set(fetcher.calls)) == 3
    assert result.pages_visited == 3
    assert result.pages_limit == 3
    assert result.crawl_status is CrawlStatus.PARTIAL
    assert result.success
    assert result.gated
    assert not result.retryable
    assert result.upgrade_hint == "Upgrade to Starter plan to crawl more pages per website."


def test_disallowed_leftovers_do_not_count_as_a_page_cap_hit():
    seed = Seed(InMemoryStore(), plan=Plan.DEMO)
    business = seed.add_business("Smile Clinic", SITE)
    fetcher = FakeFetcher(
        {
            SITE: _home("/about", "/contact", "/private/x", "/private/y", "/blog/"),
            "https://dentist.gr/about": "<p>about us</p>",
            "https://dentist.gr/contact": "<p>info@dentist.gr</p>",
        }
    )

    async def run():
        async with robots_client("User-agent: *\nDisallow: /private\n") as client:
            robots = RobotsGuard(client, "LeadScopeBot/1.0")
            return await _work(seed, business, fetcher, robots=robots)

    result = asyncio.run(run())

    assert result.pages_visited == 3
    assert result.crawl_status is CrawlStatus.COMPLETED
    assert not result.gated
    assert result.upgrade_hint is None
    assert not any("/private/" in url for url in fetcher.calls)


def test_wall_clock_timeout_stops_the_crawl():
    seed = Seed(InMemoryStore(), plan=Plan.PRO)
    business = seed.add_business("Slow Clinic", SITE)
    pages = {SITE: _home("/a", "/b", "/c", extra="<p>info@dentist.gr</p>")}
    for name in "abc":
        pages[f"https://dentist.gr/{name}"] = "<p>slow</p>"
    fetcher = FakeFetcher(pages, delay_s=0.2)
    settings = fast_crawl_settings(crawl_timeout_s=0.3, page_timeout_s=1.0)

    started = time.monotonic()
    result = asyncio.run(_work(seed, business, fetcher, settings=settings))
    elapsed = time.monotonic() - started

    assert elapsed < settings.crawl_timeout_s + settings.page_timeout_s
    assert result.crawl_status is CrawlStatus.PARTIAL
    assert not result.success
    assert result.gated
    assert not result.retryable
    assert result.reason == TIMEOUT_GUIDANCE
    stored = seed.store.get_crawl_result(business.id, seed.dataset.id)
    assert any("timeout" in error.message.lower() for error in stored.errors)
    # contacts from the pages fetched before the timeout are still kept
    assert result.emails_found == 1


def test_slot_pool_bounds_concurrent_crawls():
    seed = Seed(InMemoryStore(), plan=Plan.PRO)
    businesses = []
    pages = {}
    for i in range(6):
        url = f"https://clinic{i}.gr/"
        businesses.append((seed.add_business(f"Clinic {i}", url), url))
        pages[url] = f"<p>info@clinic{i}.gr</p>"
    fetcher = FakeFetcher(pages, delay_s=0.02)

    async def run():
        slots = CrawlSlotPool(2)
        results = await asyncio.gather(
            *(_work(seed, business, fetcher, slots=slots, url=url) for business, url in businesses)
        )
        return slots, results

    slots, results = asyncio.run(run())

    assert slots.peak <= 2
    assert slots.active == 0
    assert all(r.crawl_status is CrawlStatus.COMPLETED for r in results)


def test_slot_is_released_when_the_crawl_raises():
    async def run():
        slots = CrawlSlotPool(1)
        with pytest.raises(RuntimeError):
            async with slots.slot():
                raise RuntimeError("boom")
        async with slots.slot():
            return slots.active

    assert asyncio.run(run()) == 1


def test_released_slot_goes_to_the_oldest_waiter():
    async def run():
        slots = CrawlSlotPool(1)
        order = []

        async def crawl(name):
            async with slots.slot():
                order.append(name)
                await asyncio.sleep(0)

        async with slots.slot():
            queued = [asyncio.ensure_future(crawl(name)) for name in ("first", "second", "third")]
            for _ in range(3):
                await asyncio.sleep(0)
            assert slots.waiting == 3
        late = asyncio.ensure_future(crawl("late"))
        await asyncio.gather(*queued, late)
        return order, slots

    order, slots = asyncio.run(run())

    assert order == ["first", "second", "third", "late"]
    assert slots.active == 0
    assert slots.peak == 1


def test_cancelled_waiter_does_not_leak_a_slot():
    async def run():
        slots = CrawlSlotPool(1)

        async def hold():
            async with slots.slot():
                await asyncio.sleep(10)

        async with slots.slot():
            waiter = asyncio.ensure_future(hold())
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
        async with slots.slot():
            return slots.active, slots.waiting

    assert asyncio.run(run()) == (1, 0)


def test_two_runs_replace_email_a_with_b():
    seed = Seed(InMemoryStore(), plan=Plan.PRO)
    business = seed.add_business("Smile Clinic", SITE)
    fetcher = FakeFetcher({SITE: "<p>a@dentist.gr</p>"})

    first = asyncio.run(_work(seed, business, fetcher))
    fetcher.pages[SITE] = "<p>b@dentist.gr</p>"
    second = asyncio.run(_work(seed, business, fetcher))

    assert first.contacts.added == 1
    assert second.crawl_status is CrawlStatus.COMPLETED
    assert second.contacts.added == 1
    assert second.contacts.deactivated == 1
    active = seed.store.list_contacts(business.id, active_only=True)
    assert [c.value for c in active] == ["b@dentist.gr"]
    assert len(seed.store.list_contacts(business.id)) == 2
    assert len(seed.store.crawl_results) == 1


def test_page_errors_make_the_crawl_partial():
    pages = {
        SITE: _home("/contact", "/broken", "/down"),
        "https://dentist.gr/contact": "<p>info@dentist.gr</p>",
        "https://dentist.gr/broken": 500,
        "https://dentist.gr/down": FetchError("connection reset"),
    }
    outcome = asyncio.run(
        crawl_website(SITE, fetcher=FakeFetcher(pages), robots=None, max_pages=10, settings=fast_crawl_settings())
    )

    assert outcome.status is CrawlStatus.PARTIAL
    assert outcome.pages_visited == 4
    assert outcome.pages_fetched == 2
    assert {e.url for e in outcome.errors} == {"https://dentist.gr/broken", "https://dentist.gr/down"}
    assert outcome.contact_pages == ["https://dentist.gr/contact"]


def test_depth_ceiling_and_skip_list():
    pages = {
        SITE: _home("/a", "/blog/post", "https://other.gr/x"),
        "https://dentist.gr/a": _home("/a/b"),
        "https://dentist.gr/a/b": _home("/a/b/c"),
        "https://dentist.gr/a/b/c": "<p>too deep</p>",
    }
    fetcher = FakeFetcher(pages)
    outcome = asyncio.run(
        crawl_website(SITE, fetcher=fetcher, robots=None, max_pages=10, settings=fast_crawl_settings(max_depth=2))
    )

    assert fetcher.calls == [SITE, "https://dentist.gr/a", "https://dentist.gr/a/b"]
    assert outcome.status is CrawlStatus.COMPLETED


def test_social_links_only_from_homepage():
    pages = {
        SITE: _home("/about", extra='<a href="https://facebook.com/smileclinic">fb</a>'),
        "https://dentist.gr/about": '<a href="https://instagram.com/other">ig</a>',
    }
    outcome = asyncio.run(
        crawl_website(SITE, fetcher=FakeFetcher(pages), robots=None, max_pages=10, settings=fast_crawl_settings())
    )

    assert outcome.social.facebook == "https://www.facebook.com/smileclinic"
    assert outcome.social.instagram is None


def test_unreachable_site_is_not_crawled_and_not_counted():
    seed = Seed(InMemoryStore(), plan=Plan.DEMO)
    business = seed.add_business("Gone Clinic", SITE)

    result = asyncio.run(_work(seed, business, FakeFetcher({SITE: 503})))

    assert result.crawl_status is CrawlStatus.NOT_CRAWLED
    assert not result.success
    assert result.error == "HTTP 503"
    assert seed.store.get_usage(seed.user_id, current_period()).crawls == 0
    assert usage_reservations.held(seed.user_id, UsageAction.CRAWL) == 0


def test_monthly_crawl_quota_denies_before_fetching():
    seed = Seed(InMemoryStore(), plan=Plan.DEMO)
    business = seed.add_business("Smile Clinic", SITE)
    for _ in range(10):
        seed.store.increment_usage(seed.user_id, UsageAction.CRAWL, current_period())
    fetcher = FakeFetcher({SITE: "<p>info@dentist.gr</p>"})

    result = asyncio.run(_work(seed, business, fetcher))

    assert result.gated
    assert not result.success
    assert result.upgrade_hint == "Upgrade to Starter plan for more monthly crawls."
    assert fetcher.calls == []
    assert seed.store.get_crawl_result(business.id, seed.dataset.id) is None


def test_usage_is_counted_once_per_fetched_crawl():
    seed = Seed(InMemoryStore(), plan=Plan.STARTER)
    business = seed.add_business("Smile Clinic", SITE)

    asyncio.run(_work(seed, business, FakeFetcher({SITE: "<p>hi</p>"})))

    assert seed.store.get_usage(seed.user_id, current_period()).crawls == 1
    assert seed.store.get_website(business.id).last_crawled_at is not None


def test_fatal_conditions():
    seed = Seed(InMemoryStore(), plan=Plan.PRO)
    business = seed.add_business("Smile Clinic", SITE)
    fetcher = FakeFetcher({})

    with pytest.raises(ValueError):
        asyncio.run(
            crawl_worker(
                "not-a-uuid",
                seed.dataset.id,
                SITE,
                seed.user_id,
                store=seed.store,
                permissions=SubscriptionPermissionsResolver(seed.store),
                slots=CrawlSlotPool(1),
                fetcher=fetcher,
                robots=None,
            )
        )

    with pytest.raises(DatasetNotFoundError):
        asyncio.run(
            crawl_worker(
                business.id,
                uuid4(),
                SITE,
                seed.user_id,
                store=seed.store,
                permissions=SubscriptionPermissionsResolver(seed.store),
                slots=CrawlSlotPool(1),
                fetcher=fetcher,
                robots=None,
            )
        )

    stranger = asyncio.run(
        crawl_worker(
            business.id,
            seed.dataset.id,
            SITE,
            uuid4(),
            store=seed.store,
            permissions=SubscriptionPermissionsResolver(seed.store),
            slots=CrawlSlotPool(1),
            fetcher=fetcher,
            robots=None,
        )
    )
    assert not stranger.success
    assert stranger.error == "Dataset does not belong to user"

    invalid = asyncio.run(_work(seed, business, fetcher, url="mailto:x@y.gr"))
    assert not invalid.success
    assert invalid.error.startswith("Invalid website URL")
    assert seed.store.get_crawl_result(business.id, seed.dataset.id) is None
