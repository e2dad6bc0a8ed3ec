from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Union
from uuid import UUID, uuid4

import httpx
import pytest

from leadscope.config import CrawlSettings
from leadscope.fetcher import FetchResult
from leadscope.models import Business, City, Dataset, Industry, Plan, Subscription, Website
from leadscope.storage import InMemoryStore

Page = Union[str, int, Exception]


class FakeFetcher:
    """Serves canned HTML by URL; an int is an HTTP status, an exception is raised."""

    def __init__(self, pages: Dict[str, Page], delay_s: float = 0.0) -> None:
        self.pages = pages
        self.delay_s = delay_s
        self.calls: List[str] = []

    async def fetch(self, url: str, timeout_s: float) -> FetchResult:
        self.calls.append(url)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        page = self.pages.get(url, 404)
        if isinstance(page, Exception):
            raise page
        if isinstance(page, int):
            return FetchResult(url, url, page, "text/html", "")
        return FetchResult(url, url, 200, "text/html", page)


def robots_client(rules: Optional[str] = None, status: int = 200) -> httpx.AsyncClient:
    """AsyncClient whose only route is robots.txt."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/robots.txt":
            if rules is None:
                return httpx.Response(404)
            return httpx.Response(status, text=rules)
        return httpx.Response(404)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def fast_crawl_settings(**overrides) -> CrawlSettings:
    values = dict(page_delay_s=0.0, crawl_timeout_s=5.0, page_timeout_s=2.0, max_depth=2, max_pages_per_crawl=50)
    values.update(overrides)
    return CrawlSettings(**values)


class Seed:
    """A user with one dataset in an ``InMemoryStore``."""

    def __init__(self, store: InMemoryStore, plan: Plan = Plan.DEMO, internal: bool = False) -> None:
        self.store = store
        self.user_id: UUID = uuid4()
        self.city = store.save_city(City(name="Athens", lat=37.9838, lng=23.7275, radius_km=3))
        self.industry = store.save_industry(Industry(name="Dentists"))
        self.dataset = store.create_dataset(
            Dataset(user_id=self.user_id, city_id=self.city.id, industry_id=self.industry.id, name="Dentists - Athens")
        )
        store.save_subscription(Subscription(user_id=self.user_id, plan=plan, is_internal_user=internal))

    def add_business(self, name: str, url: Optional[str] = None, **fields) -> Business:
        business, _ = self.store.create_business(
            Business(
                name=name,
                normalized_name=name.lower(),
                dataset_id=self.dataset.id,
                owner_user_id=self.user_id,
                city_id=self.city.id,
                industry_id=self.industry.id,
                **fields,
            )
        )
        if url:
            self.store.save_website(Website(business_id=business.id, url=url))
        return business


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def seed(store: InMemoryStore) -> Seed:
    return Seed(store)


