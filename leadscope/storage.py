"""Persistence for datasets, businesses, contacts, crawl results and usage.

``InMemoryStore`` is the reference implementation and enforces the uniqueness
rules; ``LocalStore`` persists it to a JSON snapshot; ``SupabaseStore`` maps the
same operations onto Supabase tables.
"""

from __future__ import annotations

import abc
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type, TypeVar
from uuid import UUID

import structlog
from postgrest.exceptions import APIError
from pydantic import BaseModel, Field
from supabase import Client, create_client

from .config import SupabaseSettings, supabase_settings
from .models import (
    Business,
    City,
    Contact,
    ContactSource,
    CrawlResult,
    Dataset,
    ExportLog,
    Industry,
    Subscription,
    UsageAction,
    UsageCounters,
    Website,
    utcnow,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class Store(abc.ABC):
    """Operations the workers need from the relational store."""

    # cities / industries
    @abc.abstractmethod
    def get_city(self, city_id: UUID) -> Optional[City]: ...

    @abc.abstractmethod
    def find_city_by_name(self, name: str) -> Optional[City]: ...

    @abc.abstractmethod
    def save_city(self, city: City) -> City: ...

    @abc.abstractmethod
    def get_industry(self, industry_id: UUID) -> Optional[Industry]: ...

    @abc.abstractmethod
    def find_industry_by_name(self, name: str) -> Optional[Industry]: ...

    @abc.abstractmethod
    def save_industry(self, industry: Industry) -> Industry: ...

    # datasets
    @abc.abstractmethod
    def get_dataset(self, dataset_id: UUID) -> Optional[Dataset]: ...

    @abc.abstractmethod
    def find_reusable_dataset(
        self, user_id: UUID, city_id: UUID, industry_id: UUID, refreshed_since: datetime
    ) -> Optional[Dataset]: ...

    @abc.abstractmethod
    def count_datasets(self, user_id: UUID) -> int: ...

    @abc.abstractmethod
    def create_dataset(self, dataset: Dataset) -> Dataset: ...

    @abc.abstractmethod
    def mark_dataset_refreshed(self, dataset_id: UUID, refreshed_at: datetime) -> None: ...

    # businesses / websites
    @abc.abstractmethod
    def create_business(self, business: Business) -> Tuple[Business, bool]:
        """Insert unless (dataset, place id) or (dataset, normalized name) exists; returns (row, created)."""

    @abc.abstractmethod
    def get_business(self, business_id: UUID) -> Optional[Business]: ...

    @abc.abstractmethod
    def list_businesses(self, dataset_id: UUID) -> List[Business]:
        """Businesses of a dataset in creation order."""

    @abc.abstractmethod
    def save_website(self, website: Website) -> Tuple[Website, bool]:
        """One website per business; returns (row, created)."""

    @abc.abstractmethod
    def get_website(self, business_id: UUID) -> Optional[Website]: ...

    @abc.abstractmethod
    def touch_website(self, business_id: UUID, crawled_at: datetime) -> None: ...

    # contacts
    @abc.abstractmethod
    def list_contacts(self, business_id: UUID, active_only: bool = False) -> List[Contact]: ...

    @abc.abstractmethod
    def save_contact(self, contact: Contact) -> Contact: ...

    @abc.abstractmethod
    def add_contact_source(self, source: ContactSource) -> ContactSource: ...

    @abc.abstractmethod
    def list_contact_sources(self, contact_id: UUID) -> List[ContactSource]: ...

    # crawl results
    @abc.abstractmethod
    def upsert_crawl_result(self, result: CrawlResult) -> CrawlResult: ...

    @abc.abstractmethod
    def get_crawl_result(self, business_id: UUID, dataset_id: UUID) -> Optional[CrawlResult]: ...

    @abc.abstractmethod
    def list_crawl_results(self, dataset_id: UUID) -> List[CrawlResult]: ...

    # subscriptions / usage / exports
    @abc.abstractmethod
    def get_subscription(self, user_id: UUID) -> Optional[Subscription]: ...

    @abc.abstractmethod
    def save_subscription(self, subscription: Subscription) -> Subscription: ...

    @abc.abstractmethod
    def get_usage(self, user_id: UUID, period: str) -> UsageCounters: ...

    @abc.abstractmethod
    def increment_usage(self, user_id: UUID, action: UsageAction, period: str) -> UsageCounters: ...

    @abc.abstractmethod
    def log_export(self, entry: ExportLog) -> ExportLog: ...

    @abc.abstractmethod
    def list_exports(self, user_id: UUID) -> List[ExportLog]: ...

    def close(self) -> None:
        """Release resources; a no-op for most stores."""

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group the writes of one operation; stores may defer persistence to the end."""

        yield


def _bump(counters: UsageCounters, action: UsageAction) -> UsageCounters:
    column = {
        UsageAction.EXPORT: "exports",
        UsageAction.CRAWL: "crawls",
        UsageAction.DATASET: "datasets_created",
    }[UsageAction(action)]
    return counters.model_copy(update={column: getattr(counters, column) + 1})


class StoreSnapshot(BaseModel):
    """Serializable form of an ``InMemoryStore``."""

    cities: List[City] = Field(default_factory=list)
    industries: List[Industry] = Field(default_factory=list)
    datasets: List[Dataset] = Field(default_factory=list)
    businesses: List[Business] = Field(default_factory=list)
    websites: List[Website] = Field(default_factory=list)
    contacts: List[Contact] = Field(default_factory=list)
    contact_sources: List[ContactSource] = Field(default_factory=list)
    crawl_results: List[CrawlResult] = Field(default_factory=list)
    subscriptions: List[Subscription] = Field(default_factory=list)
    usage: List[UsageCounters] = Field(default_factory=list)
    exports: List[ExportLog] = Field(default_factory=list)


class InMemoryStore(Store):
    def __init__(self) -> None:
        self.cities: Dict[UUID, City] = {}
        self.industries: Dict[UUID, Industry] = {}
        self.datasets: Dict[UUID, Dataset] = {}
        self.businesses: Dict[UUID, Business] = {}
        self.websites: Dict[UUID, Website] = {}
        self.contacts: Dict[UUID, Contact] = {}
        self.contact_sources: Dict[UUID, ContactSource] = {}
        self.crawl_results: Dict[Tuple[UUID, UUID], CrawlResult] = {}
        self.subscriptions: Dict[UUID, Subscription] = {}
        self.usage: Dict[Tuple[UUID, str], UsageCounters] = {}
        self.exports: List[ExportLog] = []

    def _commit(self) -> None:
        """Hook called after every mutation."""

    def get_city(self, city_id: UUID) -> Optional[City]:
        return self.cities.get(city_id)

    def find_city_by_name(self, name: str) -> Optional[City]:
        wanted = name.strip().lower()
        return next((c for c in self.cities.values() if c.name.strip().lower() == wanted), None)

    def save_city(self, city: City) -> City:
        self.cities[city.id] = city
        self._commit()
        return city

    def get_industry(self, industry_id: UUID) -> Optional[Industry]:
        return self.industries.get(industry_id)

    def find_industry_by_name(self, name: str) -> Optional[Industry]:
        wanted = name.strip().lower()
        return next((i for i in self.industries.values() if i.name.strip().lower() == wanted), None)

    def save_industry(self, industry: Industry) -> Industry:
        self.industries[industry.id] = industry
        self._commit()
        return industry

    def get_dataset(self, dataset_id: UUID) -> Optional[Dataset]:
        return self.datasets.get(dataset_id)

    def find_reusable_dataset(
        self, user_id: UUID, city_id: UUID, industry_id: UUID, refreshed_since: datetime
    ) -> Optional[Dataset]:
        matches = [
            d
            for d in self.datasets.values()
            if d.user_id == user_id
            and d.city_id == city_id
            and d.industry_id == industry_id
            and d.last_refreshed_at is not None
            and d.last_refreshed_at >= refreshed_since
        ]
        matches.sort(key=lambda d: d.last_refreshed_at, reverse=True)
        return matches[0] if matches else None

    def count_datasets(self, user_id: UUID) -> int:
        return sum(1 for d in self.datasets.values() if d.user_id == user_id)

    def create_dataset(self, dataset: Dataset) -> Dataset:
        self.datasets[dataset.id] = dataset
        self._commit()
        return dataset

    def mark_dataset_refreshed(self, dataset_id: UUID, refreshed_at: datetime) -> None:
        dataset = self.datasets.get(dataset_id)
        if dataset is not None:
            self.datasets[dataset_id] = dataset.model_copy(update={"last_refreshed_at": refreshed_at})
            self._commit()

    def create_business(self, business: Business) -> Tuple[Business, bool]:
        for existing in self.businesses.values():
            if existing.dataset_id != business.dataset_id:
                continue
            if business.external_place_id and existing.external_place_id == business.external_place_id:
                return existing, False
            if existing.normalized_name == business.normalized_name:
                return existing, False
        self.businesses[business.id] = business
        self._commit()
        return business, True

    def get_business(self, business_id: UUID) -> Optional[Business]:
        return self.businesses.get(business_id)

    def list_businesses(self, dataset_id: UUID) -> List[Business]:
        # dicts keep insertion order, so the stable sort preserves it for equal timestamps
        rows = [b for b in self.businesses.values() if b.dataset_id == dataset_id]
        return sorted(rows, key=lambda b: b.created_at)

    def save_website(self, website: Website) -> Tuple[Website, bool]:
        existing = self.websites.get(website.business_id)
        if existing is not None:
            return existing, False
        self.websites[website.business_id] = website
        self._commit()
        return website, True

    def get_website(self, business_id: UUID) -> Optional[Website]:
        return self.websites.get(business_id)

    def touch_website(self, business_id: UUID, crawled_at: datetime) -> None:
        website = self.websites.get(business_id)
        if website is not None:
            self.websites[business_id] = website.model_copy(update={"last_crawled_at": crawled_at})
            self._commit()

    def list_contacts(self, business_id: UUID, active_only: bool = False) -> List[Contact]:
        return [
            c
            for c in self.contacts.values()
            if c.business_id == business_id and (c.is_active or not active_only)
        ]

    def save_contact(self, contact: Contact) -> Contact:
        self.contacts[contact.id] = contact
        self._commit()
        return contact

    def add_contact_source(self, source: ContactSource) -> ContactSource:
        self.contact_sources[source.id] = source
        self._commit()
        return source

    def list_contact_sources(self, contact_id: UUID) -> List[ContactSource]:
        return [s for s in self.contact_sources.values() if s.contact_id == contact_id]

    def upsert_crawl_result(self, result: CrawlResult) -> CrawlResult:
        self.crawl_results[(result.business_id, result.dataset_id)] = result
        self._commit()
        return result

    def get_crawl_result(self, business_id: UUID, dataset_id: UUID) -> Optional[CrawlResult]:
        return self.crawl_results.get((business_id, dataset_id))

    def list_crawl_results(self, dataset_id: UUID) -> List[CrawlResult]:
        return [r for (_, ds), r in self.crawl_results.items() if ds == dataset_id]

    def get_subscription(self, user_id: UUID) -> Optional[Subscription]:
        return self.subscriptions.get(user_id)

    def save_subscription(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.user_id] = subscription
        self._commit()
        return subscription

    def get_usage(self, user_id: UUID, period: str) -> UsageCounters:
        return self.usage.get((user_id, period)) or UsageCounters(user_id=user_id, period=period)

    def increment_usage(self, user_id: UUID, action: UsageAction, period: str) -> UsageCounters:
        counters = _bump(self.get_usage(user_id, period), action)
        self.usage[(user_id, period)] = counters
        self._commit()
        return counters

    def log_export(self, entry: ExportLog) -> ExportLog:
        self.exports.append(entry)
        self._commit()
        return entry

    def list_exports(self, user_id: UUID) -> List[ExportLog]:
        return [e for e in self.exports if e.user_id == user_id]

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            cities=list(self.cities.values()),
            industries=list(self.industries.values()),
            datasets=list(self.datasets.values()),
            businesses=list(self.businesses.values()),
            websites=list(self.websites.values()),
            contacts=list(self.contacts.values()),
            contact_sources=list(self.contact_sources.values()),
            crawl_results=list(self.crawl_results.values()),
            subscriptions=list(self.subscriptions.values()),
            usage=list(self.usage.values()),
            exports=list(self.exports),
        )

    def restore(self, snapshot: StoreSnapshot) -> None:
        self.cities = {c.id: c for c in snapshot.cities}
        self.industries = {i.id: i for i in snapshot.industries}
        self.datasets = {d.id: d for d in snapshot.datasets}
        self.businesses = {b.id: b for b in snapshot.businesses}
        self.websites = {w.business_id: w for w in snapshot.websites}
        self.contacts = {c.id: c for c in snapshot.contacts}
        self.contact_sources = {s.id: s for s in snapshot.contact_sources}
        self.crawl_results = {(r.business_id, r.dataset_id): r for r in snapshot.crawl_results}
        self.subscriptions = {s.user_id: s for s in snapshot.subscriptions}
        self.usage = {(u.user_id, u.period): u for u in snapshot.usage}
        self.exports = list(snapshot.exports)


class LocalStore(InMemoryStore):
    """``InMemoryStore`` mirrored to a JSON file after every write.

    Inside ``batch()`` the file is rewritten once, when the outermost batch exits.
    """

    def __init__(self, path: str = supabase_settings.local_fallback_path) -> None:
        super().__init__()
        self.path = Path(path)
        self._batch_depth = 0
        self._dirty = False
        if self.path.exists():
            self.restore(StoreSnapshot.model_validate_json(self.path.read_text(encoding="utf-8")))

    @contextmanager
    def batch(self) -> Iterator[None]:
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if not self._batch_depth and self._dirty:
                self._flush()

    def _commit(self) -> None:
        if self._batch_depth:
            self._dirty = True
            return
        self._flush()

    def _flush(self) -> None:
        self._dirty = False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(self.snapshot().model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self.path)


def _row(model: BaseModel, **overrides: Any) -> Dict[str, Any]:
    payload = model.model_dump(mode="json")
    payload.update(overrides)
    return payload


class SupabaseStore(Store):
    """Supabase-backed store; table names come from ``SupabaseSettings``."""

    def __init__(self, settings: SupabaseSettings = supabase_settings, client: Optional[Client] = None) -> None:
        if client is None:
            if not (settings.url and settings.key):
                raise RuntimeError("SUPABASE_URL and a Supabase key must be configured")
            client = create_client(settings.url, settings.key)
        self._client = client
        self._settings = settings

    def _table(self, name: str):
        return self._client.table(name)

    def _select(self, table: str, model: Type[ModelT], **filters: Any) -> List[ModelT]:
        query = self._table(table).select("*")
        for column, value in filters.items():
            query = query.eq(column, str(value) if isinstance(value, UUID) else value)
        try:
            response = query.execute()
        except APIError as exc:
            raise RuntimeError(f"Failed to read {table} from Supabase") from exc
        return [model.model_validate(row) for row in response.data or []]

    def _first(self, table: str, model: Type[ModelT], **filters: Any) -> Optional[ModelT]:
        rows = self._select(table, model, **filters)
        return rows[0] if rows else None

    def _write(self, table: str, payload: Dict[str, Any], on_conflict: Optional[str] = None) -> None:
        try:
            if on_conflict:
                self._table(table).upsert(payload, on_conflict=on_conflict).execute()
            else:
                self._table(table).insert(payload).execute()
        except APIError as exc:
            raise RuntimeError(f"Failed to write {table} into Supabase") from exc

    def _update(self, table: str, values: Dict[str, Any], **filters: Any) -> None:
        query = self._table(table).update(values)
        for column, value in filters.items():
            query = query.eq(column, str(value) if isinstance(value, UUID) else value)
        try:
            query.execute()
        except APIError as exc:
            raise RuntimeError(f"Failed to update {table} in Supabase") from exc

    def get_city(self, city_id: UUID) -> Optional[City]:
        return self._first(self._settings.cities_table, City, id=city_id)

    def find_city_by_name(self, name: str) -> Optional[City]:
        try:
            response = self._table(self._settings.cities_table).select("*").ilike("name", name.strip()).limit(1).execute()
        except APIError as exc:
            raise RuntimeError("Failed to read cities from Supabase") from exc
        return City.model_validate(response.data[0]) if response.data else None

    def save_city(self, city: City) -> City:
        self._write(self._settings.cities_table, _row(city), on_conflict="id")
        return city

    def get_industry(self, industry_id: UUID) -> Optional[Industry]:
        return self._first(self._settings.industries_table, Industry, id=industry_id)

    def find_industry_by_name(self, name: str) -> Optional[Industry]:
        try:
            response = (
                self._table(self._settings.industries_table).select("*").ilike("name", name.strip()).limit(1).execute()
            )
        except APIError as exc:
            raise RuntimeError("Failed to read industries from Supabase") from exc
        return Industry.model_validate(response.data[0]) if response.data else None

    def save_industry(self, industry: Industry) -> Industry:
        self._write(self._settings.industries_table, _row(industry), on_conflict="id")
        return industry

    def get_dataset(self, dataset_id: UUID) -> Optional[Dataset]:
        return self._first(self._settings.datasets_table, Dataset, id=dataset_id)

    def find_reusable_dataset(
        self, user_id: UUID, city_id: UUID, industry_id: UUID, refreshed_since: datetime
    ) -> Optional[Dataset]:
        try:
            response = (
                self._table(self._settings.datasets_table)
                .select("*")
                .eq("user_id", str(user_id))
                .eq("city_id", str(city_id))
                .eq("industry_id", str(industry_id))
                .gte("last_refreshed_at", refreshed_since.isoformat())
                .order("last_refreshed_at", desc=True)
                .limit(1)
                .execute()
            )
        except APIError as exc:
            raise RuntimeError("Failed to read datasets from Supabase") from exc
        return Dataset.model_validate(response.data[0]) if response.data else None

    def count_datasets(self, user_id: UUID) -> int:
        try:
            response = (
                self._table(self._settings.datasets_table)
                .select("id", count="exact")
                .eq("user_id", str(user_id))
                .execute()
            )
        except APIError as exc:
            raise RuntimeError("Failed to count datasets in Supabase") from exc
        return response.count or 0

    def create_dataset(self, dataset: Dataset) -> Dataset:
        self._write(self._settings.datasets_table, _row(dataset))
        return dataset

    def mark_dataset_refreshed(self, dataset_id: UUID, refreshed_at: datetime) -> None:
        self._update(self._settings.datasets_table, {"last_refreshed_at": refreshed_at.isoformat()}, id=dataset_id)

    def _existing_business(self, business: Business) -> Optional[Business]:
        table = self._settings.business_table
        if business.external_place_id:
            found = self._first(
                table, Business, dataset_id=business.dataset_id, external_place_id=business.external_place_id
            )
            if found:
                return found
        return self._first(table, Business, dataset_id=business.dataset_id, normalized_name=business.normalized_name)

    def create_business(self, business: Business) -> Tuple[Business, bool]:
        existing = self._existing_business(business)
        if existing is not None:
            return existing, False
        try:
            self._table(self._settings.business_table).insert(_row(business)).execute()
        except APIError as exc:
            # unique violation from a concurrent insert of the same place
            if exc.code == "23505":
                existing = self._existing_business(business)
                if existing is not None:
                    return existing, False
            raise RuntimeError("Failed to insert business into Supabase") from exc
        return business, True

    def get_business(self, business_id: UUID) -> Optional[Business]:
        return self._first(self._settings.business_table, Business, id=business_id)

    def list_businesses(self, dataset_id: UUID) -> List[Business]:
        try:
            response = (
                self._table(self._settings.business_table)
                .select("*")
                .eq("dataset_id", str(dataset_id))
                .order("created_at")
                .execute()
            )
        except APIError as exc:
            raise RuntimeError("Failed to read businesses from Supabase") from exc
        return [Business.model_validate(row) for row in response.data or []]

    def save_website(self, website: Website) -> Tuple[Website, bool]:
        existing = self.get_website(website.business_id)
        if existing is not None:
            return existing, False
        self._write(self._settings.website_table, _row(website), on_conflict="business_id")
        return website, True

    def get_website(self, business_id: UUID) -> Optional[Website]:
        return self._first(self._settings.website_table, Website, business_id=business_id)

    def touch_website(self, business_id: UUID, crawled_at: datetime) -> None:
        self._update(self._settings.website_table, {"last_crawled_at": crawled_at.isoformat()}, business_id=business_id)

    def list_contacts(self, business_id: UUID, active_only: bool = False) -> List[Contact]:
        filters: Dict[str, Any] = {"business_id": business_id}
        if active_only:
            filters["is_active"] = True
        return self._select(self._settings.contact_table, Contact, **filters)

    def save_contact(self, contact: Contact) -> Contact:
        self._write(self._settings.contact_table, _row(contact), on_conflict="id")
        return contact

    def add_contact_source(self, source: ContactSource) -> ContactSource:
        self._write(self._settings.contact_source_table, _row(source))
        return source

    def list_contact_sources(self, contact_id: UUID) -> List[ContactSource]:
        return self._select(self._settings.contact_source_table, ContactSource, contact_id=contact_id)

    def upsert_crawl_result(self, result: CrawlResult) -> CrawlResult:
        self._write(self._settings.crawl_results_table, _row(result), on_conflict="business_id,dataset_id")
        return result

    def get_crawl_result(self, business_id: UUID, dataset_id: UUID) -> Optional[CrawlResult]:
        return self._first(self._settings.crawl_results_table, CrawlResult, business_id=business_id, dataset_id=dataset_id)

    def list_crawl_results(self, dataset_id: UUID) -> List[CrawlResult]:
        return self._select(self._settings.crawl_results_table, CrawlResult, dataset_id=dataset_id)

    def get_subscription(self, user_id: UUID) -> Optional[Subscription]:
        return self._first(self._settings.subscriptions_table, Subscription, user_id=user_id)

    def save_subscription(self, subscription: Subscription) -> Subscription:
        self._write(self._settings.subscriptions_table, _row(subscription), on_conflict="user_id")
        return subscription

    def get_usage(self, user_id: UUID, period: str) -> UsageCounters:
        found = self._first(self._settings.usage_table, UsageCounters, user_id=user_id, period=period)
        return found or UsageCounters(user_id=user_id, period=period)

    def increment_usage(self, user_id: UUID, action: UsageAction, period: str) -> UsageCounters:
        # read-modify-write; in-flight crawls hold their quota in UsageReservations
        counters = _bump(self.get_usage(user_id, period), action)
        self._write(
            self._settings.usage_table,
            _row(counters, updated_at=utcnow().isoformat()),
            on_conflict="user_id,period",
        )
        return counters

    def log_export(self, entry: ExportLog) -> ExportLog:
        self._write(self._settings.exports_table, _row(entry))
        return entry

    def list_exports(self, user_id: UUID) -> List[ExportLog]:
        return self._select(self._settings.exports_table, ExportLog, user_id=user_id)


def build_store(settings: SupabaseSettings = supabase_settings) -> Store:
    """Supabase when configured, otherwise the local JSON snapshot."""

    if settings.url and settings.key:
        return SupabaseStore(settings)
    logger.info("supabase_not_configured", fallback=settings.local_fallback_path)
    return LocalStore(settings.local_fallback_path)
