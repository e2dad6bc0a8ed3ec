"""Reconciles freshly extracted contacts against the stored ones."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog

from .models import (
    Contact,
    ContactCandidate,
    ContactChangeSummary,
    ContactSource,
    ContactType,
    PageType,
    utcnow,
)

logger = structlog.get_logger(__name__)

ContactKey = Tuple[str, str, UUID]


def normalize_contact_value(contact_type: ContactType, value: str) -> str:
    value = value.strip()
    if contact_type is ContactType.EMAIL:
        return value.lower()
    digits = "".join(ch for ch in value if ch.isdigit())
    return f"+{digits}" if value.startswith("+") else digits


def contact_key(business_id: UUID, contact_type: ContactType, value: str) -> ContactKey:
    """(type, normalized value, business). Phone and mobile share a key space."""

    kind = "email" if contact_type is ContactType.EMAIL else "phone"
    return kind, normalize_contact_value(contact_type, value), business_id


@dataclass
class ChangeSet:
    added: List[ContactCandidate] = field(default_factory=list)
    verified: List[Contact] = field(default_factory=list)
    deactivated: List[Contact] = field(default_factory=list)

    def summary(self) -> ContactChangeSummary:
        return ContactChangeSummary(
            added=len(self.added), verified=len(self.verified), deactivated=len(self.deactivated)
        )


@dataclass
class PageRecord:
    """A crawled page as seen by the detector: where a value was found."""

    url: str
    page_type: PageType
    content_hash: str
    values: List[ContactKey] = field(default_factory=list)


def detect_contact_changes(
    business_id: UUID,
    extracted: Iterable[ContactCandidate],
    existing_active: Iterable[Contact],
) -> ChangeSet:
    """Split the union of old-active and new keys into added / verified / deactivated."""

    new_by_key: Dict[ContactKey, ContactCandidate] = {}
    for candidate in extracted:
        key = contact_key(business_id, candidate.contact_type, candidate.value)
        current = new_by_key.get(key)
        if current is None or candidate.confidence > current.confidence:
            new_by_key[key] = candidate

    old_by_key: Dict[ContactKey, Contact] = {}
    for contact in existing_active:
        if not contact.is_active:
            continue
        old_by_key.setdefault(contact_key(business_id, contact.contact_type, contact.value), contact)

    changes = ChangeSet()
    for key, candidate in new_by_key.items():
        if key in old_by_key:
            changes.verified.append(old_by_key[key])
        else:
            changes.added.append(candidate)
    for key, contact in old_by_key.items():
        if key not in new_by_key:
            changes.deactivated.append(contact)
    return changes


def _contact_from_candidate(business_id: UUID, candidate: ContactCandidate, now: datetime) -> Contact:
    values = {candidate.contact_type.value: candidate.value}
    return Contact(
        business_id=business_id,
        contact_type=candidate.contact_type,
        is_generic=candidate.is_generic,
        first_seen_at=now,
        last_verified_at=now,
        is_active=True,
        **values,
    )


def _sources_for(key: ContactKey, pages: Sequence[PageRecord], fallback_url: str) -> List[PageRecord]:
    found = [page for page in pages if key in page.values]
    found.sort(key=lambda page: page.page_type is not PageType.HOMEPAGE)
    if found:
        return found
    return [PageRecord(url=fallback_url, page_type=PageType.OTHER, content_hash="")]


def apply_contact_changes(
    store,
    business_id: UUID,
    extracted: Sequence[ContactCandidate],
    pages: Sequence[PageRecord],
    now: Optional[datetime] = None,
    allow_deactivation: bool = True,
) -> ChangeSet:
    """Run the detector against the store and persist the outcome.

    Added keys that match an inactive contact reactivate it instead of creating a
    duplicate row. Sources are written homepage first. With ``allow_deactivation``
    off (partial crawls) contacts that were not seen stay active and the returned
    set carries no deactivations.
    """

    now = now or utcnow()
    existing = store.list_contacts(business_id)
    changes = detect_contact_changes(business_id, extracted, [c for c in existing if c.is_active])
    inactive_by_key = {
        contact_key(business_id, c.contact_type, c.value): c for c in existing if not c.is_active
    }

    with store.batch():
        for contact in changes.verified:
            store.save_contact(contact.model_copy(update={"last_verified_at": now, "is_active": True}))

        for candidate in changes.added:
            key = contact_key(business_id, candidate.contact_type, candidate.value)
            previous = inactive_by_key.get(key)
            if previous is not None:
                contact = store.save_contact(
                    previous.model_copy(update={"is_active": True, "last_verified_at": now})
                )
            else:
                contact = store.save_contact(_contact_from_candidate(business_id, candidate, now))
            for page in _sources_for(key, pages, candidate.source_url):
                store.add_contact_source(
                    ContactSource(
                        contact_id=contact.id,
                        source_url=page.url,
                        page_type=page.page_type,
                        content_hash=page.content_hash,
                        created_at=now,
                    )
                )

        if not allow_deactivation:
            changes.deactivated = []
        for contact in changes.deactivated:
            store.save_contact(contact.model_copy(update={"is_active": False}))

    logger.info(
        "contacts_reconciled",
        business_id=str(business_id),
        added=len(changes.added),
        verified=len(changes.verified),
        deactivated=len(changes.deactivated),
    )
    return changes
