"""Resolution of user permissions and monthly usage, shared by every gate."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Protocol, Tuple
from uuid import UUID

import structlog

from .models import Plan, Subscription, UsageAction, UsageCounters, UserPermissions
from .pricing import UsageCheck, check_usage_limit, permissions_for_plan

logger = structlog.get_logger(__name__)


def current_period(now: Optional[datetime] = None) -> str:
    """Calendar month key (``YYYY-MM``) for usage counters."""

    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


class PermissionsResolver(Protocol):
    def resolve(self, user_id: UUID) -> UserPermissions:
        ...


class SubscriptionSource(Protocol):
    def get_subscription(self, user_id: UUID) -> Optional[Subscription]:
        ...


class UsageStore(Protocol):
    def get_usage(self, user_id: UUID, period: str) -> UsageCounters:
        ...

    def increment_usage(self, user_id: UUID, action: UsageAction, period: str) -> UsageCounters:
        ...


class SubscriptionPermissionsResolver:
    """Derives permissions from the stored subscription on every call.

    Missing subscriptions and lookup failures resolve to the demo plan.
    """

    def __init__(self, source: SubscriptionSource) -> None:
        self._source = source

    def resolve(self, user_id: UUID) -> UserPermissions:
        try:
            subscription = self._source.get_subscription(user_id)
        except Exception as exc:
            logger.warning("permissions_lookup_failed", user_id=str(user_id), error=str(exc))
            return permissions_for_plan(Plan.DEMO)
        if subscription is None:
            return permissions_for_plan(Plan.DEMO)
        return permissions_for_plan(subscription.plan, subscription.is_internal_user)


class StaticPermissionsResolver:
    """Fixed permissions for every user; used by the CLI and tests."""

    def __init__(self, plan: Plan = Plan.DEMO, is_internal_user: bool = False) -> None:
        self._permissions = permissions_for_plan(plan, is_internal_user)

    def resolve(self, user_id: UUID) -> UserPermissions:
        return self._permissions


def check_user_usage(
    usage: UsageStore,
    permissions: UserPermissions,
    user_id: UUID,
    action: UsageAction,
) -> UsageCheck:
    counters = usage.get_usage(user_id, current_period())
    return check_usage_limit(
        permissions.plan,
        action,
        counters.count_for(action),
        permissions.is_internal_user,
    )


def record_usage(usage: UsageStore, user_id: UUID, action: UsageAction) -> UsageCounters:
    counters = usage.increment_usage(user_id, action, current_period())
    logger.info("usage_incremented", user_id=str(user_id), action=action.value, period=counters.period)
    return counters


class UsageReservations:
    """Usage claimed by in-flight operations, counted against the monthly ceiling.

    A claim is checked and taken without yielding to the event loop, so
    concurrent workers for one user cannot all pass the same last unit of quota.
    """

    def __init__(self) -> None:
        self._held: Dict[Tuple[UUID, UsageAction], int] = {}

    def held(self, user_id: UUID, action: UsageAction) -> int:
        return self._held.get((user_id, action), 0)

    def reserve(
        self,
        usage: UsageStore,
        permissions: UserPermissions,
        user_id: UUID,
        action: UsageAction,
    ) -> UsageCheck:
        counters = usage.get_usage(user_id, current_period())
        check = check_usage_limit(
            permissions.plan,
            action,
            counters.count_for(action) + self.held(user_id, action),
            permissions.is_internal_user,
        )
        if check.allowed:
            self._held[(user_id, action)] = self.held(user_id, action) + 1
        return check

    def release(self, user_id: UUID, action: UsageAction) -> None:
        left = self.held(user_id, action) - 1
        if left > 0:
            self._held[(user_id, action)] = left
        else:
            self._held.pop((user_id, action), None)

    @contextmanager
    def claim(
        self,
        usage: UsageStore,
        permissions: UserPermissions,
        user_id: UUID,
        action: UsageAction,
    ) -> Iterator[UsageCheck]:
        """Hold one unit of ``action`` for the duration of the block when allowed.

        Record the real usage inside the block; the hold is dropped on exit.
        """

        check = self.reserve(usage, permissions, user_id, action)
        try:
            yield check
        finally:
            if check.allowed:
                self.release(user_id, action)


usage_reservations = UsageReservations()
