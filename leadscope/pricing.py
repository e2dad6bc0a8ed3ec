"""Plan limits, the per-request pricing gate and the monthly usage gate.

Both gates read the single ``PLAN_LIMITS`` table below. Neither raises during
pipeline execution; callers that want fail-fast validation use
``assert_pricing_gate``.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Dict, Optional, Union

from .errors import PricingGateError
from .models import ActionType, Plan, UsageAction, UserPermissions

UNLIMITED = sys.maxsize


@dataclass(frozen=True)
class PlanLimits:
    export_max_rows: int
    crawl_max_pages: int
    discover_max_cities: int
    max_datasets: int
    can_refresh: bool
    exports_per_month: int
    crawls_per_month: int
    datasets_per_month: int


PLAN_LIMITS: Dict[Plan, PlanLimits] = {
    Plan.DEMO: PlanLimits(
        export_max_rows=50,
        crawl_max_pages=3,
        discover_max_cities=1,
        max_datasets=1,
        can_refresh=False,
        exports_per_month=5,
        crawls_per_month=10,
        datasets_per_month=1,
    ),
    Plan.STARTER: PlanLimits(
        export_max_rows=500,
        crawl_max_pages=15,
        discover_max_cities=5,
        max_datasets=5,
        can_refresh=True,
        exports_per_month=50,
        crawls_per_month=100,
        datasets_per_month=5,
    ),
    Plan.PRO: PlanLimits(
        export_max_rows=UNLIMITED,
        crawl_max_pages=UNLIMITED,
        discover_max_cities=UNLIMITED,
        max_datasets=UNLIMITED,
        can_refresh=True,
        exports_per_month=UNLIMITED,
        crawls_per_month=UNLIMITED,
        datasets_per_month=UNLIMITED,
    ),
}

_NEXT_PLAN = {Plan.DEMO: Plan.STARTER, Plan.STARTER: Plan.PRO}

_GATE_HINTS = {
    ActionType.EXPORT: "to export more rows.",
    ActionType.CRAWL: "to crawl more pages per website.",
    ActionType.DISCOVER: "to discover businesses in more cities.",
}

_USAGE_NOUNS = {
    UsageAction.EXPORT: "exports",
    UsageAction.CRAWL: "crawls",
    UsageAction.DATASET: "datasets",
}


@dataclass(frozen=True)
class PricingGateResult:
    allowed: bool
    limit: int
    reason: Optional[str] = None
    upgrade_hint: Optional[str] = None


@dataclass(frozen=True)
class UsageCheck:
    allowed: bool
    limit: int
    used: int
    remaining: int
    reason: Optional[str] = None
    upgrade_hint: Optional[str] = None


def _coerce_plan(plan: Union[Plan, str]) -> Optional[Plan]:
    try:
        return Plan(plan)
    except ValueError:
        return None


def _plan_label(plan: Plan) -> str:
    return plan.value.capitalize()


def _fmt(limit: int) -> str:
    return "unlimited" if limit >= UNLIMITED else str(limit)


def next_plan(plan: Union[Plan, str]) -> Optional[Plan]:
    resolved = _coerce_plan(plan)
    return _NEXT_PLAN.get(resolved) if resolved else None


def upgrade_hint(plan: Union[Plan, str], action: Union[ActionType, str]) -> str:
    """Suggest the next tier up; empty at ``pro``."""

    resolved = _coerce_plan(plan)
    target = _NEXT_PLAN.get(resolved) if resolved else None
    if target is None:
        return ""
    try:
        suffix = _GATE_HINTS[ActionType(action)]
    except ValueError:
        suffix = "for more features."
    return f"Upgrade to {_plan_label(target)} plan {suffix}"


def get_plan_limits(plan: Union[Plan, str]) -> PlanLimits:
    resolved = _coerce_plan(plan) or Plan.DEMO
    return PLAN_LIMITS[resolved]


def get_plan_limit(plan: Union[Plan, str], action: Union[ActionType, str]) -> int:
    """Per-request ceiling for ``action``; 0 for an unknown plan or action."""

    resolved = _coerce_plan(plan)
    if resolved is None:
        return 0
    limits = PLAN_LIMITS[resolved]
    try:
        action = ActionType(action)
    except ValueError:
        return 0
    if action is ActionType.EXPORT:
        return limits.export_max_rows
    if action is ActionType.CRAWL:
        return limits.crawl_max_pages
    return limits.discover_max_cities


def check_pricing_gate(
    plan: Union[Plan, str],
    action: Union[ActionType, str],
    *,
    export_rows: Optional[int] = None,
    crawl_pages: Optional[int] = None,
    cities_per_dataset: Optional[int] = None,
) -> PricingGateResult:
    """Stateless per-request gate.

    When no quantity is supplied for the action the gate only reports the limit.
    """

    resolved = _coerce_plan(plan)
    if resolved is None:
        return PricingGateResult(allowed=False, limit=0, reason=f"Invalid plan: {plan}")
    try:
        action = ActionType(action)
    except ValueError:
        return PricingGateResult(allowed=False, limit=0, reason=f"Invalid action type: {action}")

    limit = get_plan_limit(resolved, action)
    label = _plan_label(resolved)

    if action is ActionType.EXPORT:
        requested = export_rows
        reason = f"{label} plan allows up to {_fmt(limit)} rows per export. Requested {requested} rows."
    elif action is ActionType.CRAWL:
        requested = crawl_pages
        reason = f"{label} plan allows up to {_fmt(limit)} pages per website. Requested {requested} pages."
    else:
        requested = cities_per_dataset
        noun = "city" if limit == 1 else "cities"
        reason = f"{label} plan allows up to {_fmt(limit)} {noun} per dataset. Requested {requested} cities."

    if requested is None or requested <= limit:
        return PricingGateResult(allowed=True, limit=limit)
    return PricingGateResult(
        allowed=False,
        limit=limit,
        reason=reason,
        upgrade_hint=upgrade_hint(resolved, action) or None,
    )


def assert_pricing_gate(
    plan: Union[Plan, str],
    action: Union[ActionType, str],
    **params: Optional[int],
) -> PricingGateResult:
    """Like ``check_pricing_gate`` but raises ``PricingGateError`` on denial."""

    result = check_pricing_gate(plan, action, **params)
    if not result.allowed:
        raise PricingGateError(result.reason or "Action not allowed", result.upgrade_hint or "")
    return result


def usage_ceiling(plan: Union[Plan, str], action: Union[UsageAction, str]) -> int:
    limits = get_plan_limits(plan)
    action = UsageAction(action)
    if action is UsageAction.EXPORT:
        return limits.exports_per_month
    if action is UsageAction.CRAWL:
        return limits.crawls_per_month
    return limits.datasets_per_month


def check_usage_limit(
    plan: Union[Plan, str],
    action: Union[UsageAction, str],
    current_usage: int,
    is_internal_user: bool = False,
) -> UsageCheck:
    """Monthly gate: allowed while ``current_usage < ceiling``; internal users always pass."""

    action = UsageAction(action)
    if is_internal_user:
        return UsageCheck(allowed=True, limit=UNLIMITED, used=current_usage, remaining=UNLIMITED)

    resolved = _coerce_plan(plan) or Plan.DEMO
    limit = usage_ceiling(resolved, action)
    allowed = current_usage < limit
    remaining = max(0, limit - current_usage)
    if allowed:
        return UsageCheck(allowed=True, limit=limit, used=current_usage, remaining=remaining)

    noun = _USAGE_NOUNS[action]
    target = _NEXT_PLAN.get(resolved)
    hint = f"Upgrade to {_plan_label(target)} plan for more monthly {noun}." if target else None
    return UsageCheck(
        allowed=False,
        limit=limit,
        used=current_usage,
        remaining=0,
        reason=f"{_plan_label(resolved)} plan allows {limit} {noun} per month. You've used {current_usage}.",
        upgrade_hint=hint,
    )


def permissions_for_plan(plan: Union[Plan, str], is_internal_user: bool = False) -> UserPermissions:
    resolved = _coerce_plan(plan) or Plan.DEMO
    limits = PLAN_LIMITS[resolved]
    return UserPermissions(
        plan=resolved,
        max_export_rows=limits.export_max_rows,
        max_crawl_pages=limits.crawl_max_pages,
        max_datasets=limits.max_datasets,
        can_refresh=limits.can_refresh,
        is_internal_user=is_internal_user,
    )
