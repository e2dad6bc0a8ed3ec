import pytest

from leadscope.errors import PricingGateError
from leadscope.models import ActionType, Plan, UsageAction
from leadscope.pricing import (
    UNLIMITED,
    assert_pricing_gate,
    check_pricing_gate,
    check_usage_limit,
    get_plan_limit,
    permissions_for_plan,
    upgrade_hint,
)


@pytest.mark.parametrize(
    "plan,action,limit",
    [
        (Plan.DEMO, ActionType.EXPORT, 50),
        (Plan.DEMO, ActionType.CRAWL, 3),
        (Plan.DEMO, ActionType.DISCOVER, 1),
        (Plan.STARTER, ActionType.EXPORT, 500),
        (Plan.STARTER, ActionType.CRAWL, 15),
        (Plan.STARTER, ActionType.DISCOVER, 5),
        (Plan.PRO, ActionType.EXPORT, UNLIMITED),
    ],
)
def test_plan_limits(plan, action, limit):
    assert get_plan_limit(plan, action) == limit


def test_unknown_plan_or_action_has_zero_limit():
    assert get_plan_limit("enterprise", ActionType.EXPORT) == 0
    assert get_plan_limit(Plan.DEMO, "teleport") == 0

    denied = check_pricing_gate("enterprise", ActionType.EXPORT, export_rows=1)
    assert not denied.allowed
    assert denied.limit == 0


def test_export_gate_denies_above_limit_with_hint():
    result = check_pricing_gate(Plan.DEMO, ActionType.EXPORT, export_rows=120)

    assert not result.allowed
    assert result.limit == 50
    assert result.reason == "Demo plan allows up to 50 rows per export. Requested 120 rows."
    assert result.upgrade_hint == "Upgrade to Starter plan to export more rows."


def test_gate_allows_at_the_limit_and_without_quantity():
    assert check_pricing_gate(Plan.DEMO, ActionType.CRAWL, crawl_pages=3).allowed
    assert check_pricing_gate(Plan.DEMO, ActionType.CRAWL).allowed


def test_pro_has_no_upgrade_hint():
    assert upgrade_hint(Plan.PRO, ActionType.EXPORT) == ""
    assert check_pricing_gate(Plan.PRO, ActionType.EXPORT, export_rows=10**9).allowed


def test_assert_variant_raises():
    with pytest.raises(PricingGateError) as excinfo:
        assert_pricing_gate(Plan.STARTER, ActionType.CRAWL, crawl_pages=16)

    assert "15 pages per website" in excinfo.value.reason
    assert excinfo.value.upgrade_hint == "Upgrade to Pro plan to crawl more pages per website."


def test_usage_limit_denies_at_ceiling():
    check = check_usage_limit(Plan.DEMO, UsageAction.EXPORT, 5)

    assert not check.allowed
    assert check.remaining == 0
    assert check.reason == "Demo plan allows 5 exports per month. You've used 5."
    assert check.upgrade_hint == "Upgrade to Starter plan for more monthly exports."


def test_usage_limit_allows_below_ceiling():
    check = check_usage_limit(Plan.STARTER, UsageAction.CRAWL, 99)

    assert check.allowed
    assert check.remaining == 1


def test_internal_users_bypass_usage():
    check = check_usage_limit(Plan.DEMO, UsageAction.DATASET, 1000, is_internal_user=True)

    assert check.allowed


def test_permissions_for_plan():
    demo = permissions_for_plan(Plan.DEMO)
    assert demo.max_export_rows == 50
    assert not demo.can_refresh

    starter = permissions_for_plan("starter", is_internal_user=True)
    assert starter.can_refresh
    assert starter.is_internal_user

    assert permissions_for_plan("bogus").plan is Plan.DEMO
