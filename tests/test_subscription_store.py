"""
Tests for the Subscription Store

Covers:
- Pricing and plan limits
- Free-month credits
- Invariants enforced on flush
- Usage counters and summary
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from app.modules.billing.domain.billing.subscription import (
    PlanType,
    Subscription,
    SubscriptionStatus,
    UsageLimit,
    get_usage_limit,
    lock_subscription_by_tenant,
    plan_limits,
)
from app.shared.core.exceptions import SubscriptionInvariantError


def _pro(extra_users=0, free_months=0):
    sub = Subscription.for_tenant(uuid4())
    sub.promote_to_pro("sub_123", extra_users, datetime(2024, 3, 1, tzinfo=timezone.utc))
    sub.free_months_remaining = free_months
    return sub


class TestPricing:
    """Monthly cost and quota ceilings."""

    def test_basic_plan_is_free(self):
        sub = Subscription.for_tenant(uuid4())
        assert sub.monthly_cost == Decimal("0.00")
        assert sub.snapshot()["monthly_cost"] == 0.0

    def test_pro_with_two_extra_seats_costs_100(self):
        sub = _pro(extra_users=2)
        assert sub.monthly_cost == Decimal("100.00")
        assert sub.snapshot() == {
            "plan_type": "pro",
            "status": "active",
            "monthly_cost": 100.0,
            "extra_users_count": 2,
        }

    def test_extra_seats_raise_lawyer_limit(self):
        assert plan_limits("pro", 3)["lawyers"] == 5
        assert plan_limits("basic")["lawyers"] == 1

    def test_pro_limits_are_unlimited_except_monthly_documents(self):
        limits = _pro().plan_limits
        assert limits["customers"] is None
        assert limits["documents_total"] is None
        assert limits["documents_monthly"] == 100
        assert limits["offices"] == 1

    def test_unknown_plan_rejected(self):
        with pytest.raises(ValueError):
            plan_limits("enterprise")


class TestLifecycle:
    """Transitions applied on the model itself."""

    def test_promote_sets_provisional_calendar_month(self):
        sub = Subscription.for_tenant(uuid4())
        now = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)

        sub.promote_to_pro("sub_abc", 1, now)

        assert sub.plan_type == PlanType.PRO.value
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.external_subscription_id == "sub_abc"
        assert sub.current_period_start == now
        assert sub.current_period_end == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)

    def test_promote_clears_previous_cancellation(self):
        sub = _pro()
        sub.cancel()
        sub.promote_to_pro("sub_new", 0, datetime(2024, 5, 1, tzinfo=timezone.utc))
        assert sub.canceled_at is None
        assert sub.status == "active"

    def test_cancel_keeps_plan_type(self):
        sub = _pro()
        now = datetime(2024, 4, 1, tzinfo=timezone.utc)
        sub.cancel(now)
        assert sub.status == SubscriptionStatus.CANCELED.value
        assert sub.canceled_at == now
        assert sub.is_pro

    def test_use_free_month_never_goes_negative(self):
        sub = _pro(free_months=1)

        assert sub.use_free_month() is True
        assert sub.free_months_remaining == 0
        assert sub.use_free_month() is False
        assert sub.free_months_remaining == 0

    def test_add_free_month_accumulates(self):
        sub = Subscription.for_tenant(uuid4())
        sub.add_free_month()
        sub.add_free_month()
        assert sub.free_months_remaining == 2
        assert sub.has_free_months

    def test_billing_period_must_end_after_start(self):
        sub = _pro()
        start = datetime(2024, 6, 1, tzinfo=timezone.utc)
        with pytest.raises(SubscriptionInvariantError):
            sub.set_billing_period(start, start - timedelta(days=1))


class TestInvariantsOnFlush:
    """Mapper events refuse to persist inconsistent rows."""

    @pytest.mark.asyncio
    async def test_pro_without_external_id_is_refused(self, db, make_tenant):
        tenant = await make_tenant()
        sub = Subscription.for_tenant(tenant.id, PlanType.PRO.value)
        db.add(sub)

        with pytest.raises(SubscriptionInvariantError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_negative_seats_refused_on_update(self, db, make_tenant):
        tenant = await make_tenant()
        db.add(Subscription.for_tenant(tenant.id))
        await db.commit()

        sub = await lock_subscription_by_tenant(db, tenant.id)
        sub.extra_users_count = -1
        with pytest.raises(SubscriptionInvariantError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_unknown_status_refused(self, db, make_tenant):
        tenant = await make_tenant()
        sub = Subscription.for_tenant(tenant.id)
        sub.status = "frozen"
        db.add(sub)

        with pytest.raises(SubscriptionInvariantError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_valid_pro_row_round_trips(self, db, make_tenant):
        tenant = await make_tenant()
        sub = Subscription.for_tenant(tenant.id)
        sub.promote_to_pro("sub_ok", 2, datetime(2024, 3, 1, tzinfo=timezone.utc))
        db.add(sub)
        await db.commit()

        loaded = await lock_subscription_by_tenant(db, tenant.id)
        data = loaded.to_dict()
        assert data["plan_type"] == "pro"
        assert data["monthly_cost"] == 100.0
        assert data["current_period_start"].startswith("2024-03-01")
        assert data["current_period_end"].startswith("2024-04-01")


class TestUsageLimit:
    """Usage counters measured against plan ceilings."""

    def test_fresh_counters_start_at_zero(self):
        now = datetime(2024, 1, 15, tzinfo=timezone.utc)
        usage = UsageLimit.for_tenant(uuid4(), now)
        assert usage.current_usage("customers") == 0
        assert usage.period_end == datetime(2024, 2, 15, tzinfo=timezone.utc)

    def test_within_limit_respects_ceiling(self):
        usage = UsageLimit.for_tenant(uuid4())
        limits = plan_limits("basic")

        usage.customers_count = 99
        assert usage.within_limit("customers", limits)
        usage.customers_count = 100
        assert not usage.within_limit("customers", limits)

    def test_unlimited_resource_always_within_limit(self):
        usage = UsageLimit.for_tenant(uuid4())
        usage.jobs_count = 10_000
        assert usage.within_limit("jobs", plan_limits("pro"))

    def test_summary_reports_percentage_and_period_end(self):
        usage = UsageLimit.for_tenant(uuid4(), datetime(2024, 1, 1, tzinfo=timezone.utc))
        usage.customers_count = 50
        usage.documents_generated_month = 100

        summary = usage.usage_summary(plan_limits("pro"))

        assert summary["customers"] == {"current": 50, "limit": None, "percentage": 0, "at_limit": False}
        assert summary["documents_monthly"]["percentage"] == 100.0
        assert summary["documents_monthly"]["at_limit"] is True
        assert summary["documents_monthly"]["period_end"] == "2024-02-01T00:00:00+00:00"

    def test_monthly_reset_clears_only_monthly_counter(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        usage = UsageLimit.for_tenant(uuid4(), start)
        usage.documents_generated_month = 40
        usage.documents_generated_total = 90

        later = start + timedelta(days=40)
        assert usage.should_reset_monthly(later)
        usage.reset_monthly_usage(later)

        assert usage.documents_generated_month == 0
        assert usage.documents_generated_total == 90
        assert not usage.should_reset_monthly(later)

    @pytest.mark.asyncio
    async def test_get_usage_limit_missing_returns_none(self, db, make_tenant):
        tenant = await make_tenant()
        assert await get_usage_limit(db, tenant.id) is None
