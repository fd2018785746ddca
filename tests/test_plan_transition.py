"""
Tests for Plan Transition Service

Covers:
- Idempotent subscription creation
- Upgrade validation and atomicity
- Cancellation
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import func, select

from app.modules.billing.domain.billing.plan_transition import (
    ALREADY_PRO_ERROR,
    MISSING_EXTERNAL_ID_ERROR,
    NEGATIVE_SEATS_ERROR,
    NOT_PRO_CANCEL_ERROR,
    SubscriptionCancellationService,
    SubscriptionCreationService,
    UpgradeService,
)
from app.modules.billing.domain.billing.subscription import Subscription, UsageLimit


async def _count(db, model, tenant_id):
    result = await db.execute(select(func.count()).select_from(model).where(model.tenant_id == tenant_id))
    return result.scalar_one()


async def _reload(db, tenant_id) -> Subscription:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestSubscriptionCreation:
    """Tests for SubscriptionCreationService."""

    @pytest.mark.asyncio
    async def test_creates_basic_subscription_with_usage_limit(self, db, make_tenant):
        tenant = await make_tenant()

        sub = await SubscriptionCreationService(db).create_for_tenant(tenant)

        assert sub.plan_type == "basic"
        assert sub.status == "active"
        assert sub.extra_users_count == 0
        assert await _count(db, UsageLimit, tenant.id) == 1

    @pytest.mark.asyncio
    async def test_creation_is_idempotent(self, db, make_tenant):
        """Calling twice yields one Subscription and one UsageLimit."""
        tenant = await make_tenant()
        service = SubscriptionCreationService(db)

        first = await service.create_for_tenant(tenant)
        second = await service.create_for_tenant(tenant)

        assert first.id == second.id
        assert await _count(db, Subscription, tenant.id) == 1
        assert await _count(db, UsageLimit, tenant.id) == 1


class TestUpgradeToPro:
    """Tests for UpgradeService."""

    @pytest.mark.asyncio
    async def test_upgrade_from_basic(self, db, make_tenant):
        tenant = await make_tenant()
        await SubscriptionCreationService(db).create_for_tenant(tenant)

        result = await UpgradeService(db).upgrade_to_pro(tenant, "ext_123", extra_users=2)

        assert result.success is True
        assert result.errors is None
        assert result.data == {
            "plan_type": "pro",
            "status": "active",
            "monthly_cost": 100.0,
            "extra_users_count": 2,
        }
        sub = await _reload(db, tenant.id)
        assert sub.external_subscription_id == "ext_123"
        assert sub.current_period_start is not None
        assert sub.current_period_end > sub.current_period_start

    @pytest.mark.asyncio
    async def test_upgrade_without_prior_subscription_provisions_everything(self, db, make_tenant):
        tenant = await make_tenant()

        result = await UpgradeService(db).upgrade_to_pro(tenant, "ext_new", extra_users=0)

        assert result.success
        assert result.data["monthly_cost"] == 70.0
        assert await _count(db, Subscription, tenant.id) == 1
        assert await _count(db, UsageLimit, tenant.id) == 1

    @pytest.mark.asyncio
    async def test_already_pro_is_rejected_without_changes(self, db, make_tenant):
        tenant = await make_tenant()
        tenant_id = tenant.id
        await UpgradeService(db).upgrade_to_pro(tenant, "ext_first", extra_users=1)

        result = await UpgradeService(db).upgrade_to_pro(tenant, "ext_second", extra_users=5)

        assert result.failure
        assert result.errors == [ALREADY_PRO_ERROR]
        await db.rollback()
        sub = await _reload(db, tenant_id)
        assert sub.external_subscription_id == "ext_first"
        assert sub.extra_users_count == 1

    @pytest.mark.asyncio
    async def test_negative_seats_rejected_with_no_writes(self, db, make_tenant):
        tenant = await make_tenant()
        tenant_id = tenant.id
        await SubscriptionCreationService(db).create_for_tenant(tenant)
        coordinator = MagicMock()
        coordinator.on_pro_upgrade = AsyncMock()

        result = await UpgradeService(db, coordinator=coordinator).upgrade_to_pro(tenant, "ext_1", extra_users=-1)

        assert result.failure
        assert result.errors == [NEGATIVE_SEATS_ERROR]
        coordinator.on_pro_upgrade.assert_not_awaited()
        await db.rollback()
        sub = await _reload(db, tenant_id)
        assert sub.plan_type == "basic"
        assert sub.external_subscription_id is None

    @pytest.mark.asyncio
    async def test_collects_all_validation_errors(self, db, make_tenant):
        tenant = await make_tenant()

        result = await UpgradeService(db).upgrade_to_pro(tenant, None, extra_users=-3)

        assert result.failure
        assert result.errors == [NEGATIVE_SEATS_ERROR, MISSING_EXTERNAL_ID_ERROR]

    @pytest.mark.asyncio
    async def test_rejected_upgrade_releases_row_lock(self, db, make_tenant):
        tenant = await make_tenant()
        await SubscriptionCreationService(db).create_for_tenant(tenant)

        result = await UpgradeService(db).upgrade_to_pro(tenant, "ext_1", extra_users=-1)

        assert result.failure
        assert not db.in_transaction()

    @pytest.mark.asyncio
    async def test_rejected_upgrade_rolls_back_without_commit(self):
        db = AsyncMock()
        locked = MagicMock()
        locked.is_pro = True
        db.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value=locked))
        tenant = MagicMock()

        result = await UpgradeService(db, coordinator=MagicMock()).upgrade_to_pro(tenant, "ext_2", extra_users=0)

        assert result.errors == [ALREADY_PRO_ERROR]
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_coordinator_failure_rolls_back_upgrade(self, db, make_tenant):
        """Referral side effects and the plan change commit together or not at all."""
        tenant = await make_tenant()
        tenant_id = tenant.id
        await SubscriptionCreationService(db).create_for_tenant(tenant)
        coordinator = MagicMock()
        coordinator.on_pro_upgrade = AsyncMock(side_effect=RuntimeError("referral store unavailable"))

        result = await UpgradeService(db, coordinator=coordinator).upgrade_to_pro(tenant, "ext_9", extra_users=1)

        assert result.failure
        assert result.errors == ["referral store unavailable"]
        sub = await _reload(db, tenant_id)
        assert sub.plan_type == "basic"
        assert sub.external_subscription_id is None
        assert sub.extra_users_count == 0

    @pytest.mark.asyncio
    async def test_coordinator_invoked_with_tenant_id(self, db, make_tenant):
        tenant = await make_tenant()
        coordinator = MagicMock()
        coordinator.on_pro_upgrade = AsyncMock(return_value=False)

        result = await UpgradeService(db, coordinator=coordinator).upgrade_to_pro(tenant, "ext_7")

        assert result.success
        coordinator.on_pro_upgrade.assert_awaited_once_with(tenant.id)


class TestCancellation:
    """Tests for SubscriptionCancellationService."""

    @pytest.mark.asyncio
    async def test_basic_plan_cannot_be_canceled(self, db, make_tenant):
        tenant = await make_tenant()
        await SubscriptionCreationService(db).create_for_tenant(tenant)

        result = await SubscriptionCancellationService(db).cancel(tenant)

        assert result.failure
        assert result.errors == [NOT_PRO_CANCEL_ERROR]

    @pytest.mark.asyncio
    async def test_rejected_cancel_releases_row_lock(self, db, make_tenant):
        tenant = await make_tenant()
        await SubscriptionCreationService(db).create_for_tenant(tenant)

        result = await SubscriptionCancellationService(db).cancel(tenant)

        assert result.failure
        assert not db.in_transaction()

    @pytest.mark.asyncio
    async def test_cancel_pro_and_mirror_to_stripe(self, db, make_tenant):
        tenant = await make_tenant()
        await UpgradeService(db).upgrade_to_pro(tenant, "ext_cancel", extra_users=0)
        gateway = MagicMock()
        gateway.cancel_remote_subscription = AsyncMock()

        result = await SubscriptionCancellationService(db).cancel(tenant, gateway=gateway)

        assert result.success
        assert result.data["status"] == "canceled"
        gateway.cancel_remote_subscription.assert_awaited_once_with("ext_cancel")
        sub = await _reload(db, tenant.id)
        assert sub.status == "canceled"
        assert sub.canceled_at is not None

    @pytest.mark.asyncio
    async def test_stripe_failure_does_not_undo_local_cancel(self, db, make_tenant):
        tenant = await make_tenant()
        await UpgradeService(db).upgrade_to_pro(tenant, "ext_flaky", extra_users=0)
        gateway = MagicMock()
        gateway.cancel_remote_subscription = AsyncMock(side_effect=RuntimeError("stripe down"))

        result = await SubscriptionCancellationService(db).cancel(tenant, gateway=gateway)

        assert result.success
        sub = await _reload(db, tenant.id)
        assert sub.status == "canceled"
