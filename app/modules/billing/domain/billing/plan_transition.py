"""
Plan Transition Service

Applies validated plan changes to a tenant's Subscription, one transaction
per call:
1. Create: basic (or given) plan plus its UsageLimit, idempotent per tenant
2. Upgrade: basic -> Pro after a completed checkout, crediting referrals
3. Cancel: Pro -> canceled, mirrored to Stripe on a best-effort basis

Services are built per call and return a ServiceResult; they never raise past
their boundary except for Create, whose callers need the row itself.
"""

from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tenant import Tenant
from app.modules.billing.domain.billing.referral_rewards import (
    ReferralConversionCoordinator,
    ensure_usage_limit,
)
from app.modules.billing.domain.billing.result import ServiceResult
from app.modules.billing.domain.billing.subscription import (
    PlanType,
    Subscription,
    lock_subscription_by_tenant,
    utcnow,
)
from app.shared.core.ops_metrics import PLAN_TRANSITIONS_TOTAL

logger = structlog.get_logger()

ALREADY_PRO_ERROR = "Tenant is already on the Pro plan"
NEGATIVE_SEATS_ERROR = "Extra users count must be zero or greater"
MISSING_EXTERNAL_ID_ERROR = "External subscription id is required"
NOT_PRO_CANCEL_ERROR = "Only Pro subscriptions can be canceled"
VALIDATION_ERRORS = {ALREADY_PRO_ERROR, NEGATIVE_SEATS_ERROR, MISSING_EXTERNAL_ID_ERROR}


class SubscriptionCreationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_for_tenant(self, tenant: Tenant, plan_type: str = PlanType.BASIC.value) -> Subscription:
        """
        Return the tenant's Subscription, creating it with its UsageLimit if absent.
        Both rows are committed together or not at all.
        """
        tenant_id = tenant.id
        existing = await lock_subscription_by_tenant(self.db, tenant_id)
        if existing is not None:
            return existing

        try:
            subscription = Subscription.for_tenant(tenant_id, plan_type)
            self.db.add(subscription)
            await self.db.flush()
            await ensure_usage_limit(self.db, tenant_id)
            await self.db.commit()
        except IntegrityError:
            # Lost the unique-tenant race to a concurrent create
            await self.db.rollback()
            existing = await lock_subscription_by_tenant(self.db, tenant_id)
            if existing is None:
                raise
            logger.info("subscription_create_race_resolved", tenant_id=str(tenant_id))
            return existing
        except Exception as e:
            await self.db.rollback()
            PLAN_TRANSITIONS_TOTAL.labels(transition="create", outcome="error").inc()
            logger.error("subscription_create_failed", tenant_id=str(tenant_id), error=str(e))
            raise

        PLAN_TRANSITIONS_TOTAL.labels(transition="create", outcome="success").inc()
        logger.info("subscription_created", tenant_id=str(tenant_id), plan_type=subscription.plan_type)
        return subscription


class UpgradeService:
    """Moves a tenant to Pro once Stripe confirms the checkout."""

    def __init__(self, db: AsyncSession, coordinator: Optional[ReferralConversionCoordinator] = None):
        self.db = db
        self.coordinator = coordinator or ReferralConversionCoordinator(db)

    async def upgrade_to_pro(
        self,
        tenant: Tenant,
        external_subscription_id: Optional[str],
        extra_users: int = 0
    ) -> ServiceResult:
        tenant_id = tenant.id

        try:
            subscription = await lock_subscription_by_tenant(self.db, tenant_id)
            errors = self._validate(subscription, external_subscription_id, extra_users)
            if errors:
                PLAN_TRANSITIONS_TOTAL.labels(transition="upgrade", outcome="rejected").inc()
                logger.warning("upgrade_rejected", tenant_id=str(tenant_id), errors=errors)
                # Release the row lock; nothing was written
                await self.db.rollback()
                return ServiceResult.fail(errors)

            return await self._perform_upgrade(tenant_id, subscription, external_subscription_id, extra_users)

        except Exception as e:
            await self.db.rollback()
            PLAN_TRANSITIONS_TOTAL.labels(transition="upgrade", outcome="error").inc()
            logger.error(
                "upgrade_failed",
                tenant_id=str(tenant_id),
                external_subscription_id=external_subscription_id,
                error=str(e),
                exc_info=True
            )
            return ServiceResult.fail(str(e))

    @staticmethod
    def _validate(
        subscription: Optional[Subscription],
        external_subscription_id: Optional[str],
        extra_users: int
    ) -> list[str]:
        errors = []
        if subscription is not None and subscription.is_pro:
            errors.append(ALREADY_PRO_ERROR)
        if extra_users < 0:
            errors.append(NEGATIVE_SEATS_ERROR)
        if not external_subscription_id:
            errors.append(MISSING_EXTERNAL_ID_ERROR)
        return errors

    async def _perform_upgrade(
        self,
        tenant_id: UUID,
        subscription: Optional[Subscription],
        external_subscription_id: str,
        extra_users: int
    ) -> ServiceResult:
        if subscription is None:
            subscription = Subscription.for_tenant(tenant_id)
            self.db.add(subscription)
        await ensure_usage_limit(self.db, tenant_id)

        subscription.promote_to_pro(external_subscription_id, extra_users, utcnow())
        await self.db.flush()

        # Same transaction: a failed conversion undoes the upgrade
        await self.coordinator.on_pro_upgrade(tenant_id)

        snapshot = subscription.snapshot()
        await self.db.commit()

        PLAN_TRANSITIONS_TOTAL.labels(transition="upgrade", outcome="success").inc()
        logger.info(
            "subscription_upgraded_to_pro",
            tenant_id=str(tenant_id),
            external_subscription_id=external_subscription_id,
            extra_users=extra_users,
            monthly_cost=snapshot["monthly_cost"]
        )
        return ServiceResult.ok(snapshot)


class SubscriptionCancellationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def cancel(self, tenant: Tenant, gateway=None) -> ServiceResult:
        """
        Cancel locally, then at Stripe.
        A Stripe failure is logged only; its subscription.deleted event reconciles later.
        """
        tenant_id = tenant.id
        try:
            subscription = await lock_subscription_by_tenant(self.db, tenant_id)
            if subscription is None or not subscription.is_pro:
                PLAN_TRANSITIONS_TOTAL.labels(transition="cancel", outcome="rejected").inc()
                await self.db.rollback()
                return ServiceResult.fail(NOT_PRO_CANCEL_ERROR)

            subscription.cancel()
            external_id = subscription.external_subscription_id
            snapshot = subscription.snapshot()
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            PLAN_TRANSITIONS_TOTAL.labels(transition="cancel", outcome="error").inc()
            logger.error("subscription_cancel_failed", tenant_id=str(tenant_id), error=str(e))
            return ServiceResult.fail(str(e))

        PLAN_TRANSITIONS_TOTAL.labels(transition="cancel", outcome="success").inc()
        logger.info("subscription_canceled", tenant_id=str(tenant_id))

        if gateway is not None and external_id:
            try:
                await gateway.cancel_remote_subscription(external_id)
            except Exception as e:
                logger.error(
                    "stripe_cancel_failed",
                    tenant_id=str(tenant_id),
                    external_subscription_id=external_id,
                    error=str(e)
                )

        return ServiceResult.ok(snapshot)
