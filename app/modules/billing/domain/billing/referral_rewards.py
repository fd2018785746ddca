"""
Referral & Usage Side Effects

Runs inside the caller's transaction on a first-time Pro upgrade and never
commits itself. Safe to invoke again for the same upgrade: a referral that
already earned its reward is left untouched.
"""

from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.referral import ReferralInvitation, ReferralStatus
from app.models.tenant import User
from app.modules.billing.domain.billing.subscription import (
    UsageLimit,
    get_usage_limit,
    lock_subscription_by_tenant,
    utcnow,
)
from app.shared.core.ops_metrics import REFERRAL_CONVERSIONS_TOTAL

logger = structlog.get_logger()


async def find_originating_member(db: AsyncSession, tenant_id: UUID) -> Optional[User]:
    """The tenant's earliest-created member, i.e. whoever signed the office up."""
    result = await db.execute(
        select(User)
        .where(User.tenant_id == tenant_id)
        .order_by(User.created_at, User.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def ensure_usage_limit(db: AsyncSession, tenant_id: UUID) -> UsageLimit:
    """Provision the tenant's UsageLimit; no-op when one already exists."""
    usage = await get_usage_limit(db, tenant_id)
    if usage is None:
        usage = UsageLimit.for_tenant(tenant_id)
        db.add(usage)
        await db.flush()
        logger.info("usage_limit_provisioned", tenant_id=str(tenant_id))
    return usage


class ReferralConversionCoordinator:
    """Credits the referrer when a referred office upgrades to Pro."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def on_pro_upgrade(self, tenant_id: UUID) -> bool:
        """
        Convert the originating member's referral and grant the referrer a free month.

        Returns:
            True when a conversion was recorded, False when there was nothing to do.
        """
        owner = await find_originating_member(self.db, tenant_id)
        if not owner:
            return False

        # A member may hold several invitations (expired ones, several referrers)
        result = await self.db.execute(
            select(ReferralInvitation)
            .where(ReferralInvitation.referred_user_id == owner.id)
            .order_by(ReferralInvitation.created_at, ReferralInvitation.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        referrals = result.scalars().all()

        rewarded = next(
            (r for r in referrals if r.status == ReferralStatus.CONVERTED.value or r.reward_earned),
            None
        )
        if rewarded is not None:
            logger.info(
                "referral_already_converted",
                referral_id=str(rewarded.id),
                tenant_id=str(tenant_id)
            )
            return False

        referral = next((r for r in referrals if r.is_convertible), None)
        if referral is None:
            return False

        referral.status = ReferralStatus.CONVERTED.value
        referral.converted_at = utcnow()
        referral.reward_earned = True

        await self._award_free_month(referral)
        await self.db.flush()

        REFERRAL_CONVERSIONS_TOTAL.inc()
        logger.info(
            "referral_converted",
            referral_id=str(referral.id),
            tenant_id=str(tenant_id)
        )
        return True

    async def _award_free_month(self, referral: ReferralInvitation) -> None:
        referrer = await self.db.get(User, referral.referred_by_id)
        if not referrer:
            logger.warning("referral_referrer_missing", referral_id=str(referral.id))
            return

        subscription = await lock_subscription_by_tenant(self.db, referrer.tenant_id)
        if subscription is None:
            logger.warning(
                "referral_referrer_without_subscription",
                referral_id=str(referral.id),
                referrer_tenant_id=str(referrer.tenant_id)
            )
            return

        subscription.add_free_month()
        logger.info(
            "referral_free_month_awarded",
            referral_id=str(referral.id),
            referrer_tenant_id=str(referrer.tenant_id),
            free_months_remaining=subscription.free_months_remaining
        )
