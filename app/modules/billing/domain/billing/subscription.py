"""
Subscription Store

Persistent plan state per tenant plus the usage counters its quotas apply to.

Invariants enforced on every flush (see `check_invariants`):
- one Subscription per tenant (unique tenant_id)
- a Pro plan always carries the Stripe subscription id
- seat and free-month counters never go negative
- the billing window, when set, ends after it starts
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from uuid import UUID, uuid4

from dateutil.relativedelta import relativedelta
from sqlalchemy import String, DateTime, ForeignKey, Integer, Uuid, event, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base
from app.shared.core.exceptions import SubscriptionInvariantError


class PlanType(str, Enum):
    BASIC = "basic"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Stripe subscription statuses. Only the first three are produced locally."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    UNPAID = "unpaid"
    PAUSED = "paused"


PLAN_BASE_MONTHLY_COST = {
    PlanType.BASIC: Decimal("0.00"),
    PlanType.PRO: Decimal("70.00"),
}
EXTRA_SEAT_MONTHLY_COST = Decimal("15.00")

# None means unlimited
PLAN_LIMITS: Dict[PlanType, Dict[str, Optional[int]]] = {
    PlanType.BASIC: {
        "customers": 100,
        "jobs": 150,
        "works": 100,
        "documents_total": 100,
        "documents_monthly": None,
        "lawyers": 1,
        "offices": 0,
    },
    PlanType.PRO: {
        "customers": None,
        "jobs": None,
        "works": None,
        "documents_total": None,
        "documents_monthly": 100,
        "lawyers": 2,
        "offices": 1,
    },
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def plan_limits(plan_type: str, extra_users: int = 0) -> Dict[str, Optional[int]]:
    """Quota ceilings for a plan. Extra seats raise the lawyer ceiling."""
    limits = dict(PLAN_LIMITS[PlanType(plan_type)])
    limits["lawyers"] = limits["lawyers"] + max(extra_users, 0)
    return limits


class Subscription(Base):
    """
    Persistent subscription state per tenant.
    """
    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True
    )

    # Stripe join keys
    external_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)  # cus_xxx
    external_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)  # sub_xxx

    # Current state
    plan_type: Mapped[str] = mapped_column(String(20), default=PlanType.BASIC.value, index=True)
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.ACTIVE.value, index=True)
    extra_users_count: Mapped[int] = mapped_column(Integer, default=0)
    free_months_remaining: Mapped[int] = mapped_column(Integer, default=0)

    # Billing window
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow
    )

    @property
    def is_pro(self) -> bool:
        return self.plan_type == PlanType.PRO.value

    @property
    def has_free_months(self) -> bool:
        return (self.free_months_remaining or 0) > 0

    @property
    def monthly_cost(self) -> Decimal:
        base = PLAN_BASE_MONTHLY_COST.get(PlanType(self.plan_type), Decimal("0.00"))
        return base + EXTRA_SEAT_MONTHLY_COST * (self.extra_users_count or 0)

    @property
    def plan_limits(self) -> Dict[str, Optional[int]]:
        return plan_limits(self.plan_type, self.extra_users_count or 0)

    def promote_to_pro(self, external_subscription_id: str, extra_users: int, now: datetime) -> None:
        """
        Apply the Pro plan with a provisional one-month window.
        The window is replaced by the provider's on the next subscription update.
        """
        self.external_subscription_id = external_subscription_id
        self.plan_type = PlanType.PRO.value
        self.status = SubscriptionStatus.ACTIVE.value
        self.extra_users_count = extra_users
        self.canceled_at = None
        self.set_billing_period(now, now + relativedelta(months=1))

    def set_billing_period(self, start: Optional[datetime], end: Optional[datetime]) -> None:
        if start is not None and end is not None and as_utc(end) <= as_utc(start):
            raise SubscriptionInvariantError(
                "current_period_end must be after current_period_start",
                details={"start": start.isoformat(), "end": end.isoformat()}
            )
        self.current_period_start = start
        self.current_period_end = end

    def add_free_month(self) -> None:
        self.free_months_remaining = (self.free_months_remaining or 0) + 1

    def use_free_month(self) -> bool:
        """Redeem one credit. Returns False when none are left."""
        if not self.has_free_months:
            return False
        self.free_months_remaining -= 1
        return True

    def cancel(self, now: Optional[datetime] = None) -> None:
        self.status = SubscriptionStatus.CANCELED.value
        self.canceled_at = now or utcnow()

    @classmethod
    def for_tenant(cls, tenant_id: UUID, plan_type: str = PlanType.BASIC.value) -> "Subscription":
        return cls(
            id=uuid4(),
            tenant_id=tenant_id,
            plan_type=PlanType(plan_type).value,
            status=SubscriptionStatus.ACTIVE.value,
            extra_users_count=0,
            free_months_remaining=0,
        )

    def check_invariants(self) -> None:
        # Unset columns still get their defaults at INSERT time
        if self.plan_type is not None and self.plan_type not in {p.value for p in PlanType}:
            raise SubscriptionInvariantError(f"Unknown plan_type: {self.plan_type}")
        if self.status is not None and self.status not in {s.value for s in SubscriptionStatus}:
            raise SubscriptionInvariantError(f"Unknown status: {self.status}")
        if self.is_pro and not self.external_subscription_id:
            raise SubscriptionInvariantError(
                "Pro subscriptions require an external subscription id",
                details={"tenant_id": str(self.tenant_id)}
            )
        if (self.extra_users_count or 0) < 0:
            raise SubscriptionInvariantError("extra_users_count cannot be negative")
        if (self.free_months_remaining or 0) < 0:
            raise SubscriptionInvariantError("free_months_remaining cannot be negative")
        start, end = as_utc(self.current_period_start), as_utc(self.current_period_end)
        if start is not None and end is not None and end <= start:
            raise SubscriptionInvariantError("current_period_end must be after current_period_start")

    def snapshot(self) -> Dict[str, Any]:
        """Plan state relayed upstream after a transition."""
        return {
            "plan_type": self.plan_type,
            "status": self.status,
            "monthly_cost": float(self.monthly_cost),
            "extra_users_count": self.extra_users_count,
        }

    def to_dict(self) -> Dict[str, Any]:
        start, end = as_utc(self.current_period_start), as_utc(self.current_period_end)
        canceled = as_utc(self.canceled_at)
        return {
            "id": str(self.id),
            **self.snapshot(),
            "free_months_remaining": self.free_months_remaining,
            "current_period_start": start.isoformat() if start else None,
            "current_period_end": end.isoformat() if end else None,
            "canceled_at": canceled.isoformat() if canceled else None,
        }


@event.listens_for(Subscription, "before_insert")
@event.listens_for(Subscription, "before_update")
def _validate_subscription(_mapper, _connection, target: Subscription) -> None:
    target.check_invariants()


USAGE_RESOURCES = {
    "customers": "customers_count",
    "jobs": "jobs_count",
    "works": "works_count",
    "documents_total": "documents_generated_total",
    "documents_monthly": "documents_generated_month",
}


class UsageLimit(Base):
    """
    Usage counters for a tenant, measured against its plan's quota ceilings.
    Created once alongside the first Subscription.
    """
    __tablename__ = "usage_limits"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True
    )

    customers_count: Mapped[int] = mapped_column(Integer, default=0)
    jobs_count: Mapped[int] = mapped_column(Integer, default=0)
    works_count: Mapped[int] = mapped_column(Integer, default=0)
    documents_generated_total: Mapped[int] = mapped_column(Integer, default=0)
    documents_generated_month: Mapped[int] = mapped_column(Integer, default=0)

    # Window for the monthly document quota
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow
    )

    @classmethod
    def for_tenant(cls, tenant_id: UUID, now: Optional[datetime] = None) -> "UsageLimit":
        now = now or utcnow()
        return cls(
            id=uuid4(),
            tenant_id=tenant_id,
            customers_count=0,
            jobs_count=0,
            works_count=0,
            documents_generated_total=0,
            documents_generated_month=0,
            period_start=now,
            period_end=now + relativedelta(months=1),
        )

    def current_usage(self, resource: str) -> int:
        return getattr(self, USAGE_RESOURCES[resource]) or 0

    def within_limit(self, resource: str, limits: Dict[str, Optional[int]]) -> bool:
        if resource not in USAGE_RESOURCES:
            return True
        limit = limits.get(resource)
        if limit is None:
            return True
        return self.current_usage(resource) < limit

    def should_reset_monthly(self, now: Optional[datetime] = None) -> bool:
        if self.period_end is None:
            return False
        return (now or utcnow()) >= as_utc(self.period_end)

    def reset_monthly_usage(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.documents_generated_month = 0
        self.period_start = now
        self.period_end = now + relativedelta(months=1)

    def usage_summary(self, limits: Dict[str, Optional[int]]) -> Dict[str, Dict[str, Any]]:
        summary = {}
        for resource in USAGE_RESOURCES:
            current = self.current_usage(resource)
            limit = limits.get(resource)
            summary[resource] = {
                "current": current,
                "limit": limit,
                "percentage": 0 if not limit else round(current / limit * 100, 2),
                "at_limit": not self.within_limit(resource, limits),
            }
        period_end = as_utc(self.period_end)
        summary["documents_monthly"]["period_end"] = period_end.isoformat() if period_end else None
        return summary


async def lock_subscription_by_tenant(db: AsyncSession, tenant_id: UUID) -> Optional[Subscription]:
    """Row-locked read of a tenant's Subscription; the lock lasts until commit or rollback."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.tenant_id == tenant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def lock_subscription_by_external_id(db: AsyncSession, external_subscription_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.external_subscription_id == external_subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_usage_limit(db: AsyncSession, tenant_id: UUID) -> Optional[UsageLimit]:
    result = await db.execute(select(UsageLimit).where(UsageLimit.tenant_id == tenant_id))
    return result.scalar_one_or_none()
