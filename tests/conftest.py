import os
# Test environment must be in place BEFORE any app imports
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Any, Dict, Optional
from uuid import UUID, uuid4

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.shared.db.base import Base
# Ensure all models are registered in the metadata
from app.models.tenant import Tenant, User, UserRole
from app.models.referral import ReferralInvitation, ReferralStatus
from app.modules.billing.domain.billing.subscription import Subscription, UsageLimit  # noqa: F401
from app.modules.billing.domain.billing.webhook_ledger import ProcessedWebhookEvent  # noqa: F401
from app.modules.billing.domain.billing.stripe_gateway import StripeConfig

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        price_base="price_base_test",
        price_extra_seat="price_seat_test",
    )


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def make_tenant(db):
    """Factory: tenant plus its originating member, committed."""
    async def _make(
        name: str = "Acme Law",
        owner_email: Optional[str] = "owner@acme.test",
        billing_email: Optional[str] = None,
    ) -> Tenant:
        tenant = Tenant(id=uuid4(), name=name, billing_email=billing_email)
        db.add(tenant)
        await db.flush()
        if owner_email:
            db.add(User(
                id=uuid4(),
                tenant_id=tenant.id,
                email=owner_email,
                role=UserRole.OWNER.value,
                created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            ))
        await db.commit()
        return tenant
    return _make


@pytest.fixture
def owner_of(db):
    async def _owner(tenant: Tenant) -> User:
        from app.modules.billing.domain.billing.referral_rewards import find_originating_member
        return await find_originating_member(db, tenant.id)
    return _owner


@pytest.fixture
def make_referral(db):
    async def _make(
        referrer: User,
        referred: User,
        status: str = ReferralStatus.ACCEPTED.value,
        reward_earned: bool = False,
        created_at: Optional[datetime] = None,
    ) -> ReferralInvitation:
        referral = ReferralInvitation(
            id=uuid4(),
            referred_by_id=referrer.id,
            referred_user_id=referred.id,
            email=referred.email,
            status=status,
            reward_earned=reward_earned,
            accepted_at=datetime.now(timezone.utc) - timedelta(days=3),
            created_at=created_at or datetime.now(timezone.utc),
        )
        db.add(referral)
        await db.commit()
        return referral
    return _make


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header: t=<ts>,v1=<hex hmac-sha256 of '<ts>.<payload>'>."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def build_event(event_type: str, data_object: Dict[str, Any], event_id: Optional[str] = None) -> bytes:
    return json.dumps({
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }).encode("utf-8")


@pytest.fixture
def signed_payload():
    """Factory: signature header for an arbitrary raw body."""
    return sign_payload


@pytest.fixture
def signed_event():
    """Factory: (payload, signature header) for a Stripe event."""
    def _signed(event_type: str, data_object: Dict[str, Any], event_id: Optional[str] = None, secret: str = WEBHOOK_SECRET):
        payload = build_event(event_type, data_object, event_id)
        return payload, sign_payload(payload, secret)
    return _signed


@pytest.fixture
async def ac(db, stripe_config) -> AsyncGenerator[AsyncClient, None]:
    """API client on the test database; the caller's tenant id travels in X-Test-Tenant."""
    from fastapi import HTTPException, Request
    from app.main import app
    from app.shared.db.session import get_db
    from app.shared.core.dependencies import get_current_tenant, get_stripe_config

    async def override_get_db():
        yield db

    async def override_current_tenant(request: Request) -> Tenant:
        raw = request.headers.get("X-Test-Tenant")
        if not raw:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return await db.get(Tenant, UUID(raw))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_tenant] = override_current_tenant
    app.dependency_overrides[get_stripe_config] = lambda: stripe_config

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
