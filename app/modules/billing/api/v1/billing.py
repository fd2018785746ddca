"""
Billing API Endpoints - Stripe Integration

Provides:
- GET /billing/subscription - Current subscription and usage
- POST /billing/checkout - Start a Stripe Checkout for the Pro plan
- POST /billing/cancel - Cancel the Pro subscription
- POST /billing/webhook - Receive Stripe webhooks
"""

from typing import Annotated, Any, Dict, Optional

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tenant import Tenant
from app.modules.billing.domain.billing import (
    StripeConfig,
    StripeGateway,
    StripeWebhookProcessor,
    SubscriptionCancellationService,
    SubscriptionCreationService,
)
from app.modules.billing.domain.billing.subscription import get_usage_limit
from app.shared.core.config import get_settings
from app.shared.core.dependencies import get_current_tenant, get_stripe_config
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(prefix="/billing", tags=["Billing"])


class CheckoutRequest(BaseModel):
    extra_users: int = Field(default=0, ge=0)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class SubscriptionResponse(BaseModel):
    plan_type: str
    status: str
    monthly_cost: float
    extra_users_count: int
    free_months_remaining: int = 0
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    canceled_at: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


def get_gateway(
    db: AsyncSession = Depends(get_db),
    config: StripeConfig = Depends(get_stripe_config),
) -> StripeGateway:
    if not config.secret_key:
        raise HTTPException(503, "Billing not configured")
    return StripeGateway(db, config)


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    tenant: Annotated[Tenant, Depends(get_current_tenant)],
    db: AsyncSession = Depends(get_db),
):
    """Current subscription for the tenant; offices without one get the basic plan."""
    tenant_id = tenant.id
    subscription = await SubscriptionCreationService(db).create_for_tenant(tenant)
    usage = await get_usage_limit(db, tenant_id)

    payload = subscription.to_dict()
    payload.pop("id")
    return SubscriptionResponse(
        **payload,
        usage=usage.usage_summary(subscription.plan_limits) if usage else None,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    checkout_req: CheckoutRequest,
    tenant: Annotated[Tenant, Depends(get_current_tenant)],
    gateway: Annotated[StripeGateway, Depends(get_gateway)],
    db: AsyncSession = Depends(get_db),
):
    """Start a Stripe Checkout session; its metadata drives the later upgrade."""
    settings = get_settings()
    await SubscriptionCreationService(db).create_for_tenant(tenant)

    try:
        session = await gateway.create_checkout_session(
            tenant,
            extra_users=checkout_req.extra_users,
            success_url=checkout_req.success_url or f"{settings.FRONTEND_URL}/subscription/success",
            cancel_url=checkout_req.cancel_url or f"{settings.FRONTEND_URL}/subscription/cancel",
        )
    except stripe.StripeError as e:
        return JSONResponse(
            status_code=422,
            content={"success": False, "errors": [e.user_message or str(e)]},
        )

    return CheckoutResponse(checkout_url=session.url, session_id=session.id)


@router.post("/cancel")
async def cancel_subscription(
    tenant: Annotated[Tenant, Depends(get_current_tenant)],
    db: AsyncSession = Depends(get_db),
    config: StripeConfig = Depends(get_stripe_config),
):
    """Cancel the Pro plan locally and at Stripe."""
    gateway = StripeGateway(db, config) if config.secret_key else None
    result = await SubscriptionCancellationService(db).cancel(tenant, gateway=gateway)
    if result.failure:
        return JSONResponse(status_code=422, content=result.to_dict())
    return result.to_dict()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    config: StripeConfig = Depends(get_stripe_config),
):
    """
    Handle Stripe webhook events.

    Answers 200 once the signature checks out, whatever happens to the event.
    Failed events stay out of the ledger and are retried on redelivery.
    """
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")

    processor = StripeWebhookProcessor(db, config)
    result = await processor.handle(payload, signature)
    return {"status": result["status"]}
