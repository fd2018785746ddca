from uuid import UUID

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tenant import Tenant
from app.shared.db.session import get_db
from app.shared.core.config import get_settings
from app.modules.billing.domain.billing.stripe_gateway import StripeConfig


def get_stripe_config() -> StripeConfig:
    return StripeConfig.from_settings(get_settings())


async def get_current_tenant(request: Request, db: AsyncSession = Depends(get_db)) -> Tenant:
    """
    Tenant of the authenticated caller.
    Upstream auth middleware stores the resolved id on request.state.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Not authenticated")

    tenant = await db.get(Tenant, UUID(str(tenant_id)))
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return tenant
