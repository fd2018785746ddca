"""
Stripe Gateway

Thin async adapter over Stripe customers, Checkout sessions and subscriptions.

Credentials come from an injected StripeConfig rather than the module-level
`stripe.api_key`, so tests can hand in a fake client or a fake gateway.

Requirements:
- stripe (StripeClient with async methods)
- httpx (async transport used by stripe.HTTPXClient)
- tenacity (bounded retries of idempotent reads on connection errors)
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

import stripe
import structlog
import tenacity
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tenant import Tenant
from app.modules.billing.domain.billing.referral_rewards import find_originating_member
from app.modules.billing.domain.billing.subscription import lock_subscription_by_tenant
from app.shared.core.config import get_settings
from app.shared.core.exceptions import BillingError, ConfigurationError, ResourceNotFoundError

logger = structlog.get_logger()


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    logger.warning(
        "stripe_call_retrying",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


# Idempotent reads only; writes rely on Stripe's own idempotency handling
stripe_read_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type(stripe.APIConnectionError),
    wait=tenacity.wait_exponential(multiplier=0.5, min=0.5, max=4),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=_log_retry,
    reraise=True,
)


@dataclass(frozen=True)
class StripeConfig:
    secret_key: Optional[str]
    webhook_secret: Optional[str]
    price_base: Optional[str]
    price_extra_seat: Optional[str]
    timeout_seconds: float = 30.0
    webhook_tolerance_seconds: int = 300

    @classmethod
    def from_settings(cls, settings=None) -> "StripeConfig":
        settings = settings or get_settings()
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            price_base=settings.STRIPE_PRICE_BASE,
            price_extra_seat=settings.STRIPE_PRICE_EXTRA_SEAT,
            timeout_seconds=settings.STRIPE_TIMEOUT_SECONDS,
            webhook_tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )


@dataclass(frozen=True)
class CustomerRef:
    id: str
    created: bool = False


@dataclass(frozen=True)
class SessionRef:
    id: str
    url: str


@dataclass(frozen=True)
class RemoteSubscriptionSnapshot:
    id: str
    status: Optional[str]
    customer_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]


def field(obj: Any, key: str) -> Any:
    """Read a key from a StripeObject or plain dict, None when absent."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


def from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def read_billing_period(subscription: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Billing window of a Stripe subscription payload.
    Newer API versions only expose it on the subscription items.
    """
    start = field(subscription, "current_period_start")
    end = field(subscription, "current_period_end")
    if start is None or end is None:
        items = field(field(subscription, "items"), "data") or []
        if items:
            start = field(items[0], "current_period_start")
            end = field(items[0], "current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _is_not_found(error: stripe.StripeError) -> bool:
    return getattr(error, "code", None) == "resource_missing" or getattr(error, "http_status", None) == 404


class StripeGateway:
    """Async wrapper for Stripe operations."""

    def __init__(self, db: AsyncSession, config: StripeConfig, client: Any = None):
        self.db = db
        self.config = config
        self.client = client or self._build_client(config)

    @staticmethod
    def _build_client(config: StripeConfig) -> stripe.StripeClient:
        if not config.secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        return stripe.StripeClient(
            config.secret_key,
            http_client=stripe.HTTPXClient(timeout=config.timeout_seconds),
        )

    async def find_or_create_billing_customer(self, tenant: Tenant) -> CustomerRef:
        """
        Resolve the tenant's Stripe customer, creating one when the stored
        reference is missing or stale.

        A newly created customer id is committed before returning so no
        checkout session can be built from a stale reference.
        """
        tenant_id = tenant.id
        subscription = await lock_subscription_by_tenant(self.db, tenant_id)
        if subscription is None:
            raise ResourceNotFoundError(
                "Tenant has no subscription record",
                details={"tenant_id": str(tenant_id)}
            )

        if subscription.external_customer_id:
            try:
                customer = await self.client.customers.retrieve_async(subscription.external_customer_id)
                if not field(customer, "deleted"):
                    return CustomerRef(id=field(customer, "id"))
                logger.warning(
                    "stripe_customer_deleted_recreating",
                    tenant_id=str(tenant_id),
                    customer_id=subscription.external_customer_id
                )
            except stripe.InvalidRequestError as e:
                if not _is_not_found(e):
                    raise
                logger.warning(
                    "stripe_customer_not_found_recreating",
                    tenant_id=str(tenant_id),
                    customer_id=subscription.external_customer_id
                )

        email = tenant.billing_email
        if not email:
            owner = await find_originating_member(self.db, tenant_id)
            email = owner.email if owner else None
        if not email:
            raise BillingError(
                "No billing email available for tenant",
                details={"tenant_id": str(tenant_id)}
            )

        try:
            customer = await self.client.customers.create_async(
                params={
                    "email": email,
                    "name": tenant.name,
                    "metadata": {"tenant_id": str(tenant_id)},
                }
            )
        except stripe.StripeError as e:
            logger.error("stripe_customer_create_failed", tenant_id=str(tenant_id), error=str(e))
            raise

        subscription.external_customer_id = field(customer, "id")
        await self.db.commit()

        logger.info(
            "stripe_customer_created",
            tenant_id=str(tenant_id),
            customer_id=subscription.external_customer_id
        )
        return CustomerRef(id=subscription.external_customer_id, created=True)

    async def create_checkout_session(
        self,
        tenant: Tenant,
        extra_users: int,
        success_url: str,
        cancel_url: str
    ) -> SessionRef:
        """
        Start a Stripe Checkout for the Pro plan plus extra seats.

        The session metadata `{tenant_id, extra_users}` comes back verbatim on
        `checkout.session.completed`; it is the only channel carrying the
        upgrade intent.
        """
        if extra_users < 0:
            raise BillingError("Extra users count must be zero or greater")
        if not self.config.price_base or not self.config.price_extra_seat:
            raise ConfigurationError("Stripe price ids are not configured")

        tenant_id = tenant.id
        customer = await self.find_or_create_billing_customer(tenant)

        line_items = [{"price": self.config.price_base, "quantity": 1}]
        if extra_users > 0:
            line_items.append({"price": self.config.price_extra_seat, "quantity": extra_users})
        metadata = {"tenant_id": str(tenant_id), "extra_users": str(extra_users)}

        try:
            session = await self.client.checkout.sessions.create_async(
                params={
                    "mode": "subscription",
                    "customer": customer.id,
                    "client_reference_id": str(tenant_id),
                    "line_items": line_items,
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": metadata,
                    "subscription_data": {"metadata": metadata},
                }
            )
        except stripe.StripeError as e:
            logger.error("stripe_checkout_failed", tenant_id=str(tenant_id), error=str(e))
            raise
        finally:
            # Releases the row lock taken while resolving the customer
            await self.db.commit()

        logger.info(
            "stripe_checkout_session_created",
            tenant_id=str(tenant_id),
            session_id=field(session, "id"),
            extra_users=extra_users
        )
        return SessionRef(id=field(session, "id"), url=field(session, "url"))

    @stripe_read_retry
    async def retrieve_remote_subscription(self, remote_id: str) -> RemoteSubscriptionSnapshot:
        remote = await self.client.subscriptions.retrieve_async(remote_id)
        start, end = read_billing_period(remote)
        return RemoteSubscriptionSnapshot(
            id=field(remote, "id"),
            status=field(remote, "status"),
            customer_id=field(remote, "customer"),
            current_period_start=start,
            current_period_end=end,
        )

    async def cancel_remote_subscription(self, remote_id: str) -> None:
        await self.client.subscriptions.cancel_async(remote_id)
        logger.info("stripe_subscription_canceled", subscription_id=remote_id)
