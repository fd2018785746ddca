"""
Stripe Webhook Processor

Entry point for provider notifications. Events may arrive twice, late, or out
of order; the processor:
- authenticates the raw payload against the signing secret (no local retry,
  Stripe's redelivery schedule is the retry authority)
- skips event ids already in the processed-event ledger
- dispatches by type to the Plan Transition Service or to the lifecycle
  fields it owns (status, billing window, free-month redemption, cancellation)
- isolates failures per event so a bad payload never breaks acknowledgement

Usage:
    processor = StripeWebhookProcessor(db, StripeConfig.from_settings())
    result = await processor.handle(raw_body, request.headers.get("Stripe-Signature"))
"""

import json
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tenant import Tenant
from app.modules.billing.domain.billing.plan_transition import UpgradeService, VALIDATION_ERRORS
from app.modules.billing.domain.billing.stripe_gateway import (
    StripeConfig,
    StripeGateway,
    read_billing_period,
)
from app.modules.billing.domain.billing.subscription import (
    SubscriptionStatus,
    lock_subscription_by_external_id,
)
from app.modules.billing.domain.billing.webhook_ledger import ProcessedWebhookEvent
from app.shared.core.exceptions import BillingError, ConfigurationError, WebhookAuthenticationError
from app.shared.core.ops_metrics import FREE_MONTHS_CONSUMED_TOTAL, WEBHOOK_EVENTS_TOTAL

logger = structlog.get_logger()

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"

Handler = Callable[[Dict[str, Any], Any], Awaitable[str]]


class StripeWebhookProcessor:
    """Verifies, deduplicates and dispatches Stripe webhook events."""

    def __init__(self, db: AsyncSession, config: StripeConfig, gateway: Optional[StripeGateway] = None):
        self.db = db
        self.config = config
        self._gateway = gateway

    @property
    def gateway(self) -> StripeGateway:
        # Built on first use: only checkout events talk to Stripe
        if self._gateway is None:
            self._gateway = StripeGateway(self.db, self.config)
        return self._gateway

    async def handle(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate and process one webhook delivery.

        Raises:
            WebhookAuthenticationError: malformed payload or bad signature.
            ConfigurationError: no signing secret configured.

        Returns:
            {"status": ..., "event_id": ..., "event_type": ...}; status is one of
            processed, skipped, rejected, ignored, duplicate or failed.
        """
        event = self.authenticate(payload, signature)
        event_id = event.get("id")
        event_type = event["type"]
        log = logger.bind(event_id=event_id, event_type=event_type)

        log.info("stripe_webhook_received")

        handler = self._handlers().get(event_type)
        if handler is None:
            log.info("stripe_webhook_unhandled_event")
            return self._outcome(event_id, event_type, "ignored")

        if event_id and await self._already_processed(event_id):
            log.info("stripe_webhook_duplicate_ignored")
            return self._outcome(event_id, event_type, "duplicate")

        try:
            data_object = self._data_object(event)
            outcome = await handler(data_object, log)
            await self._record(event_id, event_type, outcome)
        except IntegrityError as e:
            await self.db.rollback()
            if event_id and await self._already_processed(event_id):
                log.info("stripe_webhook_concurrent_duplicate")
                return self._outcome(event_id, event_type, "duplicate")
            log.error("stripe_webhook_handler_failed", error=str(e))
            return self._outcome(event_id, event_type, "failed")
        except Exception as e:
            await self.db.rollback()
            log.error("stripe_webhook_handler_failed", error=str(e), exc_info=True)
            return self._outcome(event_id, event_type, "failed")

        return self._outcome(event_id, event_type, outcome)

    def authenticate(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as a plain dict."""
        if not self.config.webhook_secret:
            logger.error("stripe_webhook_secret_not_configured")
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET not configured")

        if not signature:
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome="rejected").inc()
            logger.warning("stripe_webhook_missing_signature")
            raise WebhookAuthenticationError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self.config.webhook_secret,
                tolerance=self.config.webhook_tolerance_seconds,
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome="rejected").inc()
            logger.warning("stripe_webhook_invalid_signature", error=str(e))
            raise WebhookAuthenticationError("Invalid signature") from e
        except ValueError as e:
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome="rejected").inc()
            logger.warning("stripe_webhook_invalid_payload", error=str(e))
            raise WebhookAuthenticationError("Invalid payload") from e

        if not isinstance(event, dict) or not event.get("type"):
            WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome="rejected").inc()
            raise WebhookAuthenticationError("Invalid payload")
        return event

    def _handlers(self) -> Dict[str, Handler]:
        return {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
        }

    @staticmethod
    def _data_object(event: Dict[str, Any]) -> Dict[str, Any]:
        data = event.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Event data is not an object")
        data_object = data.get("object") or {}
        if not isinstance(data_object, dict):
            raise ValueError("Event data.object is not an object")
        return data_object

    async def _already_processed(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedWebhookEvent.id).where(ProcessedWebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def _record(self, event_id: Optional[str], event_type: str, outcome: str) -> None:
        if event_id:
            self.db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type, outcome=outcome))
        await self.db.commit()

    @staticmethod
    def _outcome(event_id: Optional[str], event_type: str, status: str) -> Dict[str, Any]:
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=status).inc()
        return {"status": status, "event_id": event_id, "event_type": event_type}

    async def _resolve_tenant(self, raw_tenant_id: Any) -> Optional[Tenant]:
        if not raw_tenant_id:
            return None
        try:
            tenant_id = UUID(str(raw_tenant_id))
        except ValueError:
            return None
        return await self.db.get(Tenant, tenant_id)

    async def _handle_checkout_completed(self, session: Dict[str, Any], log) -> str:
        """Upgrade the tenant named in the checkout metadata to Pro."""
        metadata = session.get("metadata") or {}
        raw_tenant_id = metadata.get("tenant_id") or session.get("client_reference_id")

        tenant = await self._resolve_tenant(raw_tenant_id)
        if tenant is None:
            log.error("stripe_checkout_tenant_not_found", tenant_id=raw_tenant_id)
            return "skipped"
        tenant_id = tenant.id

        remote_id = session.get("subscription")
        if not remote_id:
            log.warning("stripe_checkout_without_subscription", tenant_id=str(tenant_id))
            return "skipped"

        remote = await self.gateway.retrieve_remote_subscription(remote_id)
        extra_users = int(metadata.get("extra_users") or 0)

        result = await UpgradeService(self.db).upgrade_to_pro(tenant, remote.id, extra_users)
        if result.failure:
            if set(result.errors) <= VALIDATION_ERRORS:
                log.warning("stripe_checkout_upgrade_rejected", tenant_id=str(tenant_id), errors=result.errors)
                return "rejected"
            raise BillingError("Upgrade failed", details={"errors": result.errors})

        log.info("stripe_checkout_completed", tenant_id=str(tenant_id), subscription_id=remote.id)
        return "processed"

    async def _handle_subscription_updated(self, remote: Dict[str, Any], log) -> str:
        """Overwrite status and billing window; redeem one free month per renewal."""
        if not remote.get("id"):
            log.warning("stripe_subscription_event_without_id")
            return "skipped"
        subscription = await lock_subscription_by_external_id(self.db, remote["id"])
        if subscription is None:
            log.warning("stripe_subscription_not_tracked", subscription_id=remote.get("id"))
            return "skipped"

        subscription.status = SubscriptionStatus(remote.get("status")).value
        start, end = read_billing_period(remote)
        if start is not None and end is not None:
            subscription.set_billing_period(start, end)

        if subscription.use_free_month():
            FREE_MONTHS_CONSUMED_TOTAL.inc()
            log.info(
                "free_month_consumed",
                tenant_id=str(subscription.tenant_id),
                free_months_remaining=subscription.free_months_remaining
            )

        log.info(
            "stripe_subscription_updated",
            tenant_id=str(subscription.tenant_id),
            status=subscription.status
        )
        return "processed"

    async def _handle_subscription_deleted(self, remote: Dict[str, Any], log) -> str:
        if not remote.get("id"):
            log.warning("stripe_subscription_event_without_id")
            return "skipped"
        subscription = await lock_subscription_by_external_id(self.db, remote["id"])
        if subscription is None:
            log.warning("stripe_subscription_not_tracked", subscription_id=remote.get("id"))
            return "skipped"

        subscription.cancel()
        log.info("stripe_subscription_deleted", tenant_id=str(subscription.tenant_id))
        return "processed"

    async def _handle_payment_succeeded(self, invoice: Dict[str, Any], log) -> str:
        log.info("stripe_payment_succeeded", invoice_id=invoice.get("id"), customer_id=invoice.get("customer"))
        return "processed"

    async def _handle_payment_failed(self, invoice: Dict[str, Any], log) -> str:
        log.warning("stripe_payment_failed", invoice_id=invoice.get("id"), customer_id=invoice.get("customer"))
        return "processed"
