"""Subscription & billing reconciliation."""

from app.modules.billing.domain.billing.subscription import (
    PlanType,
    Subscription,
    SubscriptionStatus,
    UsageLimit,
)
from app.modules.billing.domain.billing.result import ServiceResult
from app.modules.billing.domain.billing.stripe_gateway import StripeConfig, StripeGateway
from app.modules.billing.domain.billing.plan_transition import (
    SubscriptionCancellationService,
    SubscriptionCreationService,
    UpgradeService,
)
from app.modules.billing.domain.billing.referral_rewards import ReferralConversionCoordinator
from app.modules.billing.domain.billing.webhook_processor import StripeWebhookProcessor
from app.modules.billing.domain.billing.webhook_ledger import ProcessedWebhookEvent

__all__ = [
    "PlanType",
    "Subscription",
    "SubscriptionStatus",
    "UsageLimit",
    "ServiceResult",
    "StripeConfig",
    "StripeGateway",
    "SubscriptionCancellationService",
    "SubscriptionCreationService",
    "UpgradeService",
    "ReferralConversionCoordinator",
    "StripeWebhookProcessor",
    "ProcessedWebhookEvent",
]
