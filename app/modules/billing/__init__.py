from .domain.billing import (
    StripeGateway,
    StripeWebhookProcessor,
    SubscriptionCancellationService,
    SubscriptionCreationService,
    UpgradeService,
)

__all__ = [
    "StripeGateway",
    "StripeWebhookProcessor",
    "SubscriptionCancellationService",
    "SubscriptionCreationService",
    "UpgradeService",
]
