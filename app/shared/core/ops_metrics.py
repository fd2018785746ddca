"""
Operational Billing Metrics

Prometheus counters for webhook reconciliation and plan transitions.
Used to spot permanently failing handlers and reward anomalies.
"""

from prometheus_client import Counter

# --- Webhook Reconciliation ---
WEBHOOK_EVENTS_TOTAL = Counter(
    "billing_webhook_events_total",
    "Total number of provider webhook events by type and outcome",
    ["event_type", "outcome"] # processed, ignored, duplicate, failed, rejected
)

# --- Plan Transitions ---
PLAN_TRANSITIONS_TOTAL = Counter(
    "billing_plan_transitions_total",
    "Total number of plan transitions attempted",
    ["transition", "outcome"] # create/upgrade/cancel, success/rejected/error
)

# --- Financial Side Effects ---
FREE_MONTHS_CONSUMED_TOTAL = Counter(
    "billing_free_months_consumed_total",
    "Total number of promotional free months redeemed on renewal"
)

REFERRAL_CONVERSIONS_TOTAL = Counter(
    "billing_referral_conversions_total",
    "Total number of referrals converted by a Pro upgrade"
)
