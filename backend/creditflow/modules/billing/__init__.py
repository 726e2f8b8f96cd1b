"""Billing module.

Plan catalogue, subscriptions, the credit ledger and usage metering.
"""

from creditflow.modules.billing.router import router
from creditflow.modules.billing.ledger import CreditLedger
from creditflow.modules.billing.metering import UsageRecorder
from creditflow.modules.billing.service import PlanCatalog, SubscriptionService
from creditflow.modules.billing.webhooks import PaymentEventTranslator
from creditflow.modules.billing.models import (
    CreditBalance,
    CreditTransaction,
    Payment,
    Plan,
    Subscription,
    SubscriptionStatus,
    TransactionType,
    UsageRecord,
    UsageResourceType,
)

__all__ = [
    "router",
    "CreditLedger",
    "UsageRecorder",
    "PlanCatalog",
    "SubscriptionService",
    "PaymentEventTranslator",
    "CreditBalance",
    "CreditTransaction",
    "Payment",
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "TransactionType",
    "UsageRecord",
    "UsageResourceType",
]
