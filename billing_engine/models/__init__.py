from billing_engine.models.tenant import Tenant
from billing_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    Payment,
    PaymentStatus,
    PaymentNotification,
)

__all__ = [
    "Tenant",
    "Subscription",
    "SubscriptionStatus",
    "Payment",
    "PaymentStatus",
    "PaymentNotification",
]
