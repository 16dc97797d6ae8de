"""Re-export all models so Base.metadata sees them."""

from subscription_engine.db.models.payment_transaction import PaymentTransaction
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.db.models.usage_limits import UsageLimits
from subscription_engine.db.models.user import User
from subscription_engine.db.models.webhook_event import WebhookEvent

__all__ = [
    "PaymentTransaction",
    "Subscription",
    "UsageLimits",
    "User",
    "WebhookEvent",
]
