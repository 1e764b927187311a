"""SQLAlchemy models for BrewOps billing.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.tenant import Tenant
from app.models.transaction import Transaction
from app.models.user import User

__all__ = [
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "Tenant",
    "Transaction",
    "TransactionStatus",
    "User",
]
