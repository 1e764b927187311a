"""Subscription and transaction status enums.

- SubscriptionStatus: lifecycle status of a tenant's subscription
- TransactionStatus: status of a payment attempt in the ledger
"""

import enum


class SubscriptionStatus(str, enum.Enum):
    """Status of a subscription."""

    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    EXPIRED = "EXPIRED"
    PENDING_CHECKOUT = "PENDING_CHECKOUT"
    CANCELLED = "CANCELLED"
    TRIALING = "TRIALING"
    UNPAID = "UNPAID"


class TransactionStatus(str, enum.Enum):
    """Status of a payment transaction."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
