"""Billing domain package reconciling provider payments into subscription state."""

from .exceptions import (
    BillingError,
    DataIntegrityError,
    InvalidIntervalError,
    PaymentStateError,
    StoreConflictError,
    TransientStoreError,
)
from .intervals import calculate_expires_at
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    IntervalUnit,
    Payment,
    PaymentEvent,
    PaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    ServiceTier,
    Subscription,
    SubscriptionStatus,
    SweepResult,
    TierType,
)
from .service import (
    AccessGranter,
    BillingEventLogger,
    BillingNotifier,
    ReconciliationService,
    StoreTransaction,
    SubscriptionStore,
)

__all__ = [
    "AccessGranter",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingNotifier",
    "DataIntegrityError",
    "IntervalUnit",
    "InvalidIntervalError",
    "Payment",
    "PaymentEvent",
    "PaymentStateError",
    "PaymentStatus",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ReconciliationService",
    "ServiceTier",
    "StoreConflictError",
    "StoreTransaction",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionStore",
    "SweepResult",
    "TierType",
    "TransientStoreError",
    "calculate_expires_at",
]
