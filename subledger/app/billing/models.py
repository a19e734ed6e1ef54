"""Domain models for subscriptions, payments and service tiers."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntervalUnit(str, Enum):
    """Calendar unit a service tier bills in."""

    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"
    YEAR = "YEAR"


class TierType(str, Enum):
    """Whether a tier grants timed access or access that never lapses."""

    STANDARD = "STANDARD"
    LIFETIME = "LIFETIME"


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a subscriber's access to a service."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Payment lifecycle; SUCCESS and FAILED are terminal."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ReconciliationOutcome(str, Enum):
    """How a payment event was resolved by the reconciliation engine."""

    APPLIED = "applied"
    REPLAYED = "replayed"
    UNMATCHED = "unmatched"


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_EXTENDED = "subscription_extended"
    SUBSCRIPTIONS_EXPIRED = "subscriptions_expired"
    PAYMENT_FAILED = "payment_failed"


class ServiceTier(BaseModel):
    """Priced access plan for a merchant's service."""

    tier_id: str
    service_id: str
    merchant_id: str
    interval: IntervalUnit = IntervalUnit.MONTH
    interval_count: int = Field(default=1, ge=1)
    tier_type: TierType = TierType.STANDARD
    price: Decimal = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_lifetime(self) -> bool:
        return self.tier_type == TierType.LIFETIME


class Payment(BaseModel):
    """A buyer's checkout attempt, settled by a provider notification."""

    payment_id: str
    subscriber_id: str
    merchant_id: str
    service_id: str
    tier_id: str
    amount: Decimal = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("amount", mode="before")
    @classmethod
    def _reject_float_amount(cls, value: object) -> object:
        if isinstance(value, float):
            raise ValueError("amount must be a Decimal or string, not float")
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class Subscription(BaseModel):
    """Current access record for one (subscriber, service) pair."""

    subscription_id: str
    subscriber_id: str
    service_id: str
    merchant_id: str
    current_tier_id: str
    status: SubscriptionStatus
    starts_at: datetime
    expires_at: Optional[datetime] = None
    renewal_count: int = Field(default=0, ge=0)
    access_token: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_window(self) -> "Subscription":
        if self.expires_at is not None and self.expires_at < self.starts_at:
            raise ValueError("expires_at must not precede starts_at")
        return self

    @property
    def is_lifetime(self) -> bool:
        """``True`` when the subscription holds access that never lapses."""
        return self.expires_at is None

    def is_active_at(self, moment: datetime) -> bool:
        if self.status != SubscriptionStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > moment


class PaymentEvent(BaseModel):
    """Provider-neutral payment confirmation consumed by the reconciliation engine."""

    subscriber_id: str = Field(min_length=1)
    merchant_id: str = Field(min_length=1)
    service_id: str = Field(min_length=1)
    tier_id: str = Field(min_length=1)
    gateway_reference: str = Field(min_length=1, description="Provider transaction id, the idempotency key")
    provider_reference: Optional[str] = None
    total_amount: Optional[int] = None
    currency: Optional[str] = None
    chat_id: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconciliationResult(BaseModel):
    """Outcome of reconciling one payment event."""

    outcome: ReconciliationOutcome
    gateway_reference: str
    payment: Optional[Payment] = None
    subscription: Optional[Subscription] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def applied(self) -> bool:
        return self.outcome == ReconciliationOutcome.APPLIED


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and operator review."""

    event_type: BillingAuditEventType
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SweepResult(BaseModel):
    """Summary of a single expiration sweep."""

    expired_count: int = Field(ge=0)
    ran_at: datetime

    model_config = ConfigDict(populate_by_name=True, frozen=True)
