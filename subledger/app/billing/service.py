"""Reconciliation engine turning payment confirmations into subscription state."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, ContextManager, Optional, Protocol, Sequence
from uuid import uuid4

from .exceptions import DataIntegrityError, PaymentStateError, StoreConflictError
from .intervals import calculate_expires_at
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    Payment,
    PaymentEvent,
    PaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    ServiceTier,
    Subscription,
    SubscriptionStatus,
    SweepResult,
)

logger = logging.getLogger("billing")


class StoreTransaction(Protocol):
    """Operations available inside a single atomic store transaction.

    Methods prefixed with ``lock_`` hold a row lock on the returned record until
    the transaction ends, serializing concurrent reconciliations for the same key.
    """

    def get_payment_by_reference(self, gateway_reference: str) -> Optional[Payment]:
        ...

    def lock_pending_payment(self, subscriber_id: str, tier_id: str) -> Optional[Payment]:
        ...

    def settle_payment(self, payment_id: str, gateway_reference: str) -> Optional[Payment]:
        ...

    def get_tier(self, tier_id: str) -> Optional[ServiceTier]:
        ...

    def get_subscription(self, subscriber_id: str, service_id: str) -> Optional[Subscription]:
        ...

    def lock_subscription(self, subscriber_id: str, service_id: str) -> Optional[Subscription]:
        ...

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def update_subscription(self, subscription: Subscription) -> Subscription:
        ...


class SubscriptionStore(Protocol):
    """Persistence operations required by the reconciliation service."""

    def transaction(self) -> ContextManager[StoreTransaction]:
        ...

    def get_tier(self, tier_id: str) -> Optional[ServiceTier]:
        ...

    def save_payment(self, payment: Payment) -> Payment:
        ...

    def find_pending_payment(self, subscriber_id: str, tier_id: str) -> Optional[Payment]:
        ...

    def fail_payment(self, payment_id: str, reason: Optional[str]) -> Optional[Payment]:
        ...

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    def list_pending_payments(self, *, created_before: datetime, limit: int = 100) -> Sequence[Payment]:
        ...

    def get_subscription(self, subscriber_id: str, service_id: str) -> Optional[Subscription]:
        ...

    def expire_overdue(self, now: datetime) -> int:
        ...


class AccessGranter(Protocol):
    """Grants external access (for example a channel invite) for a committed subscription."""

    def grant(self, subscription: Subscription, *, chat_id: Optional[str] = None) -> None:
        ...


class BillingNotifier(Protocol):
    """Tells the buyer when a confirmed payment could not be reconciled yet."""

    def notify_reconciliation_delayed(self, event: PaymentEvent, *, reason: str) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


@dataclass
class ReconciliationService:
    """Settles pending payments and creates or extends subscriptions."""

    store: SubscriptionStore
    access_granter: AccessGranter
    event_logger: BillingEventLogger
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    def create_pending_payment(
        self,
        *,
        subscriber_id: str,
        tier_id: str,
        amount: Optional[Decimal] = None,
    ) -> Payment:
        """Record the PENDING payment a checkout link is issued against."""

        tier = self.store.get_tier(tier_id)
        if tier is None:
            raise LookupError(f"Unknown service tier {tier_id}")

        now = self._now()
        payment = Payment(
            payment_id=f"pay_{uuid4().hex}",
            subscriber_id=subscriber_id,
            merchant_id=tier.merchant_id,
            service_id=tier.service_id,
            tier_id=tier.tier_id,
            amount=tier.price if amount is None else amount,
            currency=tier.currency,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        return self.store.save_payment(payment)

    def authorize_checkout(self, *, subscriber_id: str, tier_id: str) -> Optional[Payment]:
        """Return the PENDING payment a pre-checkout query refers to, if any."""

        return self.store.find_pending_payment(subscriber_id, tier_id)

    def reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        """Apply a verified payment confirmation exactly once.

        Runs inside one store transaction: any exception rolls back the payment
        settlement and the subscription write together, leaving the payment
        PENDING for the provider's retry.
        """

        with self.store.transaction() as tx:
            replay = self._find_settled(tx, event)
            if replay is not None:
                return replay

            payment = tx.lock_pending_payment(event.subscriber_id, event.tier_id)
            if payment is None:
                # A concurrent delivery may have settled it while we waited on the lock.
                replay = self._find_settled(tx, event)
                if replay is not None:
                    return replay
                logger.warning(
                    "No pending payment matches provider transaction",
                    extra={
                        "gateway_reference": event.gateway_reference,
                        "subscriber_id": event.subscriber_id,
                        "tier_id": event.tier_id,
                        "service_id": event.service_id,
                    },
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.UNMATCHED,
                    gateway_reference=event.gateway_reference,
                )

            tier = tx.get_tier(payment.tier_id)
            self._verify(event, payment, tier)

            settled = tx.settle_payment(payment.payment_id, event.gateway_reference)
            if settled is None:
                raise StoreConflictError(
                    "Payment left PENDING state during reconciliation",
                    {"payment_id": payment.payment_id},
                )

            current = tx.lock_subscription(payment.subscriber_id, tier.service_id)
            if current is not None and current.merchant_id != tier.merchant_id:
                raise DataIntegrityError(
                    "Existing subscription belongs to a different merchant",
                    {"subscription_id": current.subscription_id, "tier_id": tier.tier_id},
                )
            # Read after the row locks so time spent waiting does not shift the anchor.
            now = self._now()
            subscription = self._grant(tx, current, settled, tier, now)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=(
                    BillingAuditEventType.SUBSCRIPTION_EXTENDED
                    if subscription.renewal_count
                    else BillingAuditEventType.SUBSCRIPTION_ACTIVATED
                ),
                subscription_id=subscription.subscription_id,
                payment_id=settled.payment_id,
                actor_id=subscription.subscriber_id,
                metadata={
                    "gateway_reference": event.gateway_reference,
                    "tier_id": tier.tier_id,
                    "expires_at": subscription.expires_at.isoformat() if subscription.expires_at else "never",
                    "renewal_count": str(subscription.renewal_count),
                },
            )
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            gateway_reference=event.gateway_reference,
            payment=settled,
            subscription=subscription,
        )

    def grant_access(self, result: ReconciliationResult, *, chat_id: Optional[str] = None) -> None:
        """Run the post-commit access grant for an applied reconciliation."""

        if not result.applied or result.subscription is None:
            return
        self.access_granter.grant(result.subscription, chat_id=chat_id)

    def fail_payment(self, payment_id: str, *, reason: Optional[str] = None) -> Payment:
        """Resolve a PENDING payment to FAILED; terminal payments are rejected."""

        failed = self.store.fail_payment(payment_id, reason)
        if failed is None:
            existing = self.store.get_payment(payment_id)
            if existing is None:
                raise LookupError(f"Payment {payment_id} not found")
            raise PaymentStateError(
                f"Payment already resolved as {existing.status.value}",
                {"payment_id": payment_id},
            )

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_FAILED,
                payment_id=failed.payment_id,
                actor_id=failed.subscriber_id,
                metadata={"reason": reason or ""},
            )
        )
        return failed

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Flip every ACTIVE subscription whose expiry has passed to EXPIRED."""

        current_time = now or self._now()
        if current_time.tzinfo is None:
            current_time = current_time.replace(tzinfo=timezone.utc)

        expired = self.store.expire_overdue(current_time)
        if expired:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.SUBSCRIPTIONS_EXPIRED,
                    metadata={"count": str(expired)},
                    occurred_at=current_time,
                )
            )
        return SweepResult(expired_count=expired, ran_at=current_time)

    def list_stale_pending_payments(
        self,
        *,
        max_age: timedelta,
        now: Optional[datetime] = None,
        limit: int = 100,
    ) -> Sequence[Payment]:
        current_time = now or self._now()
        return self.store.list_pending_payments(created_before=current_time - max_age, limit=limit)

    def get_subscription(self, subscriber_id: str, service_id: str) -> Optional[Subscription]:
        return self.store.get_subscription(subscriber_id, service_id)

    def _find_settled(self, tx: StoreTransaction, event: PaymentEvent) -> Optional[ReconciliationResult]:
        settled = tx.get_payment_by_reference(event.gateway_reference)
        if settled is None or settled.status != PaymentStatus.SUCCESS:
            return None

        logger.info(
            "Ignoring replayed payment confirmation",
            extra={"gateway_reference": event.gateway_reference, "payment_id": settled.payment_id},
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.REPLAYED,
            gateway_reference=event.gateway_reference,
            payment=settled,
            subscription=tx.get_subscription(settled.subscriber_id, settled.service_id),
        )

    def _verify(self, event: PaymentEvent, payment: Payment, tier: Optional[ServiceTier]) -> None:
        if tier is None:
            raise DataIntegrityError(
                "Service tier not found for pending payment",
                {"payment_id": payment.payment_id, "tier_id": payment.tier_id},
            )
        mismatches = {
            name: value
            for name, value, expected in (
                ("event_service_id", event.service_id, tier.service_id),
                ("event_merchant_id", event.merchant_id, tier.merchant_id),
                ("payment_service_id", payment.service_id, tier.service_id),
                ("payment_merchant_id", payment.merchant_id, tier.merchant_id),
            )
            if value != expected
        }
        if mismatches:
            raise DataIntegrityError(
                "Payment event does not match the tier's service or merchant",
                {"payment_id": payment.payment_id, "tier_id": tier.tier_id, **mismatches},
            )

    def _grant(
        self,
        tx: StoreTransaction,
        current: Optional[Subscription],
        payment: Payment,
        tier: ServiceTier,
        now: datetime,
    ) -> Subscription:
        holds_lifetime = current is not None and current.status == SubscriptionStatus.ACTIVE and current.is_lifetime
        if tier.is_lifetime or holds_lifetime:
            expires_at = None
        else:
            # Stack onto the remaining time only while the current grant is still running.
            if current is not None and current.is_active_at(now):
                anchor = current.expires_at
            else:
                anchor = now
            expires_at = calculate_expires_at(tier.interval, tier.interval_count, anchor)

        access_token = secrets.token_urlsafe(24)
        if current is None:
            return tx.insert_subscription(
                Subscription(
                    subscription_id=f"sub_{uuid4().hex}",
                    subscriber_id=payment.subscriber_id,
                    service_id=tier.service_id,
                    merchant_id=tier.merchant_id,
                    current_tier_id=tier.tier_id,
                    status=SubscriptionStatus.ACTIVE,
                    starts_at=now,
                    expires_at=expires_at,
                    renewal_count=0,
                    access_token=access_token,
                    created_at=now,
                    updated_at=now,
                )
            )

        return tx.update_subscription(
            current.model_copy(
                update={
                    "status": SubscriptionStatus.ACTIVE,
                    "expires_at": expires_at,
                    "current_tier_id": tier.tier_id,
                    "renewal_count": current.renewal_count + 1,
                    "access_token": access_token,
                    "updated_at": now,
                }
            )
        )


__all__ = [
    "AccessGranter",
    "BillingEventLogger",
    "BillingNotifier",
    "ReconciliationService",
    "StoreTransaction",
    "SubscriptionStore",
]
