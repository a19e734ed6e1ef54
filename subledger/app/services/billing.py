"""Application wiring for the reconciliation service and its background dispatch."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Optional

from ..billing import (
    AccessGranter,
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    DataIntegrityError,
    PaymentEvent,
    ReconciliationResult,
    ReconciliationService,
    Subscription,
    TransientStoreError,
)
from ..billing.repository import PostgresSubscriptionStore
from ..schemas.billing import InvoicePayload, PreCheckoutAnswer, PreCheckoutQuery
from ...billing_config import BillingConfig, load_billing_config


logger = logging.getLogger("billing")
dead_letter_logger = logging.getLogger("billing.dead_letter")


class LoggingAccessGranter(AccessGranter):
    """Records access grants to the application logger until a bot client is attached."""

    def grant(self, subscription: Subscription, *, chat_id: Optional[str] = None) -> None:
        logger.info(
            "Access granted subscription=%s subscriber=%s service=%s expires_at=%s chat=%s",
            subscription.subscription_id,
            subscription.subscriber_id,
            subscription.service_id,
            subscription.expires_at.isoformat() if subscription.expires_at else "never",
            chat_id,
        )


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records delayed-ledger notices to the application logger."""

    def notify_reconciliation_delayed(self, event: PaymentEvent, *, reason: str) -> None:
        logger.warning(
            "Ledger delay for payment %s subscriber=%s chat=%s reason=%s",
            event.gateway_reference,
            event.subscriber_id,
            event.chat_id,
            reason,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s subscription=%s payment=%s actor=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.payment_id,
            event.actor_id,
            event.metadata,
        )


@dataclass
class WebhookDispatcher:
    """Runs reconciliation for acknowledged deliveries outside the request cycle.

    Transient store failures are retried with linear backoff; once attempts are
    exhausted the event goes to the dead-letter log for manual reconciliation.
    Whenever an event is given up on, the buyer is told the ledger is delayed.
    The access grant after commit has its own retry budget and never re-enters
    the reconciliation transaction.
    """

    service: ReconciliationService
    notifier: BillingNotifier = field(default_factory=LoggingBillingNotifier)
    max_attempts: int = 5
    backoff_seconds: float = 0.5
    side_effect_max_attempts: int = 3
    side_effect_backoff_seconds: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def process(self, event: PaymentEvent) -> Optional[ReconciliationResult]:
        result = self._reconcile_with_retry(event)
        if result is not None and result.applied:
            self._grant_with_retry(result, event)
        return result

    def _reconcile_with_retry(self, event: PaymentEvent) -> Optional[ReconciliationResult]:
        attempts = max(1, self.max_attempts)
        backoff = max(0.0, self.backoff_seconds)

        for attempt in range(1, attempts + 1):
            try:
                return self.service.reconcile(event)
            except TransientStoreError as exc:
                logger.warning(
                    "Transient store failure while reconciling payment",
                    extra={
                        "gateway_reference": event.gateway_reference,
                        "reconcile_attempt": attempt,
                        "reconcile_attempts": attempts,
                        "error": exc.message,
                    },
                )
                if attempt >= attempts:
                    self._dead_letter(event, exc, attempts=attempt)
                    return None
                if backoff > 0:
                    self.sleep(backoff * attempt)
            except DataIntegrityError as exc:
                logger.error(
                    "Payment event requires manual reconciliation",
                    extra={
                        "gateway_reference": event.gateway_reference,
                        "subscriber_id": event.subscriber_id,
                        "tier_id": event.tier_id,
                        "detail": dict(exc.payload),
                    },
                )
                self._notify_delay(event, exc.code)
                return None
            except Exception as exc:
                logger.exception(
                    "Unexpected failure while reconciling payment",
                    extra={"gateway_reference": event.gateway_reference},
                )
                self._dead_letter(event, exc, attempts=attempt)
                return None
        return None

    def _grant_with_retry(self, result: ReconciliationResult, event: PaymentEvent) -> None:
        attempts = max(1, self.side_effect_max_attempts)
        backoff = max(0.0, self.side_effect_backoff_seconds)

        for attempt in range(1, attempts + 1):
            try:
                self.service.grant_access(result, chat_id=event.chat_id)
            except Exception:
                logger.exception(
                    "Failed to grant access for reconciled subscription",
                    extra={
                        "gateway_reference": event.gateway_reference,
                        "subscription_id": result.subscription.subscription_id if result.subscription else None,
                        "grant_attempt": attempt,
                        "grant_attempts": attempts,
                    },
                )
                if attempt >= attempts:
                    dead_letter_logger.error(
                        "Access grant exhausted retries",
                        extra={
                            "gateway_reference": event.gateway_reference,
                            "subscription_id": result.subscription.subscription_id if result.subscription else None,
                        },
                    )
                    return
                if backoff > 0:
                    self.sleep(backoff * attempt)
                continue
            return

    def _dead_letter(self, event: PaymentEvent, error: Exception, *, attempts: int) -> None:
        dead_letter_logger.error(
            "Payment event could not be reconciled",
            extra={
                "event": event.model_dump(mode="json"),
                "attempts": attempts,
                "error": f"{type(error).__name__}: {error}",
            },
        )
        self._notify_delay(event, type(error).__name__)

    def _notify_delay(self, event: PaymentEvent, reason: str) -> None:
        try:
            self.notifier.notify_reconciliation_delayed(event, reason=reason)
        except Exception:
            logger.exception(
                "Failed to notify buyer of ledger delay",
                extra={"gateway_reference": event.gateway_reference, "chat_id": event.chat_id},
            )


def answer_pre_checkout(service: ReconciliationService, query: PreCheckoutQuery) -> PreCheckoutAnswer:
    """Approve a pre-checkout query only when a matching PENDING payment exists."""

    try:
        payload = InvoicePayload.decode(query.invoice_payload)
    except ValueError:
        logger.warning("Rejecting pre-checkout query with undecodable payload", extra={"query_id": query.id})
        return PreCheckoutAnswer(pre_checkout_query_id=query.id, ok=False, error_message="Invoice is not recognised.")

    try:
        pending = service.authorize_checkout(subscriber_id=payload.subscriber_id, tier_id=payload.tier_id)
    except TransientStoreError:
        logger.exception("Store unavailable while answering pre-checkout query", extra={"query_id": query.id})
        return PreCheckoutAnswer(
            pre_checkout_query_id=query.id,
            ok=False,
            error_message="Checkout is temporarily unavailable, please try again.",
        )

    if pending is None or pending.service_id != payload.service_id or pending.merchant_id != payload.merchant_id:
        logger.info(
            "Rejecting pre-checkout query without matching pending payment",
            extra={"query_id": query.id, "subscriber_id": payload.subscriber_id, "tier_id": payload.tier_id},
        )
        return PreCheckoutAnswer(
            pre_checkout_query_id=query.id,
            ok=False,
            error_message="This checkout has expired, please start a new one.",
        )
    return PreCheckoutAnswer(pre_checkout_query_id=query.id, ok=True)


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_reconciliation_service() -> ReconciliationService:
    config = get_billing_config()
    return ReconciliationService(
        store=PostgresSubscriptionStore(lock_timeout_ms=config.lock_timeout_ms),
        access_granter=LoggingAccessGranter(),
        event_logger=LoggingBillingEventLogger(),
    )


@lru_cache(maxsize=1)
def get_webhook_dispatcher() -> WebhookDispatcher:
    config = get_billing_config()
    return WebhookDispatcher(
        service=get_reconciliation_service(),
        max_attempts=config.reconcile_max_attempts,
        backoff_seconds=config.reconcile_backoff_seconds,
        side_effect_max_attempts=config.side_effect_max_attempts,
        side_effect_backoff_seconds=config.side_effect_backoff_seconds,
    )


__all__ = [
    "LoggingAccessGranter",
    "LoggingBillingEventLogger",
    "LoggingBillingNotifier",
    "WebhookDispatcher",
    "answer_pre_checkout",
    "get_billing_config",
    "get_reconciliation_service",
    "get_webhook_dispatcher",
]
