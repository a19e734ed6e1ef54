"""Tests for background reconciliation retries and dead-lettering."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from subledger.app.billing import (
    DataIntegrityError,
    PaymentEvent,
    ReconciliationOutcome,
    ReconciliationResult,
    StoreConflictError,
    Subscription,
    SubscriptionStatus,
    TransientStoreError,
)
from subledger.app.services.billing import WebhookDispatcher


EVENT = PaymentEvent(
    subscriber_id="S",
    merchant_id="m-1",
    service_id="svc-1",
    tier_id="tier-month",
    gateway_reference="ch_1",
    chat_id="chat-9",
)

SUBSCRIPTION = Subscription(
    subscription_id="sub_1",
    subscriber_id="S",
    service_id="svc-1",
    merchant_id="m-1",
    current_tier_id="tier-month",
    status=SubscriptionStatus.ACTIVE,
    starts_at=datetime(2026, 1, 15, tzinfo=timezone.utc),
    expires_at=datetime(2026, 2, 15, tzinfo=timezone.utc),
)

APPLIED = ReconciliationResult(
    outcome=ReconciliationOutcome.APPLIED,
    gateway_reference="ch_1",
    subscription=SUBSCRIPTION,
)


class ScriptedService:
    """Raises the queued failures in order before returning ``result``."""

    def __init__(self, failures: List[Exception], result: ReconciliationResult, grant_failures: int = 0) -> None:
        self.failures = list(failures)
        self.result = result
        self.grant_failures = grant_failures
        self.reconcile_calls = 0
        self.grants: List[Optional[str]] = []

    def reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        self.reconcile_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result

    def grant_access(self, result: ReconciliationResult, *, chat_id: Optional[str] = None) -> None:
        if self.grant_failures:
            self.grant_failures -= 1
            raise RuntimeError("bot API unavailable")
        self.grants.append(chat_id)


def _dispatcher(service, **overrides) -> tuple[WebhookDispatcher, list[float]]:
    sleeps: list[float] = []
    settings = {"max_attempts": 3, "backoff_seconds": 0.5, "side_effect_max_attempts": 2, "side_effect_backoff_seconds": 1.0}
    settings.update(overrides)
    return WebhookDispatcher(service=service, sleep=sleeps.append, **settings), sleeps


def test_transient_failures_are_retried_with_linear_backoff():
    service = ScriptedService([TransientStoreError("connection reset"), StoreConflictError("duplicate key")], APPLIED)
    dispatcher, sleeps = _dispatcher(service)

    result = dispatcher.process(EVENT)

    assert result == APPLIED
    assert service.reconcile_calls == 3
    assert sleeps == [0.5, 1.0]
    assert service.grants == ["chat-9"]


def test_exhausted_retries_are_dead_lettered(caplog):
    service = ScriptedService([TransientStoreError("down")] * 3, APPLIED)
    dispatcher, _ = _dispatcher(service)

    with caplog.at_level(logging.ERROR, logger="billing.dead_letter"):
        result = dispatcher.process(EVENT)

    assert result is None
    assert service.reconcile_calls == 3
    assert service.grants == []
    records = [record for record in caplog.records if record.name == "billing.dead_letter"]
    assert len(records) == 1
    assert records[0].event["gateway_reference"] == "ch_1"
    assert records[0].attempts == 3


def test_integrity_errors_are_not_retried(caplog):
    service = ScriptedService([DataIntegrityError("tier missing", {"tier_id": "tier-month"})], APPLIED)
    dispatcher, sleeps = _dispatcher(service)

    with caplog.at_level(logging.ERROR, logger="billing"):
        result = dispatcher.process(EVENT)

    assert result is None
    assert service.reconcile_calls == 1
    assert sleeps == []
    assert any(record.message == "Payment event requires manual reconciliation" for record in caplog.records)


def test_replays_skip_access_grant():
    replay = ReconciliationResult(outcome=ReconciliationOutcome.REPLAYED, gateway_reference="ch_1")
    service = ScriptedService([], replay)
    dispatcher, _ = _dispatcher(service)

    assert dispatcher.process(EVENT) == replay
    assert service.grants == []


def test_grant_failures_retry_without_reconciling_again(caplog):
    service = ScriptedService([], APPLIED, grant_failures=1)
    dispatcher, sleeps = _dispatcher(service)

    with caplog.at_level(logging.ERROR):
        dispatcher.process(EVENT)

    assert service.reconcile_calls == 1
    assert service.grants == ["chat-9"]
    assert sleeps == [1.0]


def test_grant_exhaustion_is_dead_lettered(caplog):
    service = ScriptedService([], APPLIED, grant_failures=5)
    dispatcher, _ = _dispatcher(service)

    with caplog.at_level(logging.ERROR, logger="billing.dead_letter"):
        result = dispatcher.process(EVENT)

    assert result == APPLIED
    assert service.grants == []
    assert any(record.message == "Access grant exhausted retries" for record in caplog.records)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.notices: List[tuple] = []

    def notify_reconciliation_delayed(self, event: PaymentEvent, *, reason: str) -> None:
        if self.fail:
            raise RuntimeError("bot API unavailable")
        self.notices.append((event.chat_id, reason))


def test_dead_lettered_event_notifies_buyer_of_delay():
    notifier = RecordingNotifier()
    service = ScriptedService([TransientStoreError("down")] * 3, APPLIED)
    dispatcher, _ = _dispatcher(service, notifier=notifier)

    dispatcher.process(EVENT)

    assert notifier.notices == [("chat-9", "TransientStoreError")]


def test_integrity_failure_notifies_buyer_of_delay():
    notifier = RecordingNotifier()
    service = ScriptedService([DataIntegrityError("merchant mismatch")], APPLIED)
    dispatcher, _ = _dispatcher(service, notifier=notifier)

    dispatcher.process(EVENT)

    assert notifier.notices == [("chat-9", "data_integrity")]


def test_successful_reconciliation_sends_no_delay_notice():
    notifier = RecordingNotifier()
    dispatcher, _ = _dispatcher(ScriptedService([TransientStoreError("blip")], APPLIED), notifier=notifier)

    dispatcher.process(EVENT)

    assert notifier.notices == []


def test_notifier_failure_is_logged_not_raised(caplog):
    service = ScriptedService([DataIntegrityError("tier missing")], APPLIED)
    dispatcher, _ = _dispatcher(service, notifier=RecordingNotifier(fail=True))

    with caplog.at_level(logging.ERROR, logger="billing"):
        assert dispatcher.process(EVENT) is None

    assert any(record.message == "Failed to notify buyer of ledger delay" for record in caplog.records)


def test_default_notifier_logs_ledger_delay(caplog):
    service = ScriptedService([DataIntegrityError("tier missing")], APPLIED)
    dispatcher = WebhookDispatcher(service=service, sleep=lambda _: None)

    with caplog.at_level(logging.WARNING, logger="billing"):
        dispatcher.process(EVENT)

    assert any(record.getMessage().startswith("Ledger delay for payment ch_1") for record in caplog.records)
