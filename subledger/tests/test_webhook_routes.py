"""Route tests for webhook ingress and the operator billing endpoints."""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest
from fastapi import BackgroundTasks, HTTPException
from starlette.requests import Request

from subledger import sweeps
from subledger.app.billing import PaymentEvent, SubscriptionStatus
from subledger.app.routes import billing as billing_routes
from subledger.app.schemas.billing import PaymentFailureRequest
from subledger.billing_config import load_billing_config

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
SECRET = "s3cret"


def _request(body: bytes = b"", *, secret: Optional[str] = SECRET, path: str = "/api/billing/webhook") -> Request:
    headers = [(b"content-type", b"application/json")]
    if secret is not None:
        headers.append((SECRET_HEADER.lower().encode("latin-1"), secret.encode("latin-1")))

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http",
        "method": "POST",
        "path": path,
        "headers": headers,
        "query_string": b"",
        "client": ("203.0.113.5", 443),
    }
    return Request(scope, receive)


def _deliver(body, *, secret: Optional[str] = SECRET):
    raw = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    tasks = BackgroundTasks()
    response = asyncio.run(billing_routes.receive_webhook(_request(raw, secret=secret), tasks))
    return response, tasks


def _queued_events(tasks: BackgroundTasks):
    return [task.args[0] for task in tasks.tasks]


def _invoice_payload(**overrides) -> str:
    payload = {"userId": 42, "tierId": "tier-month", "serviceId": "svc-1", "merchantId": "m-1"}
    payload.update(overrides)
    return json.dumps(payload)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.events = []

    def process(self, event: PaymentEvent) -> None:
        self.events.append(event)


@pytest.fixture
def routes(billing_components, monkeypatch):
    store, _, _, clock, service = billing_components
    dispatcher = RecordingDispatcher()
    config = load_billing_config({"WEBHOOK_SECRET": SECRET, "STALE_PAYMENT_MINUTES": "30"})

    monkeypatch.setattr(billing_routes, "get_billing_config", lambda: config)
    monkeypatch.setattr(billing_routes, "get_reconciliation_service", lambda: service)
    monkeypatch.setattr(billing_routes, "get_webhook_dispatcher", lambda: dispatcher)
    monkeypatch.setattr(sweeps, "get_reconciliation_service", lambda: service)
    sweeps._reset_metrics_for_testing()
    return dispatcher, store, clock, service


def test_successful_payment_is_acknowledged_and_queued(routes):
    dispatcher, _, _, _ = routes
    body = {
        "update_id": 1,
        "message": {
            "chat": {"id": 1001},
            "successful_payment": {
                "currency": "USD",
                "total_amount": 999,
                "invoice_payload": _invoice_payload(),
                "telegram_payment_charge_id": "tg_charge_1",
                "provider_payment_charge_id": "prov_1",
            },
        },
    }

    response, tasks = _deliver(body)

    assert response == {"ok": True}
    assert len(tasks.tasks) == 1
    assert tasks.tasks[0].func == dispatcher.process
    event = _queued_events(tasks)[0]
    assert event.subscriber_id == "42"
    assert event.tier_id == "tier-month"
    assert event.gateway_reference == "tg_charge_1"
    assert event.provider_reference == "prov_1"
    assert event.chat_id == "1001"


def test_generic_payment_notification_is_normalized(routes):
    body = {
        "event": "payment.succeeded",
        "transactionId": "txn_77",
        "payload": {"subscriberId": "S", "serviceTierId": "tier-year", "serviceId": "svc-1", "merchantId": "m-1"},
        "amount": 9900,
        "currency": "USD",
    }

    response, tasks = _deliver(body)

    assert response == {"ok": True}
    event = _queued_events(tasks)[0]
    assert event.gateway_reference == "txn_77"
    assert event.tier_id == "tier-year"


@pytest.mark.parametrize("secret", [None, "", "wrong"])
def test_invalid_secret_is_acknowledged_without_processing(routes, secret, caplog):
    body = {"event": "payment.succeeded", "transactionId": "txn_1", "payload": _invoice_payload()}

    with caplog.at_level("WARNING", logger="billing.security"):
        response, tasks = _deliver(body, secret=secret)

    assert response == {"ok": True}
    assert tasks.tasks == []
    assert any(record.name == "billing.security" for record in caplog.records)


def test_unconfigured_secret_rejects_everything(routes, monkeypatch):
    monkeypatch.setattr(billing_routes, "get_billing_config", lambda: load_billing_config({}))
    body = {"event": "payment.succeeded", "transactionId": "txn_1", "payload": _invoice_payload()}

    response, tasks = _deliver(body, secret="")

    assert response == {"ok": True}
    assert tasks.tasks == []


@pytest.mark.parametrize(
    "body",
    [
        b"{not json",
        {"message": {"successful_payment": {"invoice_payload": "not-json", "telegram_payment_charge_id": "tg_2"}}},
        {"event": "payment.succeeded", "payload": {"userId": 1}},
        {"update_id": 5, "message": {"chat": {"id": 7}}},
        [1, 2, 3],
    ],
)
def test_unusable_deliveries_are_acknowledged(routes, body):
    response, tasks = _deliver(body)

    assert response == {"ok": True}
    assert tasks.tasks == []


def test_pre_checkout_query_is_answered_inline(routes):
    _, _, _, service = routes
    service.create_pending_payment(subscriber_id="42", tier_id="tier-month")
    body = {
        "pre_checkout_query": {
            "id": "pcq_1",
            "from": {"id": 42},
            "currency": "USD",
            "total_amount": 999,
            "invoice_payload": _invoice_payload(),
        }
    }

    response, tasks = _deliver(body)

    assert response == {"method": "answerPreCheckoutQuery", "pre_checkout_query_id": "pcq_1", "ok": True}
    assert tasks.tasks == []


def test_pre_checkout_without_pending_payment_is_declined(routes):
    body = {"pre_checkout_query": {"id": "pcq_2", "invoice_payload": _invoice_payload(userId=99)}}

    answer, _ = _deliver(body)

    assert answer["ok"] is False
    assert answer["pre_checkout_query_id"] == "pcq_2"
    assert answer["error_message"]


def test_pre_checkout_with_mismatched_merchant_is_declined(routes):
    _, _, _, service = routes
    service.create_pending_payment(subscriber_id="42", tier_id="tier-month")
    body = {"pre_checkout_query": {"id": "pcq_3", "invoice_payload": _invoice_payload(merchantId="m-9")}}

    answer, _ = _deliver(body)

    assert answer["ok"] is False


@pytest.mark.parametrize("secret", [None, "nope"])
def test_operator_guard_rejects_bad_secret(routes, secret):
    with pytest.raises(HTTPException) as exc:
        billing_routes._require_operator(_request(secret=secret, path="/api/billing/sweep"))

    assert exc.value.status_code == 403


def test_operator_guard_accepts_configured_secret(routes):
    assert billing_routes._require_operator(_request(path="/api/billing/sweep")) is None


def test_manual_sweep_expires_overdue_subscriptions(routes):
    _, store, clock, service = routes
    service.create_pending_payment(subscriber_id="S", tier_id="tier-month")
    service.reconcile(
        PaymentEvent(
            subscriber_id="S",
            merchant_id="m-1",
            service_id="svc-1",
            tier_id="tier-month",
            gateway_reference="ch_1",
        )
    )
    clock.now = datetime(2026, 3, 1, tzinfo=timezone.utc)

    response = billing_routes.trigger_sweep()

    assert response.expired_count == 1
    assert response.model_dump(by_alias=True)["expiredCount"] == 1
    assert store.get_subscription("S", "svc-1").status == SubscriptionStatus.EXPIRED

    metrics = billing_routes.sweep_metrics()
    assert metrics["runs"] == 1
    assert metrics["expired_total"] == 1


def test_stale_payments_and_manual_failure(routes):
    _, _, clock, service = routes
    payment = service.create_pending_payment(subscriber_id="S", tier_id="tier-month")
    clock.now = clock.now + timedelta(minutes=45)

    stale = billing_routes.list_stale_payments()
    assert [item.payment_id for item in stale.payments] == [payment.payment_id]
    dumped: Dict[str, object] = stale.model_dump(by_alias=True)["payments"][0]
    assert dumped["paymentId"] == payment.payment_id
    assert dumped["amount"] == "9.99"

    failed = billing_routes.fail_payment(payment.payment_id, PaymentFailureRequest(reason="abandoned checkout"))
    assert failed.status == "FAILED"

    with pytest.raises(HTTPException) as conflict:
        billing_routes.fail_payment(payment.payment_id, PaymentFailureRequest())
    assert conflict.value.status_code == 409

    with pytest.raises(HTTPException) as missing:
        billing_routes.fail_payment("pay_missing", PaymentFailureRequest())
    assert missing.value.status_code == 404
