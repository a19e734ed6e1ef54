"""API routes for the payment provider webhook and operator billing actions."""
from __future__ import annotations

import hmac
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ..billing import PaymentStateError
from ..schemas.billing import (
    GenericPaymentNotification,
    PaymentFailureRequest,
    PaymentResponse,
    ProviderUpdate,
    StalePaymentListResponse,
    SweepResponse,
    WebhookAck,
)
from ..services.billing import (
    answer_pre_checkout,
    get_billing_config,
    get_reconciliation_service,
    get_webhook_dispatcher,
)
from ... import sweeps

logger = logging.getLogger("billing.webhook")
security_logger = logging.getLogger("billing.security")

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _secret_matches(presented: Optional[str], expected: str) -> bool:
    if not expected or presented is None:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def _require_operator(request: Request) -> None:
    config = get_billing_config()
    if not _secret_matches(request.headers.get(config.webhook_secret_header), config.webhook_secret):
        security_logger.warning(
            "Rejected operator request with invalid secret",
            extra={"path": request.url.path, "client": request.client.host if request.client else None},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post("/webhook")
async def receive_webhook(request: Request, background_tasks: BackgroundTasks) -> Dict[str, Any]:
    """Acknowledge a provider delivery immediately and reconcile it in the background.

    Every path answers 200 so the response never reveals whether verification
    or processing succeeded. Pre-checkout queries are the exception that must be
    answered inline, and only after the shared secret checks out.
    """

    ack = WebhookAck().model_dump()
    config = get_billing_config()
    if not _secret_matches(request.headers.get(config.webhook_secret_header), config.webhook_secret):
        security_logger.warning(
            "Rejected webhook delivery with invalid secret",
            extra={"client": request.client.host if request.client else None},
        )
        return ack

    try:
        body = await request.json()
    except ValueError:
        logger.warning("Discarding webhook delivery with malformed JSON")
        return ack

    try:
        if isinstance(body, dict) and "event" in body:
            event = GenericPaymentNotification.model_validate(body).payment_event()
        else:
            update = ProviderUpdate.model_validate(body)
            if update.pre_checkout_query is not None:
                answer = await run_in_threadpool(
                    answer_pre_checkout, get_reconciliation_service(), update.pre_checkout_query
                )
                return answer.model_dump(exclude_none=True)
            event = update.payment_event()
    except (ValidationError, ValueError) as exc:
        logger.error(
            "Discarding webhook delivery with unexpected payload",
            extra={"error": str(exc)},
        )
        return ack
    except Exception:
        logger.exception("Webhook ingress failed while normalizing delivery")
        return ack

    if event is None:
        logger.debug("Ignoring webhook delivery without billing content")
        return ack

    logger.info(
        "Queued payment confirmation for reconciliation",
        extra={"gateway_reference": event.gateway_reference, "subscriber_id": event.subscriber_id},
    )
    background_tasks.add_task(get_webhook_dispatcher().process, event)
    return ack


@router.post("/sweep", response_model=SweepResponse, dependencies=[Depends(_require_operator)])
def trigger_sweep() -> SweepResponse:
    result = sweeps.run_expiration_sweep()
    return SweepResponse.from_result(result)


@router.get("/sweep/metrics", dependencies=[Depends(_require_operator)])
def sweep_metrics() -> Dict[str, object]:
    return sweeps.get_sweep_metrics()


@router.get(
    "/payments/stale",
    response_model=StalePaymentListResponse,
    dependencies=[Depends(_require_operator)],
)
def list_stale_payments() -> StalePaymentListResponse:
    config = get_billing_config()
    service = get_reconciliation_service()
    payments = service.list_stale_pending_payments(max_age=timedelta(minutes=config.stale_payment_minutes))
    return StalePaymentListResponse(payments=[PaymentResponse.from_payment(payment) for payment in payments])


@router.post(
    "/payments/{payment_id}/fail",
    response_model=PaymentResponse,
    dependencies=[Depends(_require_operator)],
)
def fail_payment(payment_id: str, payload: PaymentFailureRequest) -> PaymentResponse:
    service = get_reconciliation_service()
    try:
        payment = service.fail_payment(payment_id, reason=payload.reason)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PaymentStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
    return PaymentResponse.from_payment(payment)
