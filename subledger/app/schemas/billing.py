"""API schemas for the payment provider webhook and operator endpoints."""
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field

from ..billing import Payment, PaymentEvent, SweepResult


def _coerce_identifier(value: Any) -> Any:
    # Provider and chat identifiers can exceed 2**53; they cross the boundary as strings.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


Identifier = Annotated[str, BeforeValidator(_coerce_identifier)]


class InvoicePayload(BaseModel):
    """Application-defined payload attached to an invoice when checkout starts."""

    subscriber_id: Identifier = Field(
        min_length=1,
        validation_alias=AliasChoices("subscriberId", "userId", "subscriber_id", "user_id"),
    )
    service_id: Identifier = Field(min_length=1, validation_alias=AliasChoices("serviceId", "service_id"))
    tier_id: Identifier = Field(
        min_length=1,
        validation_alias=AliasChoices("tierId", "serviceTierId", "tier_id", "service_tier_id"),
    )
    merchant_id: Identifier = Field(min_length=1, validation_alias=AliasChoices("merchantId", "merchant_id"))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def decode(cls, raw: Union[str, Dict[str, Any], None]) -> "InvoicePayload":
        """Parse the opaque invoice payload, which providers echo back as a string."""

        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError as exc:
                raise ValueError("invoice payload is not valid JSON") from exc
        if not isinstance(raw, dict):
            raise ValueError("invoice payload must be a JSON object")
        return cls.model_validate(raw)


class ProviderUser(BaseModel):
    id: Identifier

    model_config = ConfigDict(populate_by_name=True)


class PreCheckoutQuery(BaseModel):
    """Synchronous authorization request sent before the buyer is charged."""

    id: Identifier
    from_user: Optional[ProviderUser] = Field(default=None, alias="from")
    currency: Optional[str] = None
    total_amount: Optional[int] = None
    invoice_payload: Union[str, Dict[str, Any]]

    model_config = ConfigDict(populate_by_name=True)


class SuccessfulPayment(BaseModel):
    currency: Optional[str] = None
    total_amount: Optional[int] = None
    invoice_payload: Union[str, Dict[str, Any]]
    telegram_payment_charge_id: str = Field(min_length=1)
    provider_payment_charge_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ProviderChat(BaseModel):
    id: Identifier

    model_config = ConfigDict(populate_by_name=True)


class ProviderMessage(BaseModel):
    chat: Optional[ProviderChat] = None
    successful_payment: Optional[SuccessfulPayment] = None

    model_config = ConfigDict(populate_by_name=True)


class ProviderUpdate(BaseModel):
    """Bot platform update; only the billing-relevant fields are modelled."""

    update_id: Optional[int] = None
    pre_checkout_query: Optional[PreCheckoutQuery] = None
    message: Optional[ProviderMessage] = None

    model_config = ConfigDict(populate_by_name=True)

    def payment_event(self) -> Optional[PaymentEvent]:
        if self.message is None or self.message.successful_payment is None:
            return None

        payment = self.message.successful_payment
        payload = InvoicePayload.decode(payment.invoice_payload)
        return PaymentEvent(
            subscriber_id=payload.subscriber_id,
            merchant_id=payload.merchant_id,
            service_id=payload.service_id,
            tier_id=payload.tier_id,
            gateway_reference=payment.telegram_payment_charge_id,
            provider_reference=payment.provider_payment_charge_id,
            total_amount=payment.total_amount,
            currency=payment.currency,
            chat_id=self.message.chat.id if self.message.chat else None,
        )


class GenericPaymentNotification(BaseModel):
    """Flat payment notification shape used by direct gateway integrations."""

    event: Literal["payment.succeeded", "payment_success"]
    transaction_id: Identifier = Field(min_length=1, validation_alias=AliasChoices("transactionId", "transaction_id"))
    payload: Union[str, Dict[str, Any]]
    amount: Optional[int] = None
    currency: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def payment_event(self) -> PaymentEvent:
        payload = InvoicePayload.decode(self.payload)
        return PaymentEvent(
            subscriber_id=payload.subscriber_id,
            merchant_id=payload.merchant_id,
            service_id=payload.service_id,
            tier_id=payload.tier_id,
            gateway_reference=self.transaction_id,
            total_amount=self.amount,
            currency=self.currency,
        )


class WebhookAck(BaseModel):
    ok: bool = True


class PreCheckoutAnswer(BaseModel):
    """Inline webhook reply answering a pre-checkout query."""

    method: Literal["answerPreCheckoutQuery"] = "answerPreCheckoutQuery"
    pre_checkout_query_id: str
    ok: bool
    error_message: Optional[str] = None


class PaymentFailureRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class PaymentResponse(BaseModel):
    payment_id: str = Field(serialization_alias="paymentId")
    subscriber_id: str = Field(serialization_alias="subscriberId")
    merchant_id: str = Field(serialization_alias="merchantId")
    tier_id: str = Field(serialization_alias="tierId")
    amount: str
    currency: str
    status: str
    gateway_reference: Optional[str] = Field(default=None, serialization_alias="gatewayReference")
    created_at: datetime = Field(serialization_alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        # Amounts are rendered as decimal strings, never floats.
        return cls(
            payment_id=payment.payment_id,
            subscriber_id=payment.subscriber_id,
            merchant_id=payment.merchant_id,
            tier_id=payment.tier_id,
            amount=format(Decimal(payment.amount), "f"),
            currency=payment.currency,
            status=payment.status.value,
            gateway_reference=payment.gateway_reference,
            created_at=payment.created_at,
        )


class StalePaymentListResponse(BaseModel):
    payments: list[PaymentResponse]


class SweepResponse(BaseModel):
    expired_count: int = Field(serialization_alias="expiredCount")
    ran_at: datetime = Field(serialization_alias="ranAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SweepResult) -> "SweepResponse":
        return cls(expired_count=result.expired_count, ran_at=result.ran_at)
