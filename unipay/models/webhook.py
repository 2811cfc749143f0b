"""
Webhook Models - normalized event envelope and per-gateway payload schemas.

Payloads are validated at the parse boundary; a payload missing its
discriminant fields is rejected with InvalidWebhookError before parsing.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from unipay.exceptions import InvalidWebhookError
from unipay.models.payment import GatewayName, PaymentStatus


@dataclass(frozen=True)
class WebhookEvent:
    """Normalized webhook event from any gateway."""

    id: str
    type: str  # provider event type, not normalized
    gateway: GatewayName
    payment_id: str | None  # internal id recovered from provider metadata
    gateway_payment_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    timestamp: datetime
    raw_payload: Any


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


# ============================================================================
# Moyasar
# ============================================================================


class MoyasarWebhookData(_Payload):
    id: str
    status: str
    amount: int = 0
    currency: str = "SAR"
    metadata: dict[str, Any] | None = None


class MoyasarWebhookPayload(_Payload):
    id: str
    type: str
    created_at: datetime
    secret_token: str | None = None
    data: MoyasarWebhookData


# ============================================================================
# PayPal
# ============================================================================


class PayPalAmount(_Payload):
    currency_code: str
    value: str


class PayPalCapture(_Payload):
    id: str
    status: str | None = None
    amount: PayPalAmount | None = None


class PayPalPayments(_Payload):
    captures: list[PayPalCapture] = Field(default_factory=list)


class PayPalPurchaseUnit(_Payload):
    reference_id: str | None = None
    custom_id: str | None = None
    payments: PayPalPayments | None = None


class PayPalRelatedIds(_Payload):
    order_id: str | None = None
    authorization_id: str | None = None
    capture_id: str | None = None


class PayPalSupplementaryData(_Payload):
    related_ids: PayPalRelatedIds | None = None


class PayPalResource(_Payload):
    id: str
    status: str | None = None
    amount: PayPalAmount | None = None
    custom_id: str | None = None
    supplementary_data: PayPalSupplementaryData | None = None
    purchase_units: list[PayPalPurchaseUnit] | None = None


class PayPalWebhookPayload(_Payload):
    id: str
    event_type: str
    create_time: datetime | None = None
    resource_type: str | None = None
    resource: PayPalResource


# ============================================================================
# Paymob
# ============================================================================


class PaymobOrder(_Payload):
    id: int
    merchant_order_id: str | None = None


class PaymobPaymentKeyClaims(_Payload):
    extra: dict[str, Any] | None = None


class PaymobTransaction(_Payload):
    id: int
    pending: bool = False
    success: bool = False
    amount_cents: int = 0
    currency: str = "SAR"
    created_at: datetime | None = None
    is_void: bool = False
    is_voided: bool = False
    is_refund: bool = False
    is_refunded: bool = False
    refunded_amount_cents: int | None = None
    captured_amount: int | None = None
    order: PaymobOrder
    payment_key_claims: PaymobPaymentKeyClaims | None = None


class PaymobWebhookPayload(_Payload):
    type: str = "TRANSACTION"
    obj: PaymobTransaction
    hmac: str | None = None


# ============================================================================
# Stripe
# ============================================================================


class StripeEventObject(_Payload):
    id: str
    object: str | None = None
    status: str | None = None
    amount: int | None = None
    amount_total: int | None = None
    currency: str | None = None
    payment_status: str | None = None
    metadata: dict[str, str] | None = None


class StripeEventData(_Payload):
    object: StripeEventObject


class StripeWebhookPayload(_Payload):
    id: str
    type: str
    created: int
    data: StripeEventData
    livemode: bool = False


# ============================================================================
# Tabby
# ============================================================================


class TabbyAmountRecord(_Payload):
    id: str
    amount: str
    created_at: datetime | None = None


class TabbyWebhookPayload(_Payload):
    id: str
    status: str
    created_at: datetime
    amount: str
    currency: str
    captures: list[TabbyAmountRecord] = Field(default_factory=list)
    refunds: list[TabbyAmountRecord] = Field(default_factory=list)
    meta: dict[str, Any] | None = None


# ============================================================================
# Tamara
# ============================================================================


class TamaraEventAmount(_Payload):
    amount: Decimal
    currency: str


class TamaraEventData(_Payload):
    captured_amount: TamaraEventAmount | None = None
    refunded_amount: TamaraEventAmount | None = None
    canceled_amount: TamaraEventAmount | None = None


class TamaraWebhookPayload(_Payload):
    order_id: str
    order_reference_id: str | None = None
    order_number: str | None = None
    event_type: str
    data: TamaraEventData | list[Any] | None = None


# ============================================================================
# Parse boundary
# ============================================================================

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def decode_webhook_payload(payload: Any) -> dict[str, Any]:
    """Turn a raw (str/bytes) or pre-parsed webhook body into a dict."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidWebhookError("Webhook payload is not valid UTF-8") from exc
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise InvalidWebhookError(f"Webhook payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidWebhookError("Webhook payload must be a JSON object")
    return payload


def validate_webhook_payload(model: type[PayloadT], payload: Any, gateway: str) -> PayloadT:
    """Validate a webhook body against a gateway schema."""
    data = decode_webhook_payload(payload)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InvalidWebhookError(
            f"Invalid {gateway} webhook payload", validation_errors=exc.errors()
        ) from exc
