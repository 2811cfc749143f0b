"""
Payment Models - normalized operation params and results.

Params are pydantic models validated at the pipeline boundary. Results are
immutable dataclasses constructed fresh per call.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from unipay.models.moyasar import MoyasarSource


class GatewayName(str, Enum):
    """Supported payment gateways."""

    MOYASAR = "moyasar"
    PAYPAL = "paypal"
    PAYMOB = "paymob"
    STRIPE = "stripe"
    TABBY = "tabby"
    TAMARA = "tamara"


class PaymentStatus(str, Enum):
    """Normalized payment status shared by every gateway."""

    PENDING = "pending"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    APPROVED = "approved"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus(str, Enum):
    """Refund processing status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class OperationType(str, Enum):
    """Gateway operations that run through the hook pipeline."""

    CREATE_PAYMENT = "create_payment"
    CAPTURE_PAYMENT = "capture_payment"
    REFUND_PAYMENT = "refund_payment"
    VOID_PAYMENT = "void_payment"
    VERIFY_WEBHOOK = "verify_webhook"
    CREATE_CHECKOUT_SESSION = "create_checkout_session"


def validate_url(value: str) -> str:
    """Require an absolute http(s) URL, leaving the string untouched."""
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid URL: {value}")
    return value


class OperationParams(BaseModel):
    """Base for operation params.

    Accepts snake_case or camelCase keys and keeps unknown gateway-specific
    fields so hooks and adapters can read them.
    """

    model_config = ConfigDict(
        extra="allow",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


# ============================================================================
# Operation Params
# ============================================================================


class CreatePaymentParams(OperationParams):
    """Parameters for creating a payment. Amount is in major units."""

    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    callback_url: str
    order_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None
    capture: bool = True
    idempotency_key: str | None = None

    # Stripe
    stripe_payment_method_id: str | None = None
    stripe_customer_id: str | None = None
    stripe_setup_future_usage: Literal["on_session", "off_session"] | None = None

    # Moyasar
    moyasar_source: MoyasarSource | None = None
    token_id: str | None = None  # legacy, prefer moyasar_source
    apply_coupon: bool | None = None

    # PayPal / BNPL redirects
    return_url: str | None = None
    cancel_url: str | None = None

    # Paymob
    paymob_integration_id: str | None = None

    @field_validator("callback_url")
    @classmethod
    def validate_callback_url(cls, v: str) -> str:
        """Callback must be an absolute URL."""
        return validate_url(v)

    @field_validator("return_url", "cancel_url")
    @classmethod
    def validate_redirect_urls(cls, v: str | None) -> str | None:
        """Optional redirect URLs must be absolute when given."""
        return validate_url(v) if v is not None else None

    @field_validator("stripe_payment_method_id")
    @classmethod
    def validate_payment_method(cls, v: str | None) -> str | None:
        """Stripe payment method ids start with pm_."""
        if v is not None and not v.startswith("pm_"):
            raise ValueError("Stripe Payment Method ID must start with pm_")
        return v

    @field_validator("stripe_customer_id")
    @classmethod
    def validate_customer(cls, v: str | None) -> str | None:
        """Stripe customer ids start with cus_."""
        if v is not None and not v.startswith("cus_"):
            raise ValueError("Stripe Customer ID must start with cus_")
        return v

    def metadata_value(self, key: str, default: Any = None) -> Any:
        """Read a metadata entry, tolerating absent metadata."""
        return (self.metadata or {}).get(key, default)


class CaptureParams(OperationParams):
    """Capture an authorized payment, optionally for a partial amount."""

    gateway_payment_id: str = Field(..., min_length=1)
    amount: Decimal | None = Field(None, gt=0)


class RefundParams(OperationParams):
    """Refund a payment. Omitting amount requests a full refund."""

    gateway_payment_id: str = Field(..., min_length=1)
    amount: Decimal | None = Field(None, gt=0)
    reason: str | None = None
    currency: str | None = Field(None, min_length=3, max_length=3)


class VoidParams(OperationParams):
    """Void an authorization before capture."""

    gateway_payment_id: str = Field(..., min_length=1)


class GetPaymentParams(OperationParams):
    """Look up a payment by the provider's identifier."""

    gateway_payment_id: str = Field(..., min_length=1)


# ============================================================================
# Operation Results
# ============================================================================


@dataclass(frozen=True)
class GatewayPaymentResult:
    """
    Normalized result of a payment operation.

    Amounts are major-unit Decimals. ``redirect_url`` is set when the
    customer must act (3-D Secure, BNPL approval, PayPal approval).
    """

    success: bool
    gateway_id: str
    status: PaymentStatus
    redirect_url: str | None = None
    amount: Decimal | None = None
    fee: Decimal | None = None
    captured_amount: Decimal | None = None
    refunded_amount: Decimal | None = None
    raw_response: Any = None


@dataclass(frozen=True)
class GatewayRefundResult:
    """
    Normalized refund result.

    Moyasar has no refund entity, so its ``gateway_refund_id`` is the
    payment id.
    """

    success: bool
    gateway_refund_id: str
    status: RefundStatus
    total_refunded: Decimal | None = None
    refunded_at: datetime | None = None
    raw_response: Any = None
