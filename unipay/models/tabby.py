"""
Tabby Models - checkout session and payment operation params.

Amounts are decimal strings ("100.00") as the Tabby API expects.
"""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from unipay.models.payment import CaptureParams, RefundParams, validate_url

_AMOUNT_PATTERN = r"^\d+(\.\d{1,2})?$"


class _TabbyModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="allow")


class TabbyBuyer(BaseModel):
    """Customer details used by Tabby pre-scoring."""

    name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str = Field(..., min_length=5)
    dob: str | None = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")


class TabbyAddress(BaseModel):
    city: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)


class TabbyOrderItem(BaseModel):
    """One cart line. Tabby uses snake_case keys on the wire."""

    model_config = ConfigDict(extra="allow")

    reference_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    unit_price: str = Field(..., pattern=_AMOUNT_PATTERN)
    description: str | None = None
    discount_amount: str | None = None
    image_url: str | None = None
    product_url: str | None = None
    category: str | None = None


class TabbyOrder(BaseModel):
    reference_id: str = Field(..., min_length=1)
    items: list[TabbyOrderItem] = Field(..., min_length=1)
    tax_amount: str | None = None
    shipping_amount: str | None = None
    discount_amount: str | None = None
    updated_at: str | None = None


class TabbyMerchantUrls(BaseModel):
    success: str
    cancel: str
    failure: str

    @field_validator("success", "cancel", "failure")
    @classmethod
    def validate_urls(cls, v: str) -> str:
        """Merchant redirect URLs must be absolute."""
        return validate_url(v)


class TabbyCheckoutSessionParams(_TabbyModel):
    """Full BNPL checkout session request."""

    amount: str = Field(..., pattern=_AMOUNT_PATTERN)
    currency: str = Field(..., min_length=3, max_length=3)
    description: str | None = None
    buyer: TabbyBuyer
    shipping_address: TabbyAddress | None = None
    order: TabbyOrder
    merchant_urls: TabbyMerchantUrls
    lang: Literal["en", "ar"] | None = None
    meta: dict[str, Any] | None = None
    idempotency_key: str | None = None


class TabbyCaptureParams(CaptureParams):
    """Capture with Tabby cart breakdown."""

    reference_id: str | None = None
    tax_amount: str | None = None
    shipping_amount: str | None = None
    discount_amount: str | None = None
    items: list[TabbyOrderItem] | None = None


class TabbyRefundParams(RefundParams):
    """Refund with optional Tabby reference and item list."""

    reference_id: str | None = None
    items: list[TabbyOrderItem] | None = None


@dataclass(frozen=True)
class TabbyEligibility:
    """Outcome of a Tabby pre-scoring check."""

    eligible: bool
    rejection_reason: str | None = None
    session_id: str | None = None
