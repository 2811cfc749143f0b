"""
Tamara Models - checkout session and order management requests.

Field names follow the Tamara API (snake_case on the wire).
"""

from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from unipay.models.payment import validate_url

TamaraCurrency = Literal["SAR", "AED", "KWD", "BHD", "OMR"]


class _TamaraModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    def to_body(self) -> dict:
        """JSON body for the Tamara API, dropping unset optionals."""
        return self.model_dump(mode="json", exclude_none=True)


class TamaraAmount(BaseModel):
    amount: Decimal = Field(..., ge=0)
    currency: TamaraCurrency

    @field_serializer("amount")
    def serialize_amount(self, value: Decimal) -> float:
        """Tamara expects JSON numbers for amounts."""
        return float(value)


class TamaraConsumer(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=5)


class TamaraAddress(BaseModel):
    city: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2, max_length=2)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    line1: str = Field(..., min_length=1)
    line2: str | None = None
    phone_number: str = Field(..., min_length=5)
    region: str = Field(..., min_length=1)


class TamaraOrderItem(BaseModel):
    name: str = Field(..., max_length=255)
    quantity: int = Field(..., gt=0)
    reference_id: str = Field(..., min_length=1)
    type: Literal["Physical", "Digital"]
    sku: str = Field(..., max_length=128)
    item_url: str | None = Field(None, max_length=1024)
    image_url: str | None = Field(None, max_length=1024)
    unit_price: TamaraAmount | None = None
    tax_amount: TamaraAmount | None = None
    discount_amount: TamaraAmount | None = None
    total_amount: TamaraAmount


class TamaraMerchantUrls(BaseModel):
    success: str
    failure: str
    cancel: str
    notification: str

    @field_validator("success", "failure", "cancel", "notification")
    @classmethod
    def validate_urls(cls, v: str) -> str:
        """Merchant URLs must be absolute."""
        return validate_url(v)


class TamaraDiscount(BaseModel):
    name: str
    amount: TamaraAmount


class TamaraCheckoutSessionParams(_TamaraModel):
    """Tamara ``POST /checkout`` request."""

    total_amount: TamaraAmount
    shipping_amount: TamaraAmount
    tax_amount: TamaraAmount
    order_reference_id: str = Field(..., min_length=1)
    order_number: str | None = None
    discount: TamaraDiscount | None = None
    items: list[TamaraOrderItem] = Field(..., min_length=1)
    consumer: TamaraConsumer
    country_code: Literal["SA", "AE", "BH", "KW", "OM"]
    description: str = Field(..., max_length=256)
    merchant_url: TamaraMerchantUrls
    billing_address: TamaraAddress | None = None
    shipping_address: TamaraAddress
    platform: str | None = None
    is_mobile: bool | None = None
    locale: Literal["ar_SA", "en_US"] | None = None
    payment_type: Literal["PAY_BY_INSTALMENTS", "PAY_NOW"] | None = None
    instalments: int | None = Field(None, ge=2, le=6)
    expires_in_minutes: int | None = Field(None, ge=5, le=1440)


class TamaraShippingInfo(BaseModel):
    shipped_at: str
    shipping_company: str = Field(..., min_length=1)
    tracking_number: str = Field(..., min_length=1)
    tracking_url: str | None = None


class TamaraCaptureRequest(_TamaraModel):
    """Full-parameter ``POST /payments/capture`` request."""

    order_id: UUID
    total_amount: TamaraAmount
    shipping_info: TamaraShippingInfo
    items: list[TamaraOrderItem] | None = None
    discount_amount: TamaraAmount | None = None
    shipping_amount: TamaraAmount | None = None
    tax_amount: TamaraAmount | None = None


class TamaraRefundRequest(_TamaraModel):
    """Full-parameter simplified refund request."""

    order_id: UUID
    total_amount: TamaraAmount
    comment: str = Field(..., min_length=1)
    merchant_refund_id: str | None = None


class TamaraCancelRequest(_TamaraModel):
    """Full-parameter order cancel request."""

    order_id: UUID
    total_amount: TamaraAmount
    shipping_amount: TamaraAmount | None = None
    tax_amount: TamaraAmount | None = None
    discount_amount: TamaraAmount | None = None
    items: list[TamaraOrderItem] | None = None
