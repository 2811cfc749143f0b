"""
Stripe Models - hosted Checkout Session params and result.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from unipay.models.payment import validate_url


class _StripeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)


class StripeProductData(_StripeModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    images: list[str] | None = None


class StripePriceData(_StripeModel):
    currency: str = Field(..., min_length=3, max_length=3)
    product_data: StripeProductData
    unit_amount: int = Field(..., gt=0)  # minor units


class StripeLineItem(_StripeModel):
    price_data: StripePriceData | None = None
    price: str | None = Field(None, pattern=r"^price_")
    quantity: int = Field(..., gt=0)


class StripeCheckoutSessionParams(_StripeModel):
    """Parameters for ``POST /checkout/sessions``."""

    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, frozen=True, extra="allow"
    )

    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    success_url: str
    cancel_url: str
    mode: Literal["payment", "subscription", "setup"] = "payment"
    line_items: list[StripeLineItem] | None = None
    customer_id: str | None = Field(None, pattern=r"^cus_")
    customer_email: str | None = Field(None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    metadata: dict[str, str] | None = None
    idempotency_key: str | None = None

    @field_validator("success_url", "cancel_url")
    @classmethod
    def validate_urls(cls, v: str) -> str:
        """Redirect URLs must be absolute."""
        return validate_url(v)


@dataclass(frozen=True)
class CheckoutSessionResult:
    """Result of creating a Stripe hosted checkout session."""

    success: bool
    session_id: str
    url: str | None
    raw_response: Any = None
