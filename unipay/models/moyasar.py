"""
Moyasar payment sources - discriminated union over funding instruments.

Each source knows how to render itself as the Moyasar ``source`` object.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class _Source(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    def to_payload(self) -> dict[str, Any]:
        raise NotImplementedError


def _capture_flags(
    statement_descriptor: str | None,
    three_ds: bool | None = None,
    manual_capture: bool | None = None,
    save_card: bool | None = None,
) -> dict[str, Any]:
    """Optional flags shared by card-like sources, omitted when unset."""
    flags: dict[str, Any] = {}
    if statement_descriptor:
        flags["statement_descriptor"] = statement_descriptor
    if three_ds is not None:
        flags["3ds"] = three_ds
    if manual_capture is not None:
        flags["manual"] = manual_capture
    if save_card is not None:
        flags["save_card"] = save_card
    return flags


class CreditCardSource(_Source):
    """Raw card details (PCI scope stays with the caller)."""

    type: Literal["creditcard"] = "creditcard"
    name: str = Field(..., min_length=2)
    number: str = Field(..., pattern=r"^\d{13,19}$")
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000)
    cvc: str = Field(..., pattern=r"^\d{3,4}$")
    statement_descriptor: str | None = None
    three_ds: bool | None = Field(None, alias="3ds")
    manual_capture: bool | None = None
    save_card: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "creditcard",
            "name": self.name,
            "number": self.number,
            "month": self.month,
            "year": self.year,
            "cvc": self.cvc,
            **_capture_flags(
                self.statement_descriptor, self.three_ds, self.manual_capture, self.save_card
            ),
        }


class CardTokenSource(_Source):
    """Card tokenized client-side by Moyasar.js."""

    type: Literal["token"] = "token"
    token: str = Field(..., pattern=r"^token_")
    cvc: str | None = Field(None, pattern=r"^\d{3,4}$")
    statement_descriptor: str | None = None
    three_ds: bool | None = Field(None, alias="3ds")
    manual_capture: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "token", "token": self.token}
        if self.cvc:
            payload["cvc"] = self.cvc
        payload.update(
            _capture_flags(self.statement_descriptor, self.three_ds, self.manual_capture)
        )
        return payload


class ApplePaySource(_Source):
    """Apple Pay, either the encrypted token or a decrypted DPAN."""

    type: Literal["applepay"] = "applepay"
    token: str | None = None
    manual_capture: bool | None = None
    save_card: bool | None = None
    statement_descriptor: str | None = None

    # Decrypted payment data
    dpan: str | None = None
    month: int | None = Field(None, ge=1, le=12)
    year: int | None = None
    cryptogram: str | None = None
    device_id: str | None = None
    masked_number: str | None = None
    eci: str | None = None

    @model_validator(mode="after")
    def require_token_or_dpan(self) -> "ApplePaySource":
        """Apple Pay needs either the encrypted token or a DPAN."""
        if not self.token and not self.dpan:
            raise ValueError("Invalid Apple Pay source: must have either token or dpan")
        return self

    def to_payload(self) -> dict[str, Any]:
        if self.token:
            return {
                "type": "applepay",
                "token": self.token,
                **_capture_flags(
                    self.statement_descriptor,
                    manual_capture=self.manual_capture,
                    save_card=self.save_card,
                ),
            }
        payload: dict[str, Any] = {
            "type": "applepay",
            "dpan": self.dpan,
            "month": self.month,
            "year": self.year,
            "cryptogram": self.cryptogram,
            "device_id": self.device_id,
        }
        if self.masked_number:
            payload["masked_number"] = self.masked_number
        if self.eci:
            payload["eci"] = self.eci
        return payload


class SamsungPaySource(_Source):
    """Samsung Pay encrypted token."""

    type: Literal["samsungpay"] = "samsungpay"
    token: str
    manual_capture: bool | None = None
    save_card: bool | None = None
    statement_descriptor: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "samsungpay",
            "token": self.token,
            **_capture_flags(
                self.statement_descriptor,
                manual_capture=self.manual_capture,
                save_card=self.save_card,
            ),
        }


class StcPaySource(_Source):
    """STC Pay wallet identified by a KSA mobile number."""

    type: Literal["stcpay"] = "stcpay"
    mobile: str = Field(..., pattern=r"^(?:05|\+9665|009665)\d{8}$")
    cashier: str | None = None
    branch: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "stcpay", "mobile": self.mobile}
        if self.cashier:
            payload["cashier"] = self.cashier
        if self.branch:
            payload["branch"] = self.branch
        return payload


MoyasarSource = Annotated[
    CreditCardSource | CardTokenSource | ApplePaySource | SamsungPaySource | StcPaySource,
    Field(discriminator="type"),
]
