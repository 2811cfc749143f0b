"""
Payment Gateway Protocol - Provider-agnostic interface.

Every adapter satisfies ``PaymentGateway``. Optional capabilities are
separate runtime-checkable protocols so the client can detect them.
"""

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from unipay.models.payment import (
    CaptureParams,
    CreatePaymentParams,
    GatewayName,
    GatewayPaymentResult,
    GatewayRefundResult,
    GetPaymentParams,
    PaymentStatus,
    RefundParams,
    VoidParams,
)
from unipay.models.webhook import WebhookEvent

# Params may be a validated model or a plain mapping (snake_case or camelCase keys)
CreatePaymentInput = CreatePaymentParams | Mapping[str, Any]
CaptureInput = CaptureParams | Mapping[str, Any]
RefundInput = RefundParams | Mapping[str, Any]
VoidInput = VoidParams | Mapping[str, Any]
GetPaymentInput = GetPaymentParams | Mapping[str, Any]


@runtime_checkable
class PaymentGateway(Protocol):
    """
    Payment gateway protocol.

    Any gateway (Moyasar, PayPal, Paymob, Stripe, Tabby, Tamara) must
    implement this interface.
    """

    name: GatewayName

    async def create_payment(self, params: CreatePaymentInput) -> GatewayPaymentResult:
        """
        Create a payment with the provider.

        Args:
            params: Payment details (amount in major units)

        Returns:
            Normalized payment result

        Raises:
            InvalidRequestError: If params fail validation
            PaymentError: Mapped provider or network failure
        """
        ...

    async def capture_payment(self, params: CaptureInput) -> GatewayPaymentResult:
        """Capture an authorized payment."""
        ...

    async def refund_payment(self, params: RefundInput) -> GatewayRefundResult:
        """Refund a payment (full when no amount is given)."""
        ...

    def verify_webhook(
        self,
        payload: Any,
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """
        Best-effort synchronous webhook verification.

        Args:
            payload: Raw body (str/bytes) or parsed JSON
            signature: Signature value when delivered out of band
            headers: Request headers (lower-cased names)

        Returns:
            True if the webhook is authentic
        """
        ...

    def parse_webhook_event(self, payload: Any) -> WebhookEvent:
        """
        Parse a verified webhook into a normalized event.

        Raises:
            InvalidWebhookError: If the payload misses required fields
        """
        ...


@runtime_checkable
class SupportsVoid(Protocol):
    async def void_payment(self, params: VoidInput) -> GatewayPaymentResult: ...


@runtime_checkable
class SupportsGetPayment(Protocol):
    async def get_payment(self, params: GetPaymentInput) -> GatewayPaymentResult: ...

    async def get_payment_status(self, gateway_payment_id: str) -> PaymentStatus: ...


@runtime_checkable
class SupportsAsyncWebhookVerification(Protocol):
    async def verify_webhook_async(
        self,
        payload: Any,
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Cryptographic verification, preferred over ``verify_webhook`` when available."""
        ...


@runtime_checkable
class SupportsCheckoutSession(Protocol):
    async def create_checkout_session(self, params: Any) -> Any: ...
