"""
Stripe Gateway - PaymentIntents, Refunds and hosted Checkout Sessions.

Requests are form-encoded with Stripe's nested bracket keys
(``metadata[order_id]``, ``line_items[0][quantity]``). Webhook signatures
(``t=<unix>,v1=<hex>``) are checked with the stripe library's signature
helper.
"""

import json
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

import httpx
import stripe
from structlog import get_logger

from unipay.exceptions import (
    AuthenticationError,
    CardDeclinedError,
    GatewayApiError,
    InsufficientFundsError,
    InvalidRequestError,
    RateLimitError,
)
from unipay.models.config import StripeConfig
from unipay.models.payment import (
    CaptureParams,
    CreatePaymentParams,
    GatewayName,
    GatewayPaymentResult,
    GatewayRefundResult,
    GetPaymentParams,
    OperationType,
    PaymentStatus,
    RefundParams,
    RefundStatus,
    VoidParams,
)
from unipay.models.stripe import CheckoutSessionResult, StripeCheckoutSessionParams
from unipay.models.webhook import StripeWebhookPayload, WebhookEvent, validate_webhook_payload
from unipay.money import from_minor_units, to_minor_units
from unipay.services.hooks import HooksManager
from unipay.services.http import GatewayHttpClient, HttpResponse
from unipay.services.pipeline import (
    call_with_error_mapping,
    execute_with_hooks,
    validate_params,
)

logger = get_logger(__name__)

# Maximum age (and future skew) of a webhook signature timestamp, in seconds
WEBHOOK_TOLERANCE = 300

STATUS_MAP: dict[str, PaymentStatus] = {
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.AUTHORIZED,
    "succeeded": PaymentStatus.PAID,
    "canceled": PaymentStatus.CANCELLED,
}

EVENT_STATUS_MAP: dict[str, PaymentStatus] = {
    "payment_intent.succeeded": PaymentStatus.PAID,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
    "payment_intent.created": PaymentStatus.PENDING,
    "charge.refunded": PaymentStatus.REFUNDED,
}


def map_status(status: str | None) -> PaymentStatus:
    """Map a PaymentIntent status; unknown values are pending."""
    return STATUS_MAP.get(status or "", PaymentStatus.PENDING)


def encode_form(params: Mapping[str, Any], prefix: str | None = None) -> list[tuple[str, str]]:
    """
    Flatten nested params into Stripe's bracketed form fields.

    ``None`` values are skipped; booleans render as ``true``/``false``.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        if value is None:
            continue
        field = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, Mapping):
            pairs.extend(encode_form(value, field))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_field = f"{field}[{index}]"
                if isinstance(item, Mapping):
                    pairs.extend(encode_form(item, item_field))
                elif item is not None:
                    pairs.append((item_field, _form_value(item)))
        else:
            pairs.append((field, _form_value(value)))
    return pairs


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def describe_error(body: Any) -> str | None:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message") or "Stripe API error"
    return None


def map_error(error: Exception) -> Exception:
    """Narrow a Stripe GatewayApiError by ``error.code`` and ``decline_code``."""
    if not isinstance(error, GatewayApiError) or error.gateway_name != GatewayName.STRIPE.value:
        return error

    raw = error.raw_error if isinstance(error.raw_error, dict) else {}
    detail = raw.get("error") if isinstance(raw.get("error"), dict) else {}
    code = detail.get("code")
    message = detail.get("message") or error.message

    if code == "card_declined":
        if detail.get("decline_code") == "insufficient_funds":
            return InsufficientFundsError(message, raw)
        return CardDeclinedError(message, raw)
    if code in ("incorrect_cvc", "incorrect_number", "expired_card"):
        return CardDeclinedError(message, raw)
    if code == "authentication_required":
        return AuthenticationError(message, raw)
    if code == "rate_limit" or error.http_status == 429:
        return RateLimitError(GatewayName.STRIPE.value)
    if code in ("parameter_invalid_integer", "parameter_missing"):
        return InvalidRequestError(message, [raw])
    if error.http_status == 401:
        return AuthenticationError(message, raw)
    return error


def parse_signature_header(header: str) -> dict[str, str]:
    """Split ``t=..,v1=..`` into a dict (first value per key wins)."""
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            parts.setdefault(key.strip(), value.strip())
    return parts


class StripeGateway:
    """
    Stripe payment gateway.

    Implements the PaymentGateway protocol over Stripe's REST API.
    """

    name = GatewayName.STRIPE

    def __init__(
        self,
        config: StripeConfig,
        hooks: HooksManager,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.hooks = hooks
        self.http = GatewayHttpClient(
            self.name.value,
            config.api_base_url,
            client=http_client,
            describe_error=describe_error,
        )

    async def _request(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> HttpResponse:
        headers = {
            "Authorization": f"Bearer {self.config.secret_key}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        if self.config.api_version:
            headers["Stripe-Version"] = self.config.api_version
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        data = urlencode(encode_form(body)) if body and method in ("POST", "PUT") else None
        return await self.http.request(method, path, headers=headers, data=data)

    # ========================================================================
    # Payment Operations
    # ========================================================================

    async def create_payment(self, params: Any) -> GatewayPaymentResult:
        """
        Create a PaymentIntent.

        With ``stripe_payment_method_id`` the intent is confirmed immediately
        and ``callback_url`` becomes its ``return_url``. ``capture=False``
        places a hold (``capture_method=manual``).
        """
        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.CREATE_PAYMENT,
            params=params,
            executor=self._create_payment_intent,
            map_error=map_error,
            schema=CreatePaymentParams,
        )

    async def _create_payment_intent(self, p: CreatePaymentParams) -> GatewayPaymentResult:
        body: dict[str, Any] = {
            "amount": to_minor_units(p.amount),
            "currency": p.currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "description": p.description,
            "metadata": p.metadata,
            "capture_method": "automatic" if p.capture else "manual",
        }
        if p.stripe_customer_id:
            body["customer"] = p.stripe_customer_id
        if p.stripe_payment_method_id:
            body["payment_method"] = p.stripe_payment_method_id
            body["confirm"] = True
            body["return_url"] = p.callback_url
        if p.stripe_setup_future_usage:
            body["setup_future_usage"] = p.stripe_setup_future_usage

        response = await self._request("POST", "/payment_intents", body, p.idempotency_key)
        intent = response.body
        logger.info(
            "stripe_payment_intent_created",
            payment_intent_id=intent["id"],
            status=intent.get("status"),
        )
        return GatewayPaymentResult(
            success=True,
            gateway_id=intent["id"],
            status=map_status(intent.get("status")),
            amount=from_minor_units(intent.get("amount")),
            raw_response=intent,
        )

    async def capture_payment(self, params: Any) -> GatewayPaymentResult:
        """Capture a PaymentIntent held with ``capture_method=manual``."""

        async def executor(p: CaptureParams) -> GatewayPaymentResult:
            body: dict[str, Any] = {}
            if p.amount is not None:
                body["amount_to_capture"] = to_minor_units(p.amount)
            response = await self._request(
                "POST", f"/payment_intents/{p.gateway_payment_id}/capture", body
            )
            intent = response.body
            return GatewayPaymentResult(
                success=True,
                gateway_id=intent["id"],
                status=map_status(intent.get("status")),
                amount=from_minor_units(intent.get("amount_received")),
                captured_amount=from_minor_units(intent.get("amount_received")),
                raw_response=intent,
            )

        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.CAPTURE_PAYMENT,
            params=params,
            executor=executor,
            map_error=map_error,
            schema=CaptureParams,
        )

    async def refund_payment(self, params: Any) -> GatewayRefundResult:
        """Refund a PaymentIntent through the Refunds API."""

        async def executor(p: RefundParams) -> GatewayRefundResult:
            body: dict[str, Any] = {"payment_intent": p.gateway_payment_id}
            if p.amount is not None:
                body["amount"] = to_minor_units(p.amount)
            if p.reason:
                # Free-text reasons are not a Stripe enum value
                body["metadata"] = {"reason": p.reason}
            response = await self._request("POST", "/refunds", body)
            refund = response.body
            created = refund.get("created")
            return GatewayRefundResult(
                success=True,
                gateway_refund_id=refund["id"],
                status=(
                    RefundStatus.COMPLETED
                    if refund.get("status") == "succeeded"
                    else RefundStatus.PENDING
                ),
                total_refunded=from_minor_units(refund.get("amount")),
                refunded_at=datetime.fromtimestamp(created, UTC) if created else None,
                raw_response=refund,
            )

        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.REFUND_PAYMENT,
            params=params,
            executor=executor,
            map_error=map_error,
            schema=RefundParams,
        )

    async def void_payment(self, params: Any) -> GatewayPaymentResult:
        """Cancel a PaymentIntent before capture."""

        async def executor(p: VoidParams) -> GatewayPaymentResult:
            response = await self._request("POST", f"/payment_intents/{p.gateway_payment_id}/cancel")
            intent = response.body
            return GatewayPaymentResult(
                success=True,
                gateway_id=intent["id"],
                status=map_status(intent.get("status")),
                amount=from_minor_units(intent.get("amount")),
                raw_response=intent,
            )

        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.VOID_PAYMENT,
            params=params,
            executor=executor,
            map_error=map_error,
            schema=VoidParams,
        )

    async def create_checkout_session(self, params: Any) -> CheckoutSessionResult:
        """
        Create a hosted Checkout Session.

        Without explicit ``line_items`` a single "Payment" line for
        ``amount`` is sent (except in setup mode).
        """

        async def executor(p: StripeCheckoutSessionParams) -> CheckoutSessionResult:
            body: dict[str, Any] = {
                "mode": p.mode,
                "success_url": p.success_url,
                "cancel_url": p.cancel_url,
                "metadata": p.metadata,
            }
            if p.line_items:
                body["line_items"] = [
                    item.model_dump(exclude_none=True) for item in p.line_items
                ]
            elif p.mode != "setup":
                body["line_items"] = [
                    {
                        "price_data": {
                            "currency": p.currency.lower(),
                            "product_data": {"name": "Payment"},
                            "unit_amount": to_minor_units(p.amount),
                        },
                        "quantity": 1,
                    }
                ]
            if p.customer_id:
                body["customer"] = p.customer_id
            if p.customer_email:
                body["customer_email"] = p.customer_email

            response = await self._request("POST", "/checkout/sessions", body, p.idempotency_key)
            session = response.body
            logger.info("stripe_checkout_session_created", session_id=session["id"])
            return CheckoutSessionResult(
                success=True,
                session_id=session["id"],
                url=session.get("url"),
                raw_response=session,
            )

        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.CREATE_CHECKOUT_SESSION,
            params=params,
            executor=executor,
            map_error=map_error,
            schema=StripeCheckoutSessionParams,
        )

    # ========================================================================
    # Query Operations
    # ========================================================================

    async def get_payment(self, params: Any) -> GatewayPaymentResult:
        """Retrieve a PaymentIntent."""
        p = validate_params(GetPaymentParams, params, "get_payment")
        response = await call_with_error_mapping(
            self._request("GET", f"/payment_intents/{p.gateway_payment_id}"), map_error
        )
        intent = response.body
        return GatewayPaymentResult(
            success=True,
            gateway_id=intent["id"],
            status=map_status(intent.get("status")),
            amount=from_minor_units(intent.get("amount")),
            raw_response=intent,
        )

    async def get_payment_status(self, gateway_payment_id: str) -> PaymentStatus:
        result = await self.get_payment(GetPaymentParams(gateway_payment_id=gateway_payment_id))
        return result.status

    # ========================================================================
    # Webhook Handling
    # ========================================================================

    def verify_webhook(
        self,
        payload: Any,
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """
        Verify a ``Stripe-Signature`` header against the raw body.

        The raw request body is required; a parsed dict is re-serialized
        and will usually fail verification.
        """
        if not self.config.webhook_secret:
            logger.warning("stripe_webhook_verification_skipped", reason="no_webhook_secret")
            return True

        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        header = signature or lowered.get("stripe-signature")
        if not header:
            logger.warning("stripe_webhook_missing_signature")
            return False

        parts = parse_signature_header(header)
        if "t" not in parts or "v1" not in parts:
            logger.warning("stripe_webhook_invalid_signature_header")
            return False
        try:
            timestamp = int(parts["t"])
        except ValueError:
            return False
        # verify_header only rejects old timestamps; reject future ones too
        if abs(time.time() - timestamp) > WEBHOOK_TOLERANCE:
            logger.warning("stripe_webhook_timestamp_out_of_tolerance", timestamp=timestamp)
            return False

        if isinstance(payload, (bytes, bytearray)):
            try:
                raw_body = bytes(payload).decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("stripe_webhook_invalid_encoding")
                return False
        elif isinstance(payload, str):
            raw_body = payload
        else:
            logger.warning("stripe_webhook_verifying_parsed_payload")
            raw_body = json.dumps(payload)

        try:
            stripe.WebhookSignature.verify_header(
                raw_body, header, self.config.webhook_secret, tolerance=WEBHOOK_TOLERANCE
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_verification_failed", error=str(exc))
            return False
        return True

    def parse_webhook_event(self, payload: Any) -> WebhookEvent:
        """Parse a Stripe event, deriving status from the event type."""
        event = validate_webhook_payload(StripeWebhookPayload, payload, self.name.value)
        obj = event.data.object

        if event.type in EVENT_STATUS_MAP:
            status = EVENT_STATUS_MAP[event.type]
        elif event.type == "checkout.session.completed":
            status = PaymentStatus.PAID if obj.payment_status == "paid" else PaymentStatus.PENDING
        elif event.type == "charge.refund.updated":
            status = (
                PaymentStatus.PARTIALLY_REFUNDED
                if obj.status == "succeeded"
                else PaymentStatus.PENDING
            )
        elif event.type.startswith("subscription_schedule."):
            status = PaymentStatus.PENDING
        else:
            status = map_status(obj.status)

        # Checkout sessions carry amount_total instead of amount
        minor = obj.amount_total or obj.amount or 0
        return WebhookEvent(
            id=event.id,
            type=event.type,
            gateway=self.name,
            payment_id=(obj.metadata or {}).get("paymentId"),
            gateway_payment_id=obj.id,
            status=status,
            amount=from_minor_units(minor),
            currency=obj.currency or "usd",
            timestamp=datetime.fromtimestamp(event.created, UTC),
            raw_payload=event.model_dump(mode="json"),
        )
