"""
Moyasar Gateway - Saudi card, Apple Pay, Samsung Pay and STC Pay payments.

Moyasar authenticates with HTTP Basic (secret key as username) and returns
the payment object from every mutation; there is no separate refund entity.
Webhooks carry a plaintext ``secret_token`` in the body.
"""

import base64
import hmac
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx
from structlog import get_logger

from unipay.exceptions import (
    AuthenticationError,
    GatewayApiError,
    InvalidRequestError,
    InvalidWebhookError,
    RateLimitError,
)
from unipay.models.config import MoyasarConfig
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
from unipay.models.webhook import (
    MoyasarWebhookPayload,
    WebhookEvent,
    decode_webhook_payload,
    validate_webhook_payload,
)
from unipay.money import from_minor_units, to_minor_units
from unipay.services.hooks import HooksManager
from unipay.services.http import GatewayHttpClient
from unipay.services.pipeline import (
    call_with_error_mapping,
    execute_with_hooks,
    validate_params,
)

logger = get_logger(__name__)

STATUS_MAP: dict[str, PaymentStatus] = {
    "initiated": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "authorized": PaymentStatus.AUTHORIZED,
    "verified": PaymentStatus.AUTHORIZED,  # 0-amount card verification
    "captured": PaymentStatus.PAID,
    "paid": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
    "voided": PaymentStatus.CANCELLED,
}


def map_status(status: str | None) -> PaymentStatus:
    """Map a Moyasar payment status; unknown values are pending."""
    return STATUS_MAP.get(status or "", PaymentStatus.PENDING)


def describe_error(body: Any) -> str | None:
    """Build a message from a Moyasar error body, appending field errors."""
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    errors = body.get("errors")
    if message and isinstance(errors, dict) and errors:
        details = "; ".join(
            f"{field}: {', '.join(str(m) for m in messages) if isinstance(messages, list) else messages}"
            for field, messages in errors.items()
        )
        return f"{message} - {details}"
    return message


def map_error(error: Exception) -> Exception:
    """Narrow a Moyasar GatewayApiError by its error ``type``."""
    if not isinstance(error, GatewayApiError) or error.gateway_name != GatewayName.MOYASAR.value:
        return error

    raw = error.raw_error if isinstance(error.raw_error, dict) else {}
    error_type = raw.get("type")

    if error_type == "invalid_request_error":
        errors = raw.get("errors")
        field_errors = (
            [{"field": field, "messages": messages} for field, messages in errors.items()]
            if isinstance(errors, dict)
            else None
        )
        return InvalidRequestError(error.message, field_errors)
    if error_type in ("authentication_error", "3ds_auth_error"):
        return AuthenticationError(error.message, raw)
    if error_type == "rate_limit_error" or error.http_status == 429:
        return RateLimitError(GatewayName.MOYASAR.value)
    return error


class MoyasarGateway:
    """
    Moyasar payment gateway.

    Implements the PaymentGateway protocol for Moyasar.
    """

    name = GatewayName.MOYASAR

    def __init__(
        self,
        config: MoyasarConfig,
        hooks: HooksManager,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize Moyasar gateway.

        Args:
            config: Moyasar credentials
            hooks: Shared hooks manager
            http_client: Optional shared httpx client
        """
        self.config = config
        self.hooks = hooks
        self.http = GatewayHttpClient(
            self.name.value,
            config.api_base_url,
            client=http_client,
            describe_error=describe_error,
        )

    def _headers(self) -> dict[str, str]:
        credentials = base64.b64encode(f"{self.config.secret_key}:".encode()).decode()
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Basic {credentials}",
        }

    # ========================================================================
    # Payment Operations
    # ========================================================================

    async def create_payment(self, params: Any) -> GatewayPaymentResult:
        """
        Create a payment.

        The funding source comes from ``moyasar_source`` or, for older
        integrations, a saved-card ``token_id``.

        Raises:
            InvalidRequestError: If no payment source is given (no request is sent)
        """
        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.CREATE_PAYMENT,
            params=params,
            executor=self._create_payment,
            map_error=map_error,
            schema=CreatePaymentParams,
        )

    async def _create_payment(self, p: CreatePaymentParams) -> GatewayPaymentResult:
        body: dict[str, Any] = {
            "amount": to_minor_units(p.amount),
            "currency": p.currency,
            "callback_url": p.callback_url,
            "description": p.description or "Payment",
            "source": build_source_payload(p),
            "metadata": p.metadata,
        }
        # given_id becomes the payment id, making retries idempotent
        if p.idempotency_key:
            body["given_id"] = p.idempotency_key
        if p.apply_coupon is not None:
            body["apply_coupon"] = p.apply_coupon

        response = await self.http.request(
            "POST",
            "/payments",
            headers=self._headers(),
            json=body,
            error_message="Failed to create payment",
        )
        logger.info(
            "moyasar_payment_created",
            payment_id=response.body.get("id"),
            status=response.body.get("status"),
            source_type=body["source"].get("type"),
        )
        return map_payment_response(response.body)

    async def capture_payment(self, params: Any) -> GatewayPaymentResult:
        """Capture an authorized payment, partially when an amount is given."""

        async def executor(p: CaptureParams) -> GatewayPaymentResult:
            body: dict[str, Any] = {}
            if p.amount is not None:
                body["amount"] = to_minor_units(p.amount)
            response = await self.http.request(
                "POST",
                f"/payments/{p.gateway_payment_id}/capture",
                headers=self._headers(),
                json=body,
                error_message="Failed to capture payment",
            )
            return map_payment_response(response.body)

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
        """
        Refund a payment (full or partial).

        Moyasar returns the updated payment, so the refund id is the payment id.
        """

        async def executor(p: RefundParams) -> GatewayRefundResult:
            body: dict[str, Any] = {}
            if p.amount is not None:
                body["amount"] = to_minor_units(p.amount)
            response = await self.http.request(
                "POST",
                f"/payments/{p.gateway_payment_id}/refund",
                headers=self._headers(),
                json=body,
                error_message="Failed to refund payment",
            )
            payment = response.body
            refunded_at = payment.get("refunded_at")
            return GatewayRefundResult(
                success=True,
                gateway_refund_id=payment["id"],
                status=(
                    RefundStatus.COMPLETED
                    if payment.get("status") == "refunded"
                    else RefundStatus.PENDING
                ),
                total_refunded=from_minor_units(payment.get("refunded")),
                refunded_at=datetime.fromisoformat(refunded_at) if refunded_at else None,
                raw_response=payment,
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
        """Void an authorized (not yet captured) payment."""

        async def executor(p: VoidParams) -> GatewayPaymentResult:
            response = await self.http.request(
                "POST",
                f"/payments/{p.gateway_payment_id}/void",
                headers=self._headers(),
                error_message="Failed to void payment",
            )
            return map_payment_response(response.body)

        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.VOID_PAYMENT,
            params=params,
            executor=executor,
            map_error=map_error,
            schema=VoidParams,
        )

    # ========================================================================
    # Query Operations
    # ========================================================================

    async def get_payment(self, params: Any) -> GatewayPaymentResult:
        """Fetch full payment details."""
        p = validate_params(GetPaymentParams, params, "get_payment")
        response = await call_with_error_mapping(
            self.http.request(
                "GET",
                f"/payments/{p.gateway_payment_id}",
                headers=self._headers(),
                error_message="Failed to get payment",
            ),
            map_error,
        )
        return map_payment_response(response.body)

    async def get_payment_status(self, gateway_payment_id: str) -> PaymentStatus:
        """Fetch only the normalized status of a payment."""
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
        Verify a webhook by its ``secret_token`` field.

        With no webhook secret configured verification is skipped and the
        webhook is accepted.
        """
        if not self.config.webhook_secret:
            logger.warning("moyasar_webhook_verification_skipped", reason="no_webhook_secret")
            return True

        try:
            token = decode_webhook_payload(payload).get("secret_token")
        except InvalidWebhookError:
            return False
        if not isinstance(token, str):
            return False
        return hmac.compare_digest(token.encode(), self.config.webhook_secret.encode())

    def parse_webhook_event(self, payload: Any) -> WebhookEvent:
        """Parse a Moyasar webhook into a normalized event."""
        event = validate_webhook_payload(MoyasarWebhookPayload, payload, self.name.value)
        metadata = event.data.metadata or {}
        payment_id = metadata.get("paymentId")
        return WebhookEvent(
            id=event.id,
            type=event.type,
            gateway=self.name,
            payment_id=str(payment_id) if payment_id is not None else None,
            gateway_payment_id=event.data.id,
            status=map_status(event.data.status),
            amount=from_minor_units(event.data.amount),
            currency=event.data.currency,
            timestamp=event.created_at,
            raw_payload=event.model_dump(mode="json"),
        )


def build_source_payload(params: CreatePaymentParams) -> dict[str, Any]:
    """
    Render the Moyasar ``source`` object.

    Raises:
        InvalidRequestError: If neither a typed source nor a token id is given
    """
    if params.moyasar_source is not None:
        return params.moyasar_source.to_payload()
    if params.token_id:
        return {"type": "token", "token": params.token_id}
    raise InvalidRequestError(
        "Either moyasar_source or token_id must be provided for Moyasar payments",
        [{"field": "source", "code": "MISSING_PAYMENT_SOURCE"}],
    )


def map_payment_response(payment: dict[str, Any]) -> GatewayPaymentResult:
    """Map a Moyasar payment object to a GatewayPaymentResult."""
    source = payment.get("source") or {}
    # STC Pay returns otp_url, card payments transaction_url
    redirect_url = source.get("transaction_url") or source.get("otp_url")
    return GatewayPaymentResult(
        success=True,
        gateway_id=payment["id"],
        status=map_status(payment.get("status")),
        redirect_url=redirect_url,
        amount=from_minor_units(payment.get("amount")),
        fee=from_minor_units(payment.get("fee")),
        captured_amount=from_minor_units(payment.get("captured")),
        refunded_amount=from_minor_units(payment.get("refunded")),
        raw_response=payment,
    )
