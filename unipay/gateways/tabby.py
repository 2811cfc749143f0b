"""
Tabby Gateway - Buy Now Pay Later via hosted checkout sessions.

Tabby is redirect-only: ``create_payment`` opens a checkout session and
returns the installments ``web_url``. Authorized payments must be captured
explicitly; ``void_payment`` closes the payment. Amounts are major-unit
decimal strings on the wire.
"""

import hmac
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx
from structlog import get_logger

from unipay.exceptions import (
    AuthenticationError,
    GatewayApiError,
    InvalidRequestError,
    PaymentError,
)
from unipay.models.config import TabbyConfig
from unipay.models.payment import (
    CreatePaymentParams,
    GatewayName,
    GatewayPaymentResult,
    GatewayRefundResult,
    GetPaymentParams,
    OperationType,
    PaymentStatus,
    RefundStatus,
    VoidParams,
)
from unipay.models.tabby import (
    TabbyCaptureParams,
    TabbyCheckoutSessionParams,
    TabbyEligibility,
    TabbyRefundParams,
)
from unipay.models.webhook import TabbyWebhookPayload, WebhookEvent, validate_webhook_payload
from unipay.money import format_major, parse_major
from unipay.services.hooks import HooksManager
from unipay.services.http import GatewayHttpClient, HttpResponse
from unipay.services.pipeline import (
    call_with_error_mapping,
    execute_with_hooks,
    validate_params,
)
from unipay.services.status import refund_status

logger = get_logger(__name__)

STATUS_MAP: dict[str, PaymentStatus] = {
    "CREATED": PaymentStatus.PENDING,
    "AUTHORIZED": PaymentStatus.AUTHORIZED,
    "CLOSED": PaymentStatus.PAID,
    "REJECTED": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.CANCELLED,
}

# Placeholder buyer used when create_payment gets no buyer metadata
DEFAULT_BUYER = {
    "name": "Customer",
    "email": "customer@example.com",
    "phone": "500000000",
}


def map_status(status: str | None) -> PaymentStatus:
    """Map a Tabby API payment status (upper case); unknown values are pending."""
    return STATUS_MAP.get((status or "").upper(), PaymentStatus.PENDING)


def sum_amounts(records: Iterable[Any] | None) -> Decimal:
    """Sum ``amount`` strings of capture or refund records."""
    total = Decimal("0")
    for record in records or ():
        amount = record.get("amount") if isinstance(record, Mapping) else record.amount
        total += parse_major(amount)
    return total


def describe_error(body: Any) -> str | None:
    if isinstance(body, dict):
        return body.get("error") or "Tabby API error"
    return None


def map_error(error: Exception) -> Exception:
    """Narrow a Tabby GatewayApiError by ``errorType``."""
    if not isinstance(error, GatewayApiError) or error.gateway_name != GatewayName.TABBY.value:
        return error

    raw = error.raw_error if isinstance(error.raw_error, dict) else {}
    error_type = raw.get("errorType")
    message = raw.get("error") or error.message

    if error_type == "unauthorized":
        return AuthenticationError(message, raw)
    if error_type in ("invalid_request_error", "bad_data"):
        return InvalidRequestError(message, [raw])
    return error


def map_webhook_status(payload: TabbyWebhookPayload) -> PaymentStatus:
    """
    Status for a webhook (lower-case statuses).

    A closed payment with refunds is refunded or partially refunded by
    comparing refund and capture sums.
    """
    status = payload.status.lower()
    if status == "authorized":
        return PaymentStatus.AUTHORIZED
    if status == "closed":
        if payload.refunds:
            return refund_status(sum_amounts(payload.refunds), sum_amounts(payload.captures))
        return PaymentStatus.PAID
    if status == "rejected":
        return PaymentStatus.FAILED
    if status == "expired":
        return PaymentStatus.CANCELLED
    return PaymentStatus.PENDING


class TabbyGateway:
    """
    Tabby BNPL gateway.

    Implements the PaymentGateway protocol plus ``create_checkout_session``
    and ``check_eligibility``.
    """

    name = GatewayName.TABBY

    def __init__(
        self,
        config: TabbyConfig,
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
        self, method: str, path: str, body: Mapping[str, Any] | None = None
    ) -> HttpResponse:
        headers = {
            "Authorization": f"Bearer {self.config.secret_key}",
            "Content-Type": "application/json",
        }
        return await self.http.request(
            method,
            path,
            headers=headers,
            json=body if method in ("POST", "PUT") else None,
        )

    # ========================================================================
    # Checkout
    # ========================================================================

    async def create_payment(self, params: Any) -> GatewayPaymentResult:
        """
        Create a payment through a minimal one-item checkout session.

        Buyer details come from ``buyerName``/``buyerEmail``/``buyerPhone``
        metadata, falling back to placeholders. Use
        ``create_checkout_session`` to send a real cart.
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
        amount = format_major(p.amount)
        session = validate_params(
            TabbyCheckoutSessionParams,
            {
                "amount": amount,
                "currency": p.currency,
                "description": p.description,
                "buyer": {
                    "name": p.metadata_value("buyerName", DEFAULT_BUYER["name"]),
                    "email": p.metadata_value("buyerEmail", DEFAULT_BUYER["email"]),
                    "phone": p.metadata_value("buyerPhone", DEFAULT_BUYER["phone"]),
                },
                "order": {
                    "reference_id": (
                        p.order_id or p.idempotency_key or f"order_{uuid4().hex[:16]}"
                    ),
                    "items": [
                        {
                            "reference_id": "item_1",
                            "title": p.description or "Payment",
                            "quantity": 1,
                            "unit_price": amount,
                        }
                    ],
                },
                "merchant_urls": {
                    "success": p.callback_url,
                    "cancel": p.cancel_url or p.callback_url,
                    "failure": p.callback_url,
                },
                "lang": "en",
                "meta": p.metadata,
                "idempotency_key": p.idempotency_key,
            },
            OperationType.CREATE_PAYMENT,
        )
        response = await self._post_checkout(session)
        payment = response.get("payment") or {}
        return GatewayPaymentResult(
            success=response.get("status") == "created",
            gateway_id=payment.get("id", ""),
            status=map_status(payment.get("status")),
            redirect_url=installments_url(response),
            amount=parse_major(payment.get("amount")),
            raw_response=response,
        )

    async def create_checkout_session(self, params: Any) -> dict[str, Any]:
        """
        Create a checkout session with full cart data.

        Returns:
            The raw Tabby session response

        Raises:
            InvalidRequestError: If params fail validation
        """
        session = validate_params(
            TabbyCheckoutSessionParams, params, OperationType.CREATE_CHECKOUT_SESSION
        )
        return await call_with_error_mapping(self._post_checkout(session), map_error)

    async def _post_checkout(self, session: TabbyCheckoutSessionParams) -> dict[str, Any]:
        body = {
            "payment": {
                "amount": session.amount,
                "currency": session.currency,
                "description": session.description,
                "buyer": session.buyer.model_dump(exclude_none=True),
                "shipping_address": (
                    session.shipping_address.model_dump()
                    if session.shipping_address
                    else None
                ),
                "order": session.order.model_dump(exclude_none=True),
                "meta": session.meta,
            },
            "lang": session.lang or "en",
            "merchant_code": self.config.merchant_code,
            "merchant_urls": session.merchant_urls.model_dump(),
        }
        response = await self._request("POST", "/api/v2/checkout", body)
        logger.info(
            "tabby_checkout_created",
            session_id=response.body.get("id"),
            status=response.body.get("status"),
        )
        return response.body

    async def check_eligibility(self, params: Any) -> TabbyEligibility:
        """
        Pre-score a buyer before offering Tabby.

        Failures are reported as ineligible rather than raised.
        """
        try:
            response = await self.create_checkout_session(params)
        except PaymentError as exc:
            logger.info("tabby_eligibility_check_failed", error=exc.message)
            return TabbyEligibility(eligible=False, rejection_reason=exc.message)

        if response.get("status") == "created":
            return TabbyEligibility(eligible=True, session_id=response.get("id"))

        products = (response.get("configuration") or {}).get("products") or {}
        reason = (products.get("installments") or {}).get("rejection_reason")
        return TabbyEligibility(
            eligible=False,
            rejection_reason=reason or "not_available",
            session_id=response.get("id"),
        )

    # ========================================================================
    # Payment Operations
    # ========================================================================

    async def capture_payment(self, params: Any) -> GatewayPaymentResult:
        """Capture an authorized payment; Tabby requires this after approval."""

        async def executor(p: TabbyCaptureParams) -> GatewayPaymentResult:
            body: dict[str, Any] = {}
            if p.amount is not None:
                body["amount"] = format_major(p.amount)
            if p.reference_id:
                body["reference_id"] = p.reference_id
            if p.tax_amount:
                body["tax_amount"] = p.tax_amount
            if p.shipping_amount:
                body["shipping_amount"] = p.shipping_amount
            if p.discount_amount:
                body["discount_amount"] = p.discount_amount
            if p.items:
                body["items"] = [item.model_dump(exclude_none=True) for item in p.items]

            response = await self._request(
                "POST", f"/api/v2/payments/{p.gateway_payment_id}/captures", body
            )
            payment = response.body
            return GatewayPaymentResult(
                success=True,
                gateway_id=payment["id"],
                status=map_status(payment.get("status")),
                amount=parse_major(payment.get("amount")),
                captured_amount=sum_amounts(payment.get("captures")),
                raw_response=payment,
            )

        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.CAPTURE_PAYMENT,
            params=params,
            executor=executor,
            map_error=map_error,
            schema=TabbyCaptureParams,
        )

    async def refund_payment(self, params: Any) -> GatewayRefundResult:
        """Refund a closed payment, fully or partially."""

        async def executor(p: TabbyRefundParams) -> GatewayRefundResult:
            body: dict[str, Any] = {}
            if p.amount is not None:
                body["amount"] = format_major(p.amount)
            if p.reason:
                body["reason"] = p.reason
            if p.reference_id:
                body["reference_id"] = p.reference_id
            if p.items:
                body["items"] = [item.model_dump(exclude_none=True) for item in p.items]

            response = await self._request(
                "POST", f"/api/v2/payments/{p.gateway_payment_id}/refunds", body
            )
            payment = response.body
            refunds = payment.get("refunds") or []
            latest = refunds[-1] if refunds else {}
            return GatewayRefundResult(
                success=True,
                gateway_refund_id=latest.get("id") or payment["id"],
                status=RefundStatus.COMPLETED,
                total_refunded=sum_amounts(refunds),
                raw_response=payment,
            )

        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.REFUND_PAYMENT,
            params=params,
            executor=executor,
            map_error=map_error,
            schema=TabbyRefundParams,
        )

    async def void_payment(self, params: Any) -> GatewayPaymentResult:
        """Close a payment, cancelling any uncaptured remainder."""

        async def executor(p: VoidParams) -> GatewayPaymentResult:
            response = await self._request(
                "POST", f"/api/v2/payments/{p.gateway_payment_id}/close"
            )
            payment = response.body
            return GatewayPaymentResult(
                success=True,
                gateway_id=payment["id"],
                status=map_status(payment.get("status")),
                amount=parse_major(payment.get("amount")),
                raw_response=payment,
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

    # ========================================================================
    # Query Operations
    # ========================================================================

    async def get_payment(self, params: Any) -> GatewayPaymentResult:
        """Retrieve a payment with capture and refund totals."""
        p = validate_params(GetPaymentParams, params, "get_payment")
        response = await call_with_error_mapping(
            self._request("GET", f"/api/v2/payments/{p.gateway_payment_id}"), map_error
        )
        payment = response.body
        return GatewayPaymentResult(
            success=True,
            gateway_id=payment["id"],
            status=map_status(payment.get("status")),
            amount=parse_major(payment.get("amount")),
            captured_amount=sum_amounts(payment.get("captures")),
            refunded_amount=sum_amounts(payment.get("refunds")),
            raw_response=payment,
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
        Compare the configured auth header value with the delivered one.

        Tabby does not sign webhooks. The value is read from ``signature``,
        then the ``Authorization`` or ``X-Tabby-Auth`` header.
        """
        lowered = {k.lower(): v for k, v in (headers or {}).items()}

        if self.config.webhook_auth_header:
            delivered = signature or lowered.get("authorization") or lowered.get("x-tabby-auth")
            if not delivered:
                logger.warning("tabby_webhook_missing_auth_header")
                return False
            if not hmac.compare_digest(
                delivered.encode(), self.config.webhook_auth_header.encode()
            ):
                logger.warning("tabby_webhook_auth_header_mismatch")
                return False
        else:
            logger.warning("tabby_webhook_verification_skipped", reason="no_webhook_auth_header")

        source_ip = lowered.get("x-forwarded-for") or lowered.get("x-real-ip")
        if source_ip:
            # Tabby publishes its webhook IP ranges for allow-listing
            logger.info("tabby_webhook_source_ip", source_ip=source_ip)
        return True

    def parse_webhook_event(self, payload: Any) -> WebhookEvent:
        """Parse a Tabby payment webhook into a normalized event."""
        event = validate_webhook_payload(TabbyWebhookPayload, payload, self.name.value)

        event_type = f"payment.{event.status.lower()}"
        if event.captures and event.status.lower() == "authorized":
            event_type = "payment.captured"
        if event.refunds:
            event_type = "payment.refunded"

        payment_id = (event.meta or {}).get("paymentId")
        return WebhookEvent(
            id=event.id,
            type=event_type,
            gateway=self.name,
            payment_id=str(payment_id) if payment_id is not None else None,
            gateway_payment_id=event.id,
            status=map_webhook_status(event),
            amount=parse_major(event.amount),
            currency=event.currency,
            timestamp=event.created_at,
            raw_payload=event.model_dump(mode="json"),
        )


def installments_url(session: Mapping[str, Any]) -> str | None:
    """First installments product ``web_url`` of a checkout session."""
    products = (session.get("configuration") or {}).get("available_products") or {}
    installments = products.get("installments") or []
    if installments and isinstance(installments[0], Mapping):
        return installments[0].get("web_url")
    return None
