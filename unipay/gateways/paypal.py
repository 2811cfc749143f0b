"""
PayPal Gateway - Orders v2 checkout with OAuth2 client credentials.

Access tokens are cached per gateway instance and refreshed five minutes
before expiry. Order, capture, refund and void calls retry with exponential
backoff on 5xx, 429 and network failures only.
"""

import base64
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import httpx
from structlog import get_logger
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from unipay.exceptions import (
    AuthenticationError,
    CardDeclinedError,
    GatewayApiError,
    InsufficientFundsError,
    InvalidRequestError,
    NetworkError,
    PaymentError,
    RateLimitError,
)
from unipay.models.config import PayPalConfig
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
    PayPalWebhookPayload,
    WebhookEvent,
    decode_webhook_payload,
    validate_webhook_payload,
)
from unipay.money import format_major, parse_major
from unipay.services.hooks import HooksManager
from unipay.services.http import GatewayHttpClient, HttpResponse
from unipay.services.pipeline import (
    call_with_error_mapping,
    execute_with_hooks,
    validate_params,
)
from unipay.services.token_cache import TokenCache

logger = get_logger(__name__)

# Refresh tokens this many seconds before PayPal expires them
TOKEN_REFRESH_MARGIN = 300

WEBHOOK_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)

ORDER_STATUS_MAP: dict[str, PaymentStatus] = {
    "CREATED": PaymentStatus.PENDING,
    "SAVED": PaymentStatus.PENDING,
    "PAYER_ACTION_REQUIRED": PaymentStatus.PENDING,
    "APPROVED": PaymentStatus.AUTHORIZED,
    "VOIDED": PaymentStatus.CANCELLED,
    "COMPLETED": PaymentStatus.PAID,
}

RESOURCE_STATUS_MAP: dict[str, PaymentStatus] = {
    "COMPLETED": PaymentStatus.PAID,
    "DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
    "PARTIALLY_REFUNDED": PaymentStatus.PARTIALLY_REFUNDED,
    "PENDING": PaymentStatus.PENDING,
    "REFUNDED": PaymentStatus.REFUNDED,
}


def map_status(status: str | None) -> PaymentStatus:
    """Map a PayPal order status; unknown values are pending."""
    return ORDER_STATUS_MAP.get(status or "", PaymentStatus.PENDING)


def map_resource_status(status: str | None) -> PaymentStatus:
    """Map a capture/refund resource status from webhooks."""
    return RESOURCE_STATUS_MAP.get(status or "", PaymentStatus.PENDING)


def is_retryable_error(error: BaseException) -> bool:
    """Retry on provider 5xx, 429 and transport failures only."""
    if isinstance(error, GatewayApiError):
        status = error.http_status or 0
        return status >= 500 or status == 429
    return isinstance(error, NetworkError)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "paypal_request_retrying",
        attempt=retry_state.attempt_number,
        error=str(error),
        error_type=type(error).__name__,
    )


def describe_error(body: Any) -> str | None:
    """Build a message from ``message``/``name`` plus detail descriptions."""
    if not isinstance(body, dict):
        return None
    message = body.get("message") or body.get("name")
    if not message:
        return None
    details = body.get("details") or []
    if details:
        descriptions = "; ".join(
            d.get("description") or d.get("issue") or "Unknown issue"
            for d in details
            if isinstance(d, dict)
        )
        message = f"{message}: {descriptions}"
    return message


def map_error(error: Exception) -> Exception:
    """Narrow a PayPal GatewayApiError by error ``name`` and first detail ``issue``."""
    if not isinstance(error, GatewayApiError) or error.gateway_name != GatewayName.PAYPAL.value:
        return error

    raw = error.raw_error if isinstance(error.raw_error, dict) else {}
    name = raw.get("name")
    details = raw.get("details") or [{}]
    issue = (details[0].get("issue") or "") if isinstance(details[0], dict) else ""

    if name == "UNPROCESSABLE_ENTITY":
        if "INSTRUMENT_DECLINED" in issue:
            return CardDeclinedError(error.message, raw)
        if "INSUFFICIENT_FUNDS" in issue:
            return InsufficientFundsError(error.message, raw)
    if name == "RATE_LIMIT_REACHED":
        return RateLimitError(GatewayName.PAYPAL.value)
    if name == "INVALID_REQUEST":
        return InvalidRequestError(error.message, [raw])
    if name == "AUTHENTICATION_FAILURE" or raw.get("error") == "invalid_client":
        return AuthenticationError(error.message, raw)
    return error


def _first_capture(order: dict[str, Any]) -> dict[str, Any] | None:
    units = order.get("purchase_units") or []
    if not units:
        return None
    captures = (units[0].get("payments") or {}).get("captures") or []
    return captures[0] if captures else None


class PayPalGateway:
    """
    PayPal payment gateway.

    Refunds take the CAPTURE id (returned as ``captureId`` in the capture
    result's raw response), voids take the AUTHORIZATION id.
    """

    name = GatewayName.PAYPAL

    def __init__(
        self,
        config: PayPalConfig,
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
        self.tokens = TokenCache(self.name.value, self._fetch_access_token)

    # ========================================================================
    # Authentication
    # ========================================================================

    async def _fetch_access_token(self) -> tuple[str, float]:
        credentials = base64.b64encode(
            f"{self.config.client_id}:{self.config.client_secret}".encode()
        ).decode()
        response = await self.http.request(
            "POST",
            "/v1/oauth2/token",
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Authorization": f"Basic {credentials}",
            },
            data="grant_type=client_credentials",
            error_message="Failed to get PayPal access token",
        )
        data = response.body
        return data["access_token"], float(data.get("expires_in", 0)) - TOKEN_REFRESH_MARGIN

    async def _auth_headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        token = await self.tokens.get()
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {token}"}
        if extra:
            headers.update(extra)
        return headers

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=_log_retry,
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        """Authenticated request with bounded retry (token fetch included)."""
        return await self.http.request(
            method, path, headers=await self._auth_headers(headers), json=json
        )

    # ========================================================================
    # Payment Operations
    # ========================================================================

    async def create_payment(self, params: Any) -> GatewayPaymentResult:
        """
        Create a PayPal order.

        Returns:
            Result whose ``redirect_url`` is the buyer approval link
        """
        return await execute_with_hooks(
            self.hooks,
            gateway=self.name,
            operation=OperationType.CREATE_PAYMENT,
            params=params,
            executor=self._create_order,
            map_error=map_error,
            schema=CreatePaymentParams,
        )

    async def _create_order(self, p: CreatePaymentParams) -> GatewayPaymentResult:
        purchase_unit: dict[str, Any] = {
            "reference_id": p.order_id,
            "description": p.description,
            "custom_id": p.metadata_value("paymentId"),
            "amount": {"currency_code": p.currency, "value": format_major(p.amount)},
        }
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{k: v for k, v in purchase_unit.items() if v is not None}],
            "application_context": {
                "return_url": p.return_url or p.callback_url,
                "cancel_url": p.cancel_url or p.callback_url,
                "user_action": "PAY_NOW",
            },
        }
        headers = {"PayPal-Request-Id": p.idempotency_key} if p.idempotency_key else None

        response = await self._request("POST", "/v2/checkout/orders", json=body, headers=headers)
        order = response.body
        approval = next(
            (link["href"] for link in order.get("links") or [] if link.get("rel") == "approve"),
            None,
        )
        logger.info("paypal_order_created", order_id=order["id"], status=order.get("status"))
        return GatewayPaymentResult(
            success=True,
            gateway_id=order["id"],
            status=map_status(order.get("status")),
            redirect_url=approval,
            raw_response=order,
        )

    async def capture_payment(self, params: Any) -> GatewayPaymentResult:
        """Capture an approved order."""

        async def executor(p: CaptureParams) -> GatewayPaymentResult:
            response = await self._request(
                "POST", f"/v2/checkout/orders/{p.gateway_payment_id}/capture"
            )
            order = response.body
            capture = _first_capture(order)
            logger.info(
                "paypal_order_captured",
                order_id=order["id"],
                capture_id=capture.get("id") if capture else None,
            )
            return GatewayPaymentResult(
                success=True,
                gateway_id=order["id"],
                status=map_status(order.get("status")),
                amount=parse_major(capture["amount"]["value"]) if capture else None,
                raw_response={**order, "captureId": capture.get("id") if capture else None},
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
        """
        Refund a captured payment by capture id.

        Raises:
            InvalidRequestError: If an amount is given without a currency
        """

        async def executor(p: RefundParams) -> GatewayRefundResult:
            body: dict[str, Any] = {}
            if p.amount is not None:
                if not p.currency:
                    raise InvalidRequestError(
                        "currency is required for partial PayPal refunds",
                        [{"field": "currency", "message": "required when amount is set"}],
                    )
                body["amount"] = {"value": format_major(p.amount), "currency_code": p.currency}
            if p.reason:
                body["note_to_payer"] = p.reason

            response = await self._request(
                "POST",
                f"/v2/payments/captures/{p.gateway_payment_id}/refund",
                json=body or None,
            )
            refund = response.body
            amount = (refund.get("amount") or {}).get("value")
            return GatewayRefundResult(
                success=True,
                gateway_refund_id=refund["id"],
                status=(
                    RefundStatus.COMPLETED
                    if refund.get("status") == "COMPLETED"
                    else RefundStatus.PENDING
                ),
                total_refunded=parse_major(amount) if amount is not None else None,
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
        """Void an authorization (orders created with intent AUTHORIZE)."""

        async def executor(p: VoidParams) -> GatewayPaymentResult:
            response = await self._request(
                "POST", f"/v2/payments/authorizations/{p.gateway_payment_id}/void"
            )
            # 204 No Content on success
            if response.status_code == 204 or response.body is None:
                return GatewayPaymentResult(
                    success=True,
                    gateway_id=p.gateway_payment_id,
                    status=PaymentStatus.CANCELLED,
                    raw_response=None,
                )
            data = response.body
            return GatewayPaymentResult(
                success=True,
                gateway_id=data.get("id") or p.gateway_payment_id,
                status=map_status(data.get("status") or "VOIDED"),
                raw_response=data,
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
        """Retrieve order details by id."""
        p = validate_params(GetPaymentParams, params, "get_payment")
        # Reads are not retried
        response = await call_with_error_mapping(
            self.http.request(
                "GET",
                f"/v2/checkout/orders/{p.gateway_payment_id}",
                headers=await self._auth_headers(),
                error_message="Failed to get PayPal order",
            ),
            map_error,
        )
        order = response.body
        capture = _first_capture(order)
        return GatewayPaymentResult(
            success=True,
            gateway_id=order["id"],
            status=map_status(order.get("status")),
            amount=parse_major(capture["amount"]["value"]) if capture else None,
            raw_response=order,
        )

    async def get_payment_status(self, gateway_payment_id: str) -> PaymentStatus:
        result = await self.get_payment(GetPaymentParams(gateway_payment_id=gateway_payment_id))
        return result.status

    # ========================================================================
    # Webhook Handling
    # ========================================================================

    def _webhook_headers(
        self, signature: str | None, headers: Mapping[str, str] | None
    ) -> dict[str, str] | None:
        """Collect the five transmission headers, or None if any is missing."""
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        if signature:
            lowered["paypal-transmission-sig"] = signature
        collected = {name: lowered.get(name) for name in WEBHOOK_HEADERS}
        if not all(collected.values()):
            return None
        return {k: v for k, v in collected.items() if v}

    def verify_webhook(
        self,
        payload: Any,
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """
        Check that the transmission headers are present.

        PayPal signatures can only be verified through its API; use
        ``verify_webhook_async`` for real verification.
        """
        if not self.config.webhook_id:
            logger.warning("paypal_webhook_verification_skipped", reason="no_webhook_id")
            return True

        if self._webhook_headers(signature, headers) is None:
            logger.warning("paypal_webhook_missing_headers")
            return False

        logger.warning(
            "paypal_webhook_sync_verification_unsupported",
            hint="use verify_webhook_async",
        )
        return True

    async def verify_webhook_async(
        self,
        payload: Any,
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """
        Verify a webhook through PayPal's verify-webhook-signature API.

        Returns:
            True only when PayPal reports SUCCESS
        """
        if not self.config.webhook_id:
            logger.warning("paypal_webhook_verification_skipped", reason="no_webhook_id")
            return True

        collected = self._webhook_headers(signature, headers)
        if collected is None:
            logger.warning("paypal_webhook_missing_headers")
            return False

        try:
            event = decode_webhook_payload(payload)
            response = await self.http.request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                headers=await self._auth_headers(),
                json={
                    "auth_algo": collected["paypal-auth-algo"],
                    "cert_url": collected["paypal-cert-url"],
                    "transmission_id": collected["paypal-transmission-id"],
                    "transmission_sig": collected["paypal-transmission-sig"],
                    "transmission_time": collected["paypal-transmission-time"],
                    "webhook_id": self.config.webhook_id,
                    "webhook_event": event,
                },
                raise_for_status=False,
            )
        except PaymentError as exc:
            logger.error("paypal_webhook_verification_error", error=str(exc))
            return False

        if not response.ok:
            logger.error("paypal_webhook_verification_api_error", status=response.status_code)
            return False
        body = response.body if isinstance(response.body, dict) else {}
        return body.get("verification_status") == "SUCCESS"

    def parse_webhook_event(self, payload: Any) -> WebhookEvent:
        """Parse a PayPal webhook into a normalized event."""
        event = validate_webhook_payload(PayPalWebhookPayload, payload, self.name.value)
        resource = event.resource
        units = resource.purchase_units or []
        first_unit = units[0] if units else None

        payment_id = resource.custom_id or (first_unit.custom_id if first_unit else None)
        related = (
            resource.supplementary_data.related_ids
            if resource.supplementary_data is not None
            else None
        )
        capture_id = related.capture_id if related is not None else None
        if capture_id is None and first_unit is not None and first_unit.payments is not None:
            captures = first_unit.payments.captures
            capture_id = captures[0].id if captures else None

        return WebhookEvent(
            id=event.id,
            type=event.event_type,
            gateway=self.name,
            payment_id=payment_id,
            gateway_payment_id=capture_id or resource.id,
            status=map_resource_status(resource.status),
            amount=parse_major(resource.amount.value) if resource.amount else parse_major(0),
            currency=resource.amount.currency_code if resource.amount else "USD",
            timestamp=event.create_time or datetime.now(UTC),
            raw_payload=event.model_dump(mode="json"),
        )
