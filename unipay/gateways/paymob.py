"""
Paymob Gateway - Unified Intention API with legacy Accept API fallback.

Flow selection at call time:
    secret_key + public_key  -> Intention API (Token auth)
    api_key only             -> legacy Accept API (auth token, order, payment key)

Capture, void, refund and transaction inquiry always go through the
legacy auth token, cached for 50 minutes. Webhooks are signed with
HMAC-SHA512 over a fixed, ordered list of transaction fields.
"""

import hashlib
import hmac
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx
from structlog import get_logger

from unipay.exceptions import (
    AuthenticationError,
    CardDeclinedError,
    GatewayApiError,
    InvalidWebhookError,
    MissingCredentialsError,
)
from unipay.models.config import PaymobConfig
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
    PaymobWebhookPayload,
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
from unipay.services.status import infer_status
from unipay.services.token_cache import TokenCache

logger = get_logger(__name__)

LEGACY_TOKEN_TTL = 50 * 60

# Lexicographic field order from Paymob's processed-callback HMAC docs
HMAC_FIELDS: tuple[str, ...] = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)

# Boolean fields rendered as "false" when absent
_FLAG_FIELDS = frozenset(
    {
        "error_occured",
        "has_parent_transaction",
        "is_3d_secure",
        "is_auth",
        "is_capture",
        "is_refunded",
        "is_voided",
        "pending",
        "success",
    }
)


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _lookup(obj: Mapping[str, Any], path: str) -> Any:
    value: Any = obj
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def build_hmac_string(obj: Mapping[str, Any]) -> str:
    """Concatenate the HMAC fields of a transaction object with no separator."""
    values: list[str] = []
    for name in HMAC_FIELDS:
        if name == "is_refunded":
            value = obj.get("is_refunded", obj.get("is_refund"))
        elif name == "is_voided":
            value = obj.get("is_voided", obj.get("is_void"))
        elif name == "is_standalone_payment":
            value = obj.get("is_standalone_payment", True)
        else:
            value = _lookup(obj, name)
        if value is None and name in _FLAG_FIELDS:
            value = False
        values.append(_render(value))
    return "".join(values)


def compute_hmac(obj: Mapping[str, Any], secret: str) -> str:
    """Hex HMAC-SHA512 of a transaction object."""
    return hmac.new(
        secret.encode(), build_hmac_string(obj).encode(), hashlib.sha512
    ).hexdigest()


def map_transaction_status(data: Mapping[str, Any]) -> PaymentStatus:
    """Infer status from transaction flags (void, refund, pending, success)."""
    refunded_cents = data.get("refunded_amount_cents")
    captured_cents = data.get("captured_amount") or data.get("amount_cents")
    return infer_status(
        voided=bool(data.get("is_voided") or data.get("is_void")),
        refunded=bool(data.get("is_refunded") or data.get("is_refund")),
        pending=bool(data.get("pending")),
        success=bool(data.get("success")),
        refunded_amount=from_minor_units(refunded_cents) if refunded_cents is not None else None,
        captured_amount=from_minor_units(captured_cents) if captured_cents is not None else None,
    )


def map_status(status: str | None) -> PaymentStatus:
    """Map a Paymob intention status string; unknown values are pending."""
    return {
        "intended": PaymentStatus.PENDING,
        "pending": PaymentStatus.PENDING,
        "paid": PaymentStatus.PAID,
        "success": PaymentStatus.PAID,
        "failed": PaymentStatus.FAILED,
        "voided": PaymentStatus.CANCELLED,
        "refunded": PaymentStatus.REFUNDED,
    }.get((status or "").lower(), PaymentStatus.PENDING)


def describe_error(body: Any) -> str | None:
    if isinstance(body, dict):
        return body.get("message") or body.get("detail")
    return None


def map_error(error: Exception) -> Exception:
    """Narrow a Paymob GatewayApiError by keywords in its message."""
    if not isinstance(error, GatewayApiError) or error.gateway_name != GatewayName.PAYMOB.value:
        return error
    message = error.message.lower()
    if "declined" in message:
        return CardDeclinedError(error.message, error.raw_error)
    if "authentication" in message or error.http_status == 401:
        return AuthenticationError(error.message, error.raw_error)
    return error


def normalize_redirect_url(url: str | None) -> str | None:
    """Give path-less URLs an explicit "/" so Paymob does not rewrite them."""
    if not url:
        return None
    parts = urlsplit(url)
    if not parts.path:
        parts = parts._replace(path="/")
    return urlunsplit(parts)


class PaymobGateway:
    """
    Paymob payment gateway.

    Supports the KSA Unified Intention API and the legacy Accept API.
    """

    name = GatewayName.PAYMOB

    def __init__(
        self,
        config: PaymobConfig,
        hooks: HooksManager,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.hooks = hooks
        self.base_url = config.api_base_url
        self.http = GatewayHttpClient(
            self.name.value,
            self.base_url,
            client=http_client,
            describe_error=describe_error,
        )
        self.tokens = TokenCache(self.name.value, self._fetch_auth_token)

    # ========================================================================
    # Authentication
    # ========================================================================

    async def _fetch_auth_token(self) -> tuple[str, float]:
        api_key = self.config.api_key or self.config.secret_key
        if not api_key:
            raise MissingCredentialsError(self.name.value, "api_key or secret_key")
        response = await self.http.request(
            "POST",
            "/api/auth/tokens",
            json={"api_key": api_key},
            error_message="Failed to authenticate with Paymob",
        )
        return response.body["token"], LEGACY_TOKEN_TTL

    # ========================================================================
    # Payment Creation
    # ========================================================================

    async def create_payment(self, params: Any) -> GatewayPaymentResult:
        """
        Create a payment via the Intention API or, without a key pair, the legacy API.

        Raises:
            MissingCredentialsError: If neither credential set is configured
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
        if self.config.uses_intention_api:
            return await self._create_intention(p)
        if self.config.uses_legacy_api:
            return await self._create_legacy(p)
        raise MissingCredentialsError(
            self.name.value, "secret_key/public_key (Intention API) or api_key (legacy)"
        )

    def _integration_id(self, p: CreatePaymentParams) -> str:
        integration_id = p.paymob_integration_id or self.config.integration_id
        if not integration_id:
            raise MissingCredentialsError(self.name.value, "integration_id")
        return integration_id

    async def _create_intention(self, p: CreatePaymentParams) -> GatewayPaymentResult:
        integration_id = self._integration_id(p)
        meta = p.metadata_value
        body = {
            "amount": to_minor_units(p.amount),
            "currency": p.currency,
            "payment_methods": [int(integration_id)],
            "billing_data": {
                "email": meta("email", "customer@example.com"),
                "first_name": meta("firstName", "Customer"),
                "last_name": meta("lastName", "Name"),
                "phone_number": meta("phone", "+966500000000"),
                "country": meta("country", "SA"),
                "city": meta("city", "Riyadh"),
                "street": meta("street", "NA"),
                "building": meta("building", "NA"),
                "apartment": meta("apartment", "NA"),
                "floor": meta("floor", "NA"),
                "postal_code": meta("postalCode", "00000"),
                "state": meta("state", "NA"),
            },
            # Shows up as merchant_order_id in callbacks
            "special_reference": meta("paymentId") or p.order_id,
            "notification_url": p.callback_url,
            "redirection_url": normalize_redirect_url(p.return_url or p.callback_url),
            # Echoed back in payment_key_claims.extra
            "extras": {
                **(p.metadata or {}),
                "paymentId": meta("paymentId"),
                "tenantId": meta("tenantId"),
                "orderId": meta("orderId") or p.order_id,
            },
        }

        response = await self.http.request(
            "POST",
            "/v1/intention/",
            headers={"Authorization": f"Token {self.config.secret_key}"},
            json=body,
            error_message="Failed to create Paymob intention",
        )
        data = response.body
        redirect_url = data.get("redirect_url") or data.get("checkout_url")
        if not redirect_url and data.get("client_secret"):
            redirect_url = (
                f"{self.base_url}/unifiedcheckout/"
                f"?publicKey={self.config.public_key}&clientSecret={data['client_secret']}"
            )
        logger.info("paymob_intention_created", intention_id=data.get("id"))
        return GatewayPaymentResult(
            success=True,
            gateway_id=str(data["id"]),
            status=PaymentStatus.PENDING,
            redirect_url=redirect_url,
            raw_response=data,
        )

    async def _create_legacy(self, p: CreatePaymentParams) -> GatewayPaymentResult:
        integration_id = self._integration_id(p)
        token = await self.tokens.get()
        amount_cents = to_minor_units(p.amount)
        meta = p.metadata_value

        order = await self.http.request(
            "POST",
            "/api/ecommerce/orders",
            json={
                "auth_token": token,
                "delivery_needed": False,
                "amount_cents": amount_cents,
                "currency": p.currency,
                "merchant_order_id": p.order_id,
                "items": [],
            },
            error_message="Failed to create Paymob order",
        )
        order_data = order.body

        payment_key = await self.http.request(
            "POST",
            "/api/acceptance/payment_keys",
            json={
                "auth_token": token,
                "amount_cents": amount_cents,
                "expiration": 3600,
                "order_id": order_data["id"],
                "billing_data": {
                    "apartment": "NA",
                    "email": meta("email", "customer@example.com"),
                    "floor": "NA",
                    "first_name": meta("firstName", "Customer"),
                    "street": "NA",
                    "building": "NA",
                    "phone_number": meta("phone", "01000000000"),
                    "shipping_method": "NA",
                    "postal_code": "NA",
                    "city": "NA",
                    "country": "NA",
                    "last_name": meta("lastName", "Name"),
                    "state": "NA",
                },
                "currency": p.currency,
                "integration_id": integration_id,
            },
            error_message="Failed to generate Paymob payment key",
        )
        key_data = payment_key.body

        logger.info("paymob_legacy_order_created", order_id=order_data["id"])
        return GatewayPaymentResult(
            success=True,
            gateway_id=str(order_data["id"]),
            status=PaymentStatus.PENDING,
            redirect_url=(
                f"{self.base_url}/api/acceptance/iframes/{integration_id}"
                f"?payment_token={key_data['token']}"
            ),
            raw_response={"order": order_data, "payment_key": key_data},
        )

    # ========================================================================
    # Capture / Void / Refund
    # ========================================================================

    async def capture_payment(self, params: Any) -> GatewayPaymentResult:
        """Capture an authorized transaction."""

        async def executor(p: CaptureParams) -> GatewayPaymentResult:
            token = await self.tokens.get()
            body: dict[str, Any] = {"auth_token": token, "transaction_id": p.gateway_payment_id}
            if p.amount is not None:
                body["amount_cents"] = to_minor_units(p.amount)
            response = await self.http.request(
                "POST",
                "/api/acceptance/capture",
                json=body,
                error_message="Failed to capture Paymob payment",
            )
            data = response.body
            return GatewayPaymentResult(
                success=True,
                gateway_id=str(data.get("id") or p.gateway_payment_id),
                status=PaymentStatus.PAID if data.get("success") else PaymentStatus.PENDING,
                captured_amount=(
                    from_minor_units(data["amount_cents"]) if data.get("amount_cents") else None
                ),
                raw_response=data,
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

    async def void_payment(self, params: Any) -> GatewayPaymentResult:
        """Void a same-day transaction."""

        async def executor(p: VoidParams) -> GatewayPaymentResult:
            token = await self.tokens.get()
            response = await self.http.request(
                "POST",
                "/api/acceptance/void_refund/void",
                json={"auth_token": token, "transaction_id": p.gateway_payment_id},
                error_message="Failed to void Paymob transaction",
            )
            data = response.body
            success = bool(data.get("success"))
            return GatewayPaymentResult(
                success=success,
                gateway_id=str(data.get("id") or p.gateway_payment_id),
                status=PaymentStatus.CANCELLED if success else PaymentStatus.FAILED,
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

    async def refund_payment(self, params: Any) -> GatewayRefundResult:
        """Refund a transaction, fully or partially."""

        async def executor(p: RefundParams) -> GatewayRefundResult:
            token = await self.tokens.get()
            body: dict[str, Any] = {"auth_token": token, "transaction_id": p.gateway_payment_id}
            if p.amount is not None:
                body["amount_cents"] = to_minor_units(p.amount)
            response = await self.http.request(
                "POST",
                "/api/acceptance/void_refund/refund",
                json=body,
                error_message="Failed to refund Paymob payment",
            )
            data = response.body
            return GatewayRefundResult(
                success=True,
                gateway_refund_id=str(data.get("id") or p.gateway_payment_id),
                status=RefundStatus.COMPLETED if data.get("success") else RefundStatus.PENDING,
                total_refunded=(
                    from_minor_units(data["amount_cents"]) if data.get("amount_cents") else None
                ),
                raw_response=data,
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

    # ========================================================================
    # Query Operations
    # ========================================================================

    async def get_payment(self, params: Any) -> GatewayPaymentResult:
        """Transaction inquiry by transaction id."""
        p = validate_params(GetPaymentParams, params, "get_payment")

        async def inquiry() -> GatewayPaymentResult:
            token = await self.tokens.get()
            response = await self.http.request(
                "GET",
                f"/api/acceptance/transactions/{p.gateway_payment_id}",
                headers={"Authorization": f"Bearer {token}"},
                error_message="Failed to retrieve Paymob transaction",
            )
            data = response.body
            success = data.get("success")
            return GatewayPaymentResult(
                success=True if success is None else bool(success),
                gateway_id=str(data.get("id") or p.gateway_payment_id),
                status=map_transaction_status(data),
                amount=(
                    from_minor_units(data["amount_cents"]) if data.get("amount_cents") else None
                ),
                raw_response=data,
            )

        return await call_with_error_mapping(inquiry(), map_error)

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
        Verify the HMAC-SHA512 signature of a processed callback.

        The signature comes from ``signature`` (the ``hmac`` query param) or
        the payload's ``hmac`` field.
        """
        if not self.config.hmac_secret:
            logger.warning("paymob_webhook_verification_skipped", reason="no_hmac_secret")
            return True

        try:
            data = decode_webhook_payload(payload)
        except InvalidWebhookError:
            return False

        received = signature or data.get("hmac")
        obj = data.get("obj")
        if not isinstance(received, str) or not received or not isinstance(obj, Mapping):
            logger.warning("paymob_webhook_missing_signature")
            return False

        # Case-sensitive hex comparison
        expected = compute_hmac(obj, self.config.hmac_secret)
        return hmac.compare_digest(received.encode(), expected.encode())

    def parse_webhook_event(self, payload: Any) -> WebhookEvent:
        """Parse a Paymob transaction callback into a normalized event."""
        event = validate_webhook_payload(PaymobWebhookPayload, payload, self.name.value)
        tx = event.obj
        claims = tx.payment_key_claims.extra if tx.payment_key_claims is not None else None
        payment_id = (claims or {}).get("paymentId") or tx.order.merchant_order_id
        raw_obj = decode_webhook_payload(payload)["obj"]

        return WebhookEvent(
            id=str(tx.id),
            type=event.type,
            gateway=self.name,
            payment_id=str(payment_id) if payment_id is not None else None,
            gateway_payment_id=str(tx.id),
            status=map_transaction_status(raw_obj),
            amount=from_minor_units(tx.amount_cents),
            currency=tx.currency,
            timestamp=tx.created_at or datetime.now(UTC),
            raw_payload=event.model_dump(mode="json"),
        )
