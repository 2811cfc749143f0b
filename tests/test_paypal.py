"""
Tests for the PayPal gateway.

Covers the cached OAuth token, bounded retry, refunds and webhooks.
"""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

from unipay.exceptions import (
    AuthenticationError,
    CardDeclinedError,
    GatewayApiError,
    InsufficientFundsError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
)
from unipay.gateways.paypal import (
    PayPalGateway,
    describe_error,
    is_retryable_error,
    map_error,
    map_resource_status,
    map_status,
)
from unipay.models.payment import GatewayName, PaymentStatus, RefundStatus

TOKEN = "/v1/oauth2/token"
ORDERS = "/v2/checkout/orders"
VERIFY = "/v1/notifications/verify-webhook-signature"

TRANSMISSION_HEADERS = {
    "PayPal-Transmission-Id": "tx-1",
    "PayPal-Transmission-Time": "2024-05-01T10:00:00Z",
    "PayPal-Transmission-Sig": "sig",
    "PayPal-Cert-Url": "https://api.paypal.com/cert.pem",
    "PayPal-Auth-Algo": "SHA256withRSA",
}


def order(status="CREATED", **overrides):
    body = {
        "id": "ORDER-1",
        "status": status,
        "links": [
            {"rel": "self", "href": "https://api.paypal.com/v2/checkout/orders/ORDER-1"},
            {"rel": "approve", "href": "https://www.paypal.com/checkoutnow?token=ORDER-1"},
        ],
    }
    body.update(overrides)
    return body


def captured_order():
    return order(
        status="COMPLETED",
        purchase_units=[
            {
                "reference_id": "order-1",
                "payments": {
                    "captures": [
                        {
                            "id": "CAPTURE-1",
                            "status": "COMPLETED",
                            "amount": {"currency_code": "USD", "value": "100.00"},
                        }
                    ]
                },
            }
        ],
    )


def webhook_payload():
    return {
        "id": "WH-EVT-1",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "create_time": "2024-05-01T10:00:00Z",
        "resource_type": "capture",
        "resource": {
            "id": "CAPTURE-1",
            "status": "COMPLETED",
            "amount": {"currency_code": "USD", "value": "100.00"},
            "custom_id": "pay_internal_1",
            "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
        },
    }


@pytest.fixture
def no_retry_wait(monkeypatch):
    """Make the retry backoff instantaneous."""
    monkeypatch.setattr(PayPalGateway._request.retry, "wait", wait_none())


@pytest.fixture
def gateway(paypal_config, hooks, http_client, recorder, no_retry_wait):
    recorder.json("POST", TOKEN, {"access_token": "A21AA-token", "expires_in": 32400})
    return PayPalGateway(paypal_config, hooks, http_client=http_client)


class TestStatusMapping:
    """Tests for order and resource status maps."""

    @pytest.mark.parametrize(
        "status, expected",
        [
            ("CREATED", PaymentStatus.PENDING),
            ("SAVED", PaymentStatus.PENDING),
            ("PAYER_ACTION_REQUIRED", PaymentStatus.PENDING),
            ("APPROVED", PaymentStatus.AUTHORIZED),
            ("VOIDED", PaymentStatus.CANCELLED),
            ("COMPLETED", PaymentStatus.PAID),
            ("SOMETHING_ELSE", PaymentStatus.PENDING),
            (None, PaymentStatus.PENDING),
        ],
    )
    def test_order_status(self, status, expected):
        assert map_status(status) is expected

    def test_resource_status(self):
        assert map_resource_status("PARTIALLY_REFUNDED") is PaymentStatus.PARTIALLY_REFUNDED
        assert map_resource_status("DECLINED") is PaymentStatus.FAILED


class TestErrorMapping:
    """Tests for describe_error / map_error / is_retryable_error."""

    def test_describe_error_with_details(self):
        body = {
            "name": "UNPROCESSABLE_ENTITY",
            "message": "The requested action could not be performed",
            "details": [{"issue": "INSTRUMENT_DECLINED", "description": "Declined"}],
        }
        assert describe_error(body) == "The requested action could not be performed: Declined"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (
                {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "INSTRUMENT_DECLINED"}]},
                CardDeclinedError,
            ),
            (
                {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "INSUFFICIENT_FUNDS"}]},
                InsufficientFundsError,
            ),
            ({"name": "RATE_LIMIT_REACHED"}, RateLimitError),
            ({"name": "INVALID_REQUEST"}, InvalidRequestError),
            ({"name": "AUTHENTICATION_FAILURE"}, AuthenticationError),
            ({"error": "invalid_client"}, AuthenticationError),
        ],
    )
    def test_map_error(self, raw, expected):
        mapped = map_error(GatewayApiError("failed", "paypal", raw_error=raw, http_status=422))
        assert isinstance(mapped, expected)

    def test_unknown_error_passes_through(self):
        error = GatewayApiError("failed", "paypal", raw_error={"name": "INTERNAL"}, http_status=500)
        assert map_error(error) is error

    @pytest.mark.parametrize(
        "error, retryable",
        [
            (GatewayApiError("x", "paypal", http_status=500), True),
            (GatewayApiError("x", "paypal", http_status=503), True),
            (GatewayApiError("x", "paypal", http_status=429), True),
            (GatewayApiError("x", "paypal", http_status=400), False),
            (GatewayApiError("x", "paypal", http_status=422), False),
            (NetworkError(), True),
            (InvalidRequestError("x"), False),
        ],
    )
    def test_is_retryable(self, error, retryable):
        assert is_retryable_error(error) is retryable


class TestAccessToken:
    """Tests for OAuth token caching."""

    @pytest.mark.asyncio
    async def test_token_fetched_once_for_three_creates(self, gateway, recorder, create_params):
        recorder.json("POST", ORDERS, order(), status_code=201)

        for _ in range(3):
            await gateway.create_payment(create_params)

        assert len(recorder.calls(TOKEN)) == 1
        assert len(recorder.calls(ORDERS)) == 3
        for request in recorder.calls(ORDERS):
            assert request.headers["Authorization"] == "Bearer A21AA-token"

    @pytest.mark.asyncio
    async def test_concurrent_creates_share_token_fetch(self, gateway, recorder, create_params):
        recorder.json("POST", ORDERS, order(), status_code=201)

        await asyncio.gather(*(gateway.create_payment(create_params) for _ in range(3)))

        assert len(recorder.calls(TOKEN)) == 1

    @pytest.mark.asyncio
    async def test_token_request_uses_basic_auth(self, gateway, recorder, create_params):
        recorder.json("POST", ORDERS, order(), status_code=201)
        await gateway.create_payment(create_params)

        (token_request,) = recorder.calls(TOKEN)
        assert token_request.headers["Authorization"].startswith("Basic ")
        assert token_request.content == b"grant_type=client_credentials"


class TestRetry:
    """Tests for bounded retry."""

    @pytest.mark.asyncio
    async def test_retries_503_then_succeeds(self, gateway, recorder, create_params):
        recorder.add(
            "POST",
            ORDERS,
            httpx.Response(503, json={"name": "INTERNAL_SERVICE_ERROR"}),
            httpx.Response(201, json=order()),
        )

        result = await gateway.create_payment(create_params)

        assert result.gateway_id == "ORDER-1"
        assert len(recorder.calls(ORDERS)) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, gateway, recorder, create_params):
        recorder.json("POST", ORDERS, {"name": "INTERNAL_SERVICE_ERROR"}, status_code=503)

        with pytest.raises(GatewayApiError) as exc_info:
            await gateway.create_payment(create_params)

        assert exc_info.value.http_status == 503
        assert len(recorder.calls(ORDERS)) == 3

    @pytest.mark.asyncio
    async def test_no_retry_on_400(self, gateway, recorder, create_params):
        recorder.json(
            "POST",
            ORDERS,
            {"name": "INVALID_REQUEST", "message": "Request is not well-formed"},
            status_code=400,
        )

        with pytest.raises(InvalidRequestError):
            await gateway.create_payment(create_params)

        assert len(recorder.calls(ORDERS)) == 1


class TestCreatePayment:
    """Tests for order creation."""

    @pytest.mark.asyncio
    async def test_order_body_and_approval_link(self, gateway, recorder, create_params):
        recorder.json("POST", ORDERS, order(), status_code=201)

        result = await gateway.create_payment({**create_params, "idempotencyKey": "idem-1"})

        assert result.status is PaymentStatus.PENDING
        assert result.redirect_url == "https://www.paypal.com/checkoutnow?token=ORDER-1"

        (request,) = recorder.calls(ORDERS)
        body = json.loads(request.content)
        unit = body["purchase_units"][0]
        assert body["intent"] == "CAPTURE"
        assert unit["amount"] == {"currency_code": "SAR", "value": "100.00"}
        assert unit["custom_id"] == "pay_internal_1"
        assert unit["reference_id"] == "order-1"
        assert body["application_context"]["return_url"] == create_params["callbackUrl"]
        assert request.headers["PayPal-Request-Id"] == "idem-1"


class TestLifecycle:
    """Tests for capture, refund, void and lookup."""

    @pytest.mark.asyncio
    async def test_capture_exposes_capture_id(self, gateway, recorder):
        recorder.json("POST", f"{ORDERS}/ORDER-1/capture", captured_order(), status_code=201)

        result = await gateway.capture_payment({"gatewayPaymentId": "ORDER-1"})

        assert result.status is PaymentStatus.PAID
        assert result.amount == Decimal("100.00")
        assert result.raw_response["captureId"] == "CAPTURE-1"

    @pytest.mark.asyncio
    async def test_partial_refund_without_currency_fails_locally(self, gateway, recorder):
        with pytest.raises(InvalidRequestError, match="currency"):
            await gateway.refund_payment({"gatewayPaymentId": "CAPTURE-1", "amount": "10.00"})
        assert recorder.call_count == 0

    @pytest.mark.asyncio
    async def test_partial_refund(self, gateway, recorder):
        path = "/v2/payments/captures/CAPTURE-1/refund"
        recorder.json(
            "POST",
            path,
            {"id": "REFUND-1", "status": "COMPLETED", "amount": {"value": "10.00"}},
            status_code=201,
        )

        result = await gateway.refund_payment(
            {"gatewayPaymentId": "CAPTURE-1", "amount": "10", "currency": "USD", "reason": "dup"}
        )

        assert result.gateway_refund_id == "REFUND-1"
        assert result.status is RefundStatus.COMPLETED
        assert result.total_refunded == Decimal("10.00")
        (request,) = recorder.calls(path)
        assert json.loads(request.content) == {
            "amount": {"value": "10.00", "currency_code": "USD"},
            "note_to_payer": "dup",
        }

    @pytest.mark.asyncio
    async def test_full_refund_sends_no_body(self, gateway, recorder):
        path = "/v2/payments/captures/CAPTURE-1/refund"
        recorder.json("POST", path, {"id": "REFUND-1", "status": "PENDING"}, status_code=201)

        result = await gateway.refund_payment({"gatewayPaymentId": "CAPTURE-1"})

        assert result.status is RefundStatus.PENDING
        assert result.total_refunded is None
        (request,) = recorder.calls(path)
        assert request.content == b""

    @pytest.mark.asyncio
    async def test_void_204_is_cancelled(self, gateway, recorder):
        recorder.add("POST", "/v2/payments/authorizations/AUTH-1/void", httpx.Response(204))

        result = await gateway.void_payment({"gatewayPaymentId": "AUTH-1"})

        assert result.success is True
        assert result.gateway_id == "AUTH-1"
        assert result.status is PaymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_get_payment_status(self, gateway, recorder):
        recorder.json("GET", f"{ORDERS}/ORDER-1", order(status="APPROVED"))
        assert await gateway.get_payment_status("ORDER-1") is PaymentStatus.AUTHORIZED

    @pytest.mark.asyncio
    async def test_get_payment_is_not_retried(self, gateway, recorder):
        recorder.json("GET", f"{ORDERS}/ORDER-1", {"name": "INTERNAL_SERVICE_ERROR"}, 503)

        with pytest.raises(GatewayApiError) as exc_info:
            await gateway.get_payment({"gatewayPaymentId": "ORDER-1"})

        assert exc_info.value.http_status == 503
        assert len(recorder.calls(f"{ORDERS}/ORDER-1")) == 1


class TestWebhooks:
    """Tests for webhook verification and parsing."""

    def test_sync_requires_transmission_headers(self, gateway):
        assert gateway.verify_webhook(webhook_payload(), headers={}) is False

    def test_sync_accepts_with_headers(self, gateway):
        assert gateway.verify_webhook(webhook_payload(), headers=TRANSMISSION_HEADERS) is True

    def test_no_webhook_id_accepts(self, hooks):
        from unipay.models.config import PayPalConfig

        gateway = PayPalGateway(PayPalConfig(client_id="id", client_secret="secret"), hooks)
        assert gateway.verify_webhook(webhook_payload()) is True

    @pytest.mark.asyncio
    async def test_async_verification_success(self, gateway, recorder):
        recorder.json("POST", VERIFY, {"verification_status": "SUCCESS"})

        verified = await gateway.verify_webhook_async(
            webhook_payload(), headers=TRANSMISSION_HEADERS
        )

        assert verified is True
        (request,) = recorder.calls(VERIFY)
        body = json.loads(request.content)
        assert body["webhook_id"] == "WH-123"
        assert body["transmission_sig"] == "sig"
        assert body["webhook_event"]["id"] == "WH-EVT-1"

    @pytest.mark.asyncio
    async def test_async_verification_failure(self, gateway, recorder):
        recorder.json("POST", VERIFY, {"verification_status": "FAILURE"})
        assert (
            await gateway.verify_webhook_async(webhook_payload(), headers=TRANSMISSION_HEADERS)
            is False
        )

    @pytest.mark.asyncio
    async def test_async_verification_api_error(self, gateway, recorder):
        recorder.json("POST", VERIFY, {"name": "INTERNAL_SERVICE_ERROR"}, status_code=500)
        assert (
            await gateway.verify_webhook_async(webhook_payload(), headers=TRANSMISSION_HEADERS)
            is False
        )

    @pytest.mark.asyncio
    async def test_async_missing_headers_makes_no_call(self, gateway, recorder):
        assert await gateway.verify_webhook_async(webhook_payload(), headers={}) is False
        assert recorder.call_count == 0

    def test_parse_capture_event(self, gateway):
        event = gateway.parse_webhook_event(webhook_payload())

        assert event.gateway is GatewayName.PAYPAL
        assert event.type == "PAYMENT.CAPTURE.COMPLETED"
        assert event.payment_id == "pay_internal_1"
        assert event.gateway_payment_id == "CAPTURE-1"
        assert event.status is PaymentStatus.PAID
        assert event.amount == Decimal("100.00")
        assert event.currency == "USD"
