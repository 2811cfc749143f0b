"""
Tests for the Tamara gateway.

Webhook tokens are minted with PyJWT the way Tamara signs them (HS256 with
the merchant notification token).
"""

import json
import time
from decimal import Decimal

import jwt
import pytest

from unipay.exceptions import (
    AuthenticationError,
    GatewayApiError,
    InvalidRequestError,
)
from unipay.gateways.tamara import (
    ORDER_STATUS_MAP,
    TamaraGateway,
    extract_token,
    first_amount,
    map_error,
    map_status,
)
from unipay.models.config import TamaraConfig
from unipay.models.payment import GatewayName, PaymentStatus, RefundStatus

ORDER_ID = "9f5c1e3a-3c6b-4f0e-9d2a-6c1f2b3a4d5e"
OTHER_SECRET = "some-other-notification-token-0123456789"


def webhook_payload(event_type="order_approved", order_id=ORDER_ID, data=None):
    return {
        "order_id": order_id,
        "order_reference_id": "pay_internal_1",
        "order_number": "10001",
        "event_type": event_type,
        "data": data if data is not None else [],
    }


def order_details(status="authorised", **overrides):
    body = {
        "order_id": ORDER_ID,
        "status": status,
        "total_amount": {"amount": 100.0, "currency": "SAR"},
    }
    body.update(overrides)
    return body


def checkout_params():
    amount = {"amount": "100.00", "currency": "SAR"}
    zero = {"amount": "0", "currency": "SAR"}
    address = {
        "city": "Riyadh",
        "country_code": "SA",
        "first_name": "Sara",
        "last_name": "Ali",
        "line1": "King Fahd Rd",
        "phone_number": "500000001",
        "region": "Riyadh",
    }
    return {
        "total_amount": amount,
        "shipping_amount": zero,
        "tax_amount": zero,
        "order_reference_id": "order-1",
        "items": [
            {
                "name": "Shoes",
                "quantity": 1,
                "reference_id": "sku-1",
                "type": "Physical",
                "sku": "SHOE-1",
                "total_amount": amount,
            }
        ],
        "consumer": {
            "email": "sara@example.com",
            "first_name": "Sara",
            "last_name": "Ali",
            "phone_number": "500000001",
        },
        "country_code": "SA",
        "description": "Order 1",
        "merchant_url": {
            "success": "https://shop.example.com/success",
            "failure": "https://shop.example.com/failure",
            "cancel": "https://shop.example.com/cancel",
            "notification": "https://shop.example.com/webhooks/tamara",
        },
        "shipping_address": address,
        "locale": "en_US",
    }


@pytest.fixture
def gateway(tamara_config, hooks, http_client):
    return TamaraGateway(tamara_config, hooks, http_client=http_client)


@pytest.fixture
def mint(tamara_config):
    """Sign webhook tokens with the configured notification token."""

    def _mint(secret=None, **claims):
        now = int(time.time())
        payload = {"order_id": ORDER_ID, "exp": now + 300, "iat": now, **claims}
        return jwt.encode(payload, secret or tamara_config.notification_token, algorithm="HS256")

    return _mint


class TestHelpers:
    """Tests for status, error and token helpers."""

    def test_status_map(self):
        for status, expected in ORDER_STATUS_MAP.items():
            assert map_status(status) is expected
        assert map_status("approved") is PaymentStatus.APPROVED
        assert map_status("mystery") is PaymentStatus.PENDING

    def test_map_error(self):
        unauthorized = GatewayApiError("Unauthorized", "tamara", raw_error={}, http_status=401)
        invalid = GatewayApiError(
            "Invalid",
            "tamara",
            raw_error={"message": "Invalid", "errors": [{"error_code": "total_amount_invalid"}]},
            http_status=400,
        )
        other = GatewayApiError("Oops", "tamara", raw_error={"message": "Oops"}, http_status=500)

        assert isinstance(map_error(unauthorized), AuthenticationError)
        mapped = map_error(invalid)
        assert isinstance(mapped, InvalidRequestError)
        assert mapped.validation_errors == [{"error_code": "total_amount_invalid"}]
        assert map_error(other) is other

    def test_first_amount(self):
        assert first_amount([{"amount": 1}]) == {"amount": 1}
        assert first_amount({"amount": 1}) == {"amount": 1}
        assert first_amount([]) is None
        assert first_amount(None) is None

    def test_extract_token(self):
        assert extract_token("abc", None) == "abc"
        assert extract_token(None, {"Authorization": "Bearer abc"}) == "abc"
        assert extract_token(None, {"tamaraToken": "abc"}) == "abc"
        assert extract_token(None, {}) is None


class TestCreatePayment:
    """Tests for checkout creation."""

    @pytest.mark.asyncio
    async def test_one_item_checkout(self, gateway, recorder, create_params):
        recorder.json(
            "POST",
            "/checkout",
            {
                "order_id": ORDER_ID,
                "checkout_id": "chk_1",
                "checkout_url": "https://checkout-sandbox.tamara.co/checkout/chk_1",
                "status": "new",
            },
        )

        result = await gateway.create_payment(
            {**create_params, "metadata": {"paymentId": "pay_internal_1", "buyerFirstName": "Sara"}}
        )

        assert result.success is True
        assert result.gateway_id == ORDER_ID
        assert result.status is PaymentStatus.PENDING
        assert result.redirect_url == "https://checkout-sandbox.tamara.co/checkout/chk_1"

        (request,) = recorder.calls()
        assert request.headers["Authorization"] == "Bearer tamara-api-token"
        body = json.loads(request.content)
        assert body["total_amount"] == {"amount": 100.0, "currency": "SAR"}
        assert body["order_reference_id"] == "order-1"
        assert body["consumer"]["first_name"] == "Sara"
        assert body["country_code"] == "SA"
        assert body["items"][0]["type"] == "Digital"
        assert body["merchant_url"]["notification"] == create_params["callbackUrl"]

    @pytest.mark.asyncio
    async def test_unsupported_currency_rejected_locally(self, gateway, recorder, create_params):
        with pytest.raises(InvalidRequestError):
            await gateway.create_payment({**create_params, "currency": "USD"})
        assert recorder.call_count == 0

    @pytest.mark.asyncio
    async def test_checkout_session(self, gateway, recorder):
        recorder.json("POST", "/checkout", {"order_id": ORDER_ID, "status": "new"})

        response = await gateway.create_checkout_session(checkout_params())

        assert response["order_id"] == ORDER_ID
        body = json.loads(recorder.calls()[0].content)
        assert body["locale"] == "en_US"
        assert body["items"][0]["total_amount"] == {"amount": 100.0, "currency": "SAR"}
        assert "billing_address" not in body

    @pytest.mark.asyncio
    async def test_authorise_order(self, gateway, recorder):
        recorder.json(
            "POST", f"/orders/{ORDER_ID}/authorise", {"order_id": ORDER_ID, "status": "authorised"}
        )
        response = await gateway.authorise_order(ORDER_ID)
        assert response["status"] == "authorised"


class TestLifecycle:
    """Tests for capture, refund, cancel and lookup."""

    @pytest.mark.asyncio
    async def test_capture_with_amount(self, gateway, recorder):
        recorder.json(
            "POST",
            "/payments/capture",
            {
                "capture_id": "cap_1",
                "order_id": ORDER_ID,
                "status": "fully_captured",
                "captured_amount": {"amount": 100.0, "currency": "SAR"},
            },
        )

        result = await gateway.capture_payment(
            {"gatewayPaymentId": ORDER_ID, "amount": "100", "trackingNumber": "TRK-1"}
        )

        assert result.status is PaymentStatus.PAID
        assert result.captured_amount == Decimal("100.0")
        body = json.loads(recorder.calls()[0].content)
        assert body["total_amount"] == {"amount": 100.0, "currency": "SAR"}
        assert body["shipping_info"]["tracking_number"] == "TRK-1"
        assert body["shipping_info"]["shipping_company"] == "Carrier"

    @pytest.mark.asyncio
    async def test_capture_without_amount_uses_order_total(self, gateway, recorder):
        recorder.json(
            "GET",
            f"/orders/{ORDER_ID}",
            order_details(total_amount={"amount": 80.5, "currency": "AED"}),
        )
        recorder.json(
            "POST",
            "/payments/capture",
            {"order_id": ORDER_ID, "status": "fully_captured", "captured_amount": []},
        )

        await gateway.capture_payment({"gatewayPaymentId": ORDER_ID})

        body = json.loads(recorder.calls("/payments/capture")[0].content)
        assert body["total_amount"] == {"amount": 80.5, "currency": "AED"}

    @pytest.mark.asyncio
    async def test_refund(self, gateway, recorder):
        recorder.json(
            "POST",
            f"/payments/simplified-refund/{ORDER_ID}",
            {
                "refund_id": "ref_1",
                "order_id": ORDER_ID,
                "refunded_amount": [{"amount": 25.0, "currency": "SAR"}],
            },
        )

        result = await gateway.refund_payment(
            {"gatewayPaymentId": ORDER_ID, "amount": "25", "currency": "SAR", "reason": "damaged"}
        )

        assert result.gateway_refund_id == "ref_1"
        assert result.status is RefundStatus.COMPLETED
        assert result.total_refunded == Decimal("25.0")
        body = json.loads(recorder.calls()[0].content)
        assert body == {"total_amount": {"amount": 25.0, "currency": "SAR"}, "comment": "damaged"}

    @pytest.mark.asyncio
    async def test_void_cancels_full_total(self, gateway, recorder):
        recorder.json("GET", f"/orders/{ORDER_ID}", order_details())
        recorder.json(
            "POST",
            f"/orders/{ORDER_ID}/cancel",
            {
                "order_id": ORDER_ID,
                "status": "canceled",
                "canceled_amount": {"amount": 100.0, "currency": "SAR"},
            },
        )

        result = await gateway.void_payment({"gatewayPaymentId": ORDER_ID})

        assert result.status is PaymentStatus.CANCELLED
        assert result.amount == Decimal("100.0")
        body = json.loads(recorder.calls(f"/orders/{ORDER_ID}/cancel")[0].content)
        assert body["total_amount"] == {"amount": 100.0, "currency": "SAR"}

    @pytest.mark.asyncio
    async def test_refund_order_full_request(self, gateway, recorder):
        recorder.json("POST", f"/payments/simplified-refund/{ORDER_ID}", {"refund_id": "ref_2"})

        await gateway.refund_order(
            {
                "order_id": ORDER_ID,
                "total_amount": {"amount": "10", "currency": "SAR"},
                "comment": "partial",
                "merchant_refund_id": "mr-1",
            }
        )

        body = json.loads(recorder.calls()[0].content)
        assert "order_id" not in body
        assert body["merchant_refund_id"] == "mr-1"

    @pytest.mark.asyncio
    async def test_get_payment(self, gateway, recorder):
        recorder.json(
            "GET",
            f"/orders/{ORDER_ID}",
            order_details(
                status="partially_refunded",
                captured_amount={"amount": 100.0, "currency": "SAR"},
                refunded_amount={"amount": 40.0, "currency": "SAR"},
            ),
        )

        result = await gateway.get_payment({"gatewayPaymentId": ORDER_ID})

        assert result.status is PaymentStatus.PARTIALLY_REFUNDED
        assert result.amount == Decimal("100.0")
        assert result.refunded_amount == Decimal("40.0")

    @pytest.mark.asyncio
    async def test_unauthorized_lookup(self, gateway, recorder):
        recorder.json("GET", f"/orders/{ORDER_ID}", {"message": "Unauthorized"}, status_code=401)
        with pytest.raises(AuthenticationError):
            await gateway.get_payment_status(ORDER_ID)


class TestWebhookVerification:
    """JWT verification matrix."""

    @pytest.mark.asyncio
    async def test_valid_token(self, gateway, mint):
        assert await gateway.verify_webhook_async(webhook_payload(), mint()) is True

    @pytest.mark.asyncio
    async def test_token_in_authorization_header(self, gateway, mint):
        headers = {"Authorization": f"Bearer {mint()}"}
        assert await gateway.verify_webhook_async(webhook_payload(), headers=headers) is True

    @pytest.mark.asyncio
    async def test_wrong_secret(self, gateway, mint):
        token = mint(secret=OTHER_SECRET)
        assert await gateway.verify_webhook_async(webhook_payload(), token) is False

    @pytest.mark.asyncio
    async def test_order_id_mismatch(self, gateway, mint):
        token = mint(order_id="00000000-0000-0000-0000-000000000000")
        assert await gateway.verify_webhook_async(webhook_payload(), token) is False

    @pytest.mark.asyncio
    async def test_expired_token(self, gateway, mint):
        token = mint(exp=int(time.time()) - 60)
        assert await gateway.verify_webhook_async(webhook_payload(), token) is False

    @pytest.mark.asyncio
    async def test_token_without_order_claim(self, gateway, tamara_config):
        token = jwt.encode(
            {"iat": int(time.time())}, tamara_config.notification_token, algorithm="HS256"
        )
        assert await gateway.verify_webhook_async(webhook_payload(), token) is True

    @pytest.mark.asyncio
    async def test_missing_and_malformed_token(self, gateway):
        assert await gateway.verify_webhook_async(webhook_payload(), None) is False
        assert await gateway.verify_webhook_async(webhook_payload(), "not-a-jwt") is False

    def test_sync_accepts_unsigned_structure(self, gateway, mint):
        """Sync verification only checks shape and the order_id claim."""
        token = mint(secret=OTHER_SECRET)
        assert gateway.verify_webhook(webhook_payload(), token) is True

    def test_sync_order_mismatch(self, gateway, mint):
        token = mint(order_id="00000000-0000-0000-0000-000000000000")
        assert gateway.verify_webhook(webhook_payload(), token) is False

    def test_sync_garbage_token(self, gateway):
        assert gateway.verify_webhook(webhook_payload(), "a.b.c") is False

    def test_no_notification_token_accepts(self, hooks):
        gateway = TamaraGateway(TamaraConfig(api_token="token"), hooks)
        assert gateway.verify_webhook(webhook_payload(), None) is True


class TestWebhookParsing:
    """Tests for event parsing."""

    def test_approved_event(self, gateway):
        event = gateway.parse_webhook_event(webhook_payload())

        assert event.gateway is GatewayName.TAMARA
        assert event.type == "order_approved"
        assert event.payment_id == "pay_internal_1"
        assert event.gateway_payment_id == ORDER_ID
        assert event.status is PaymentStatus.PENDING
        assert event.amount == Decimal("0")
        assert event.currency == "SAR"

    def test_captured_event_amount(self, gateway):
        event = gateway.parse_webhook_event(
            webhook_payload(
                "order_captured",
                data={"captured_amount": {"amount": "100.00", "currency": "AED"}},
            )
        )
        assert event.status is PaymentStatus.PAID
        assert event.amount == Decimal("100.00")
        assert event.currency == "AED"

    def test_refund_always_full(self, gateway):
        event = gateway.parse_webhook_event(
            webhook_payload(
                "order_refunded",
                data={"refunded_amount": {"amount": "10.00", "currency": "SAR"}},
            )
        )
        assert event.status is PaymentStatus.REFUNDED
