"""
Tests for PaymentClient routing, webhooks and lifecycle.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from unipay.client import PaymentClient
from unipay.config import ConfigurationError, PaymentSettings, get_settings
from unipay.exceptions import GatewayNotConfiguredError, InvalidWebhookError
from unipay.gateways.moyasar import MoyasarGateway
from unipay.gateways.paypal import PayPalGateway
from unipay.models.config import PaymentClientConfig
from unipay.models.payment import GatewayName, PaymentStatus
from unipay.models.webhook import decode_webhook_payload
from unipay.services.hooks import PaymentHooks

PAYMENTS = "/v1/payments"
PAYPAL_TOKEN = "/v1/oauth2/token"
PAYPAL_VERIFY = "/v1/notifications/verify-webhook-signature"

TRANSMISSION_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.paypal.com/cert.pem",
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2024-05-01T10:00:00Z",
}


def moyasar_payment(**overrides):
    payment = {
        "id": "pay_1",
        "status": "paid",
        "amount": 10000,
        "currency": "SAR",
        "source": {"type": "creditcard"},
        "metadata": {"paymentId": "pay_internal_1"},
    }
    payment.update(overrides)
    return payment


def moyasar_webhook(secret_token="S"):
    return {
        "id": "evt_1",
        "type": "payment_paid",
        "created_at": "2024-05-01T10:00:00Z",
        "secret_token": secret_token,
        "data": moyasar_payment(),
    }


def paypal_webhook():
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
        },
    }


@pytest.fixture
def client_config(moyasar_config, paypal_config):
    return PaymentClientConfig(
        moyasar=moyasar_config,
        paypal=paypal_config,
        default_gateway=GatewayName.MOYASAR,
    )


@pytest.fixture
def client(client_config, http_client):
    return PaymentClient(client_config, http_client=http_client)


class TestGatewayRegistry:
    """Tests for adapter construction and lookup."""

    def test_builds_only_configured_gateways(self, client):
        assert client.configured_gateways() == [GatewayName.MOYASAR, GatewayName.PAYPAL]
        assert isinstance(client.gateway("moyasar"), MoyasarGateway)
        assert isinstance(client.gateway(GatewayName.PAYPAL), PayPalGateway)

    def test_name_lookup_is_case_insensitive(self, client):
        assert client.gateway("MOYASAR") is client.gateway(GatewayName.MOYASAR)

    def test_unconfigured_gateway_raises(self, client):
        with pytest.raises(GatewayNotConfiguredError) as exc_info:
            client.gateway("stripe")
        assert exc_info.value.gateway_name == "stripe"
        assert exc_info.value.code == "GATEWAY_NOT_CONFIGURED"

    def test_unknown_gateway_raises(self, client):
        with pytest.raises(GatewayNotConfiguredError) as exc_info:
            client.gateway("bitcoin")
        assert "unknown gateway" in str(exc_info.value)

    def test_has_gateway(self, client):
        assert client.has_gateway("paypal") is True
        assert client.has_gateway("tabby") is False
        assert client.has_gateway("bitcoin") is False

    def test_adapters_share_hooks_and_http(self, client):
        moyasar = client.gateway("moyasar")
        paypal = client.gateway("paypal")
        assert moyasar.hooks is client.hooks
        assert paypal.hooks is client.hooks

    def test_explicit_name_beats_default(self, client):
        assert isinstance(client.resolve_gateway("paypal"), PayPalGateway)
        assert isinstance(client.resolve_gateway(), MoyasarGateway)

    def test_no_name_and_no_default_raises(self, moyasar_config, http_client):
        client = PaymentClient(PaymentClientConfig(moyasar=moyasar_config), http_client=http_client)
        with pytest.raises(GatewayNotConfiguredError):
            client.resolve_gateway()

    def test_runtime_hook_registration_does_not_touch_caller_hooks(
        self, moyasar_config, http_client
    ):
        caller_hooks = PaymentHooks()
        client = PaymentClient(
            PaymentClientConfig(moyasar=moyasar_config, hooks=caller_hooks),
            http_client=http_client,
        )
        client.add_hook("on_error", MagicMock())

        assert client.hooks.hooks.on_error is not None
        assert caller_hooks.on_error is None

    def test_add_unknown_hook_raises(self, client):
        with pytest.raises(ValueError):
            client.add_hook("before_everything", MagicMock())


class TestOperationRouting:
    """Tests for operations routed to adapters."""

    @pytest.mark.asyncio
    async def test_create_payment_uses_default_gateway(self, client, recorder, create_params):
        recorder.json("POST", PAYMENTS, moyasar_payment(status="initiated"))

        result = await client.create_payment({**create_params, "tokenId": "token_abc"})

        assert result.gateway_id == "pay_1"
        assert result.status is PaymentStatus.PENDING
        assert len(recorder.calls(PAYMENTS)) == 1

    @pytest.mark.asyncio
    async def test_get_payment_status(self, client, recorder):
        recorder.json("GET", f"{PAYMENTS}/pay_1", moyasar_payment())

        status = await client.get_payment_status("pay_1", gateway="moyasar")

        assert status is PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_makes_no_calls(self, client, recorder, create_params):
        with pytest.raises(GatewayNotConfiguredError):
            await client.create_payment(create_params, gateway="tamara")
        assert recorder.call_count == 0

    @pytest.mark.asyncio
    async def test_checkout_session_unsupported(self, client, recorder):
        with pytest.raises(GatewayNotConfiguredError) as exc_info:
            await client.create_checkout_session({}, gateway="moyasar")
        assert "create_checkout_session is not supported" in str(exc_info.value)
        assert recorder.call_count == 0

    @pytest.mark.asyncio
    async def test_void_without_capability_raises(self, client, monkeypatch):
        plain = MagicMock(spec=["name", "create_payment", "capture_payment", "refund_payment"])
        plain.name = GatewayName.MOYASAR
        monkeypatch.setitem(client._gateways, GatewayName.MOYASAR, plain)

        with pytest.raises(GatewayNotConfiguredError) as exc_info:
            await client.void_payment({"gatewayPaymentId": "pay_1"})
        assert "void_payment is not supported" in str(exc_info.value)


class TestHandleWebhook:
    """Tests for webhook verification, parsing and hooks."""

    @pytest.mark.asyncio
    async def test_verified_webhook_runs_hooks_in_order(self, client):
        calls = []
        client.add_hook(
            "on_webhook_received", lambda gateway, payload: calls.append(("received", gateway))
        )
        client.add_hook("on_webhook_verified", lambda event: calls.append(("verified", event.id)))
        failed = AsyncMock()
        client.add_hook("on_webhook_failed", failed)

        event = await client.handle_webhook("moyasar", moyasar_webhook())

        assert event.id == "evt_1"
        assert event.gateway is GatewayName.MOYASAR
        assert event.status is PaymentStatus.PAID
        assert event.payment_id == "pay_internal_1"
        assert calls == [("received", GatewayName.MOYASAR), ("verified", "evt_1")]
        failed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_verification_raises_and_notifies(self, client):
        verified = AsyncMock()
        failed = AsyncMock()
        client.add_hook("on_webhook_verified", verified)
        client.add_hook("on_webhook_failed", failed)
        payload = moyasar_webhook(secret_token="T")

        with pytest.raises(InvalidWebhookError):
            await client.handle_webhook("moyasar", payload)

        verified.assert_not_awaited()
        failed.assert_awaited_once()
        failed_payload, error = failed.await_args.args
        assert failed_payload is payload
        assert isinstance(error, InvalidWebhookError)

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_raises_before_hooks(self, client):
        received = AsyncMock()
        client.add_hook("on_webhook_received", received)

        with pytest.raises(GatewayNotConfiguredError):
            await client.handle_webhook("stripe", {})
        received.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_utf8_body_fails_verification(self, client):
        failed = AsyncMock()
        client.add_hook("on_webhook_failed", failed)
        body = b'{"secret_token": "\xff\xfe"}'

        with pytest.raises(InvalidWebhookError):
            await client.handle_webhook("moyasar", body)

        failed.assert_awaited_once()
        assert failed.await_args.args[0] is body

    @pytest.mark.asyncio
    async def test_unparseable_body_after_verification_runs_failed_hook(
        self, tabby_config, http_client
    ):
        client = PaymentClient(PaymentClientConfig(tabby=tabby_config), http_client=http_client)
        verified = AsyncMock()
        failed = AsyncMock()
        client.add_hook("on_webhook_verified", verified)
        client.add_hook("on_webhook_failed", failed)

        with pytest.raises(InvalidWebhookError) as exc_info:
            await client.handle_webhook("tabby", b"\xff\xfe", signature="tabby-shared-value")

        assert "not valid UTF-8" in exc_info.value.message
        verified.assert_not_awaited()
        failed.assert_awaited_once()
        assert failed.await_args.args[1] is exc_info.value

    def test_decoder_rejects_invalid_utf8(self):
        with pytest.raises(InvalidWebhookError) as exc_info:
            decode_webhook_payload(b'{"id": "\xff"}')
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_sync_verification_by_default(self, client, recorder):
        event = await client.handle_webhook(
            "paypal", paypal_webhook(), headers=TRANSMISSION_HEADERS
        )

        assert event.gateway_payment_id == "CAPTURE-1"
        assert recorder.calls(PAYPAL_VERIFY) == []

    @pytest.mark.asyncio
    async def test_async_verification_when_enabled(
        self, moyasar_config, paypal_config, http_client, recorder
    ):
        recorder.json("POST", PAYPAL_TOKEN, {"access_token": "A21AA-token", "expires_in": 32400})
        recorder.json("POST", PAYPAL_VERIFY, {"verification_status": "SUCCESS"})
        client = PaymentClient(
            PaymentClientConfig(paypal=paypal_config, verify_webhooks_async=True),
            http_client=http_client,
        )

        event = await client.handle_webhook(
            "paypal", paypal_webhook(), headers=TRANSMISSION_HEADERS
        )

        assert event.status is PaymentStatus.PAID
        assert len(recorder.calls(PAYPAL_VERIFY)) == 1

    @pytest.mark.asyncio
    async def test_async_verification_failure_raises(self, paypal_config, http_client, recorder):
        recorder.json("POST", PAYPAL_TOKEN, {"access_token": "A21AA-token", "expires_in": 32400})
        recorder.json("POST", PAYPAL_VERIFY, {"verification_status": "FAILURE"})
        client = PaymentClient(
            PaymentClientConfig(paypal=paypal_config, verify_webhooks_async=True),
            http_client=http_client,
        )

        with pytest.raises(InvalidWebhookError):
            await client.handle_webhook("paypal", paypal_webhook(), headers=TRANSMISSION_HEADERS)


class TestFromSettings:
    """Tests for building a client from UNIPAY_* settings."""

    def test_builds_configured_gateways(self, http_client):
        sdk_settings = PaymentSettings(
            _env_file=None,
            moyasar_secret_key="sk_test_moyasar",
            tamara_api_token="tamara-api-token",
            default_gateway="tamara",
        )

        client = PaymentClient.from_settings(sdk_settings, http_client=http_client)

        assert client.configured_gateways() == [GatewayName.MOYASAR, GatewayName.TAMARA]
        assert client.config.default_gateway is GatewayName.TAMARA

    def test_hooks_override(self, http_client):
        hooks = PaymentHooks(on_error=MagicMock())
        sdk_settings = PaymentSettings(_env_file=None, stripe_secret_key="sk_test_stripe")

        client = PaymentClient.from_settings(sdk_settings, hooks=hooks, http_client=http_client)

        assert client.hooks.hooks.on_error is hooks.on_error


@pytest.fixture
def unloaded_settings(monkeypatch, tmp_path):
    """Start with no cached settings and no .env file in reach."""
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestLazySettings:
    """Tests that the environment is only read when settings are asked for."""

    @pytest.mark.asyncio
    async def test_client_from_code_ignores_inconsistent_environment(
        self, unloaded_settings, monkeypatch, moyasar_config, http_client
    ):
        monkeypatch.setenv("UNIPAY_DEFAULT_GATEWAY", "stripe")

        client = PaymentClient(PaymentClientConfig(moyasar=moyasar_config), http_client=http_client)

        assert client.configured_gateways() == [GatewayName.MOYASAR]
        assert get_settings.cache_info().currsize == 0

    def test_from_settings_fails_fast(self, unloaded_settings, monkeypatch):
        monkeypatch.setenv("UNIPAY_DEFAULT_GATEWAY", "stripe")

        with pytest.raises(ConfigurationError) as exc_info:
            PaymentClient.from_settings()
        assert "UNIPAY_DEFAULT_GATEWAY" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_from_settings_applies_timeout(self, unloaded_settings, monkeypatch):
        monkeypatch.setenv("UNIPAY_MOYASAR_SECRET_KEY", "sk_test_moyasar")
        monkeypatch.setenv("UNIPAY_HTTP_TIMEOUT", "5")

        async with PaymentClient.from_settings() as client:
            assert client.http.timeout == httpx.Timeout(5.0)
            assert client.configured_gateways() == [GatewayName.MOYASAR]


class TestLifecycle:
    """Tests for HTTP client ownership."""

    @pytest.mark.asyncio
    async def test_closes_owned_http_client(self, moyasar_config):
        async with PaymentClient(PaymentClientConfig(moyasar=moyasar_config)) as client:
            http = client.http
            assert not http.is_closed
        assert http.is_closed

    @pytest.mark.asyncio
    async def test_leaves_shared_http_client_open(self, moyasar_config):
        async with httpx.AsyncClient() as shared:
            async with PaymentClient(
                PaymentClientConfig(moyasar=moyasar_config), http_client=shared
            ):
                pass
            assert not shared.is_closed
