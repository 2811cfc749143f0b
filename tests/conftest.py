"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- Recording httpx transports (call-count spies for provider traffic)
- Gateway configs for every provider
- Hooks managers and gateway instances wired to the recorder
"""

import os
from collections.abc import AsyncGenerator, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio

# Keep developer .env files and shell exports out of the test run
for _key in [k for k in os.environ if k.startswith("UNIPAY_")]:
    del os.environ[_key]
os.environ.setdefault("UNIPAY_LOG_FORMAT", "console")

from unipay.models.config import (
    MoyasarConfig,
    PaymobConfig,
    PayPalConfig,
    StripeConfig,
    TabbyConfig,
    TamaraConfig,
)
from unipay.services.hooks import HooksManager, PaymentHooks

Handler = Callable[[httpx.Request], httpx.Response]

# ============================================================================
# HTTP Recording Fixtures
# ============================================================================


class RecordingTransport:
    """
    httpx MockTransport wrapper that records every request.

    Routes are matched on ``(METHOD, path)``; unmatched requests get a 404
    so a test never silently hits the network.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[httpx.Response | Handler]] = {}
        self.transport = httpx.MockTransport(self._handle)

    def add(self, method: str, path: str, *responses: httpx.Response | Handler) -> None:
        """Queue responses for a route; the last one repeats."""
        self.routes[(method.upper(), path)] = list(responses)

    def json(self, method: str, path: str, body: Any, status_code: int = 200) -> None:
        self.add(method, path, httpx.Response(status_code, json=body))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": f"No route for {request.url.path}"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(response) and not isinstance(response, httpx.Response):
            return response(request)
        return response

    def calls(self, path: str | None = None) -> list[httpx.Request]:
        if path is None:
            return list(self.requests)
        return [r for r in self.requests if r.url.path == path]

    @property
    def call_count(self) -> int:
        return len(self.requests)


@pytest.fixture
def recorder() -> RecordingTransport:
    """Fresh recording transport per test."""
    return RecordingTransport()


@pytest_asyncio.fixture
async def http_client(recorder: RecordingTransport) -> AsyncGenerator[httpx.AsyncClient, None]:
    """httpx client routed through the recorder."""
    async with httpx.AsyncClient(transport=recorder.transport) as client:
        yield client


# ============================================================================
# Hooks Fixtures
# ============================================================================


@pytest.fixture
def hooks() -> HooksManager:
    """Hooks manager with no hooks registered."""
    return HooksManager(PaymentHooks())


# ============================================================================
# Gateway Config Fixtures
# ============================================================================


@pytest.fixture
def moyasar_config() -> MoyasarConfig:
    return MoyasarConfig(secret_key="sk_test_moyasar", webhook_secret="S")


@pytest.fixture
def paypal_config() -> PayPalConfig:
    return PayPalConfig(
        client_id="client-id",
        client_secret="client-secret",
        sandbox=True,
        webhook_id="WH-123",
    )


@pytest.fixture
def paymob_config() -> PaymobConfig:
    """Intention API credentials plus a legacy key for capture/refund."""
    return PaymobConfig(
        secret_key="egy_sk_test",
        public_key="egy_pk_test",
        api_key="legacy-api-key",
        hmac_secret="hmac-secret",
        integration_id="4567",
    )


@pytest.fixture
def paymob_legacy_config() -> PaymobConfig:
    return PaymobConfig(
        api_key="legacy-api-key",
        hmac_secret="hmac-secret",
        integration_id="4567",
        region="eg",
    )


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(
        secret_key="sk_test_stripe",
        webhook_secret="whsec_test_secret",
        api_version="2024-06-20",
    )


@pytest.fixture
def tabby_config() -> TabbyConfig:
    return TabbyConfig(
        secret_key="sk_test_tabby",
        merchant_code="MERCHANT",
        webhook_auth_header="tabby-shared-value",
    )


# HS256 secrets shorter than 32 bytes trigger PyJWT key-length warnings
TAMARA_NOTIFICATION_TOKEN = "tamara-notification-token-0123456789abcdef"


@pytest.fixture
def tamara_config() -> TamaraConfig:
    return TamaraConfig(
        api_token="tamara-api-token",
        notification_token=TAMARA_NOTIFICATION_TOKEN,
        sandbox=True,
    )


# ============================================================================
# Common Params
# ============================================================================


@pytest.fixture
def create_params() -> dict[str, Any]:
    """Minimal create-payment params (camelCase, as host apps send them)."""
    return {
        "amount": "100.00",
        "currency": "SAR",
        "callbackUrl": "https://shop.example.com/callback",
        "orderId": "order-1",
        "description": "Order #1",
        "metadata": {"paymentId": "pay_internal_1"},
    }
