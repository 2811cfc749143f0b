"""
Payment Client - one entry point over every configured gateway.

Builds an adapter per configured gateway, shares one hooks manager and one
HTTP connection pool between them, and routes operations and webhooks.
"""

from collections.abc import Callable, Mapping
from dataclasses import replace
from types import TracebackType
from typing import Any

import httpx
from structlog import get_logger

from unipay.config import DEFAULT_HTTP_TIMEOUT, PaymentSettings, get_settings
from unipay.exceptions import GatewayNotConfiguredError, InvalidWebhookError
from unipay.gateways.moyasar import MoyasarGateway
from unipay.gateways.paymob import PaymobGateway
from unipay.gateways.paypal import PayPalGateway
from unipay.gateways.stripe import StripeGateway
from unipay.gateways.tabby import TabbyGateway
from unipay.gateways.tamara import TamaraGateway
from unipay.models.config import PaymentClientConfig
from unipay.models.payment import (
    GatewayName,
    GatewayPaymentResult,
    GatewayRefundResult,
    PaymentStatus,
)
from unipay.models.webhook import WebhookEvent
from unipay.observability.logging import log_context
from unipay.observability.metrics import metrics
from unipay.services.gateway import (
    CaptureInput,
    CreatePaymentInput,
    GetPaymentInput,
    PaymentGateway,
    RefundInput,
    SupportsAsyncWebhookVerification,
    SupportsCheckoutSession,
    SupportsGetPayment,
    SupportsVoid,
    VoidInput,
)
from unipay.services.hooks import HooksManager, PaymentHooks

logger = get_logger(__name__)

GATEWAY_CLASSES: dict[GatewayName, type] = {
    GatewayName.MOYASAR: MoyasarGateway,
    GatewayName.PAYPAL: PayPalGateway,
    GatewayName.PAYMOB: PaymobGateway,
    GatewayName.STRIPE: StripeGateway,
    GatewayName.TABBY: TabbyGateway,
    GatewayName.TAMARA: TamaraGateway,
}


def _gateway_name(name: GatewayName | str) -> GatewayName:
    if isinstance(name, GatewayName):
        return name
    try:
        return GatewayName(name.lower())
    except ValueError as exc:
        raise GatewayNotConfiguredError(str(name), "unknown gateway") from exc


class PaymentClient:
    """
    Unified payment client.

    Example:
        async with PaymentClient(PaymentClientConfig(stripe=StripeConfig(...))) as client:
            result = await client.create_payment({...}, gateway="stripe")
    """

    def __init__(
        self,
        config: PaymentClientConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        """
        Build adapters for every configured gateway.

        Args:
            config: Gateway configs, hooks and default gateway
            http_client: Optional shared httpx client. When omitted the
                client creates one and closes it in ``aclose``.
            timeout: Timeout in seconds for the client created here
        """
        self.config = config
        # Copy so runtime registration does not mutate the caller's hooks
        self.hooks = HooksManager(replace(config.hooks) if config.hooks else None)
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=timeout)

        self._gateways: dict[GatewayName, PaymentGateway] = {}
        for name in config.configured():
            gateway_cls = GATEWAY_CLASSES[name]
            self._gateways[name] = gateway_cls(
                getattr(config, name.value), self.hooks, http_client=self.http
            )

        logger.info(
            "payment_client_initialized",
            gateways=[name.value for name in self._gateways],
            default_gateway=config.default_gateway.value if config.default_gateway else None,
        )

    @classmethod
    def from_settings(
        cls,
        sdk_settings: PaymentSettings | None = None,
        *,
        hooks: PaymentHooks | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "PaymentClient":
        """
        Build a client from ``UNIPAY_*`` settings.

        Raises:
            ConfigurationError: If the environment is inconsistent
        """
        sdk_settings = sdk_settings or get_settings()
        config = sdk_settings.build_client_config()
        if hooks is not None:
            config = replace(config, hooks=hooks)
        return cls(config, http_client=http_client, timeout=sdk_settings.http_timeout)

    # ========================================================================
    # Gateway Registry
    # ========================================================================

    def gateway(self, name: GatewayName | str) -> PaymentGateway:
        """
        Get a configured adapter.

        Raises:
            GatewayNotConfiguredError: If the gateway has no config
        """
        gateway_name = _gateway_name(name)
        adapter = self._gateways.get(gateway_name)
        if adapter is None:
            raise GatewayNotConfiguredError(gateway_name.value)
        return adapter

    def configured_gateways(self) -> list[GatewayName]:
        return list(self._gateways)

    def has_gateway(self, name: GatewayName | str) -> bool:
        try:
            return _gateway_name(name) in self._gateways
        except GatewayNotConfiguredError:
            return False

    def resolve_gateway(self, name: GatewayName | str | None = None) -> PaymentGateway:
        """
        Pick the adapter for an operation.

        An explicit name wins over the configured default.

        Raises:
            GatewayNotConfiguredError: If neither is available
        """
        if name is not None:
            return self.gateway(name)
        if self.config.default_gateway is not None:
            return self.gateway(self.config.default_gateway)
        raise GatewayNotConfiguredError("default", "no gateway given and no default configured")

    def add_hook(self, name: str, handler: Callable[..., Any] | None) -> None:
        """Register a hook on the shared manager (see ``PaymentHooks`` for slot names)."""
        self.hooks.register(name, handler)

    # ========================================================================
    # Payment Operations
    # ========================================================================

    async def create_payment(
        self, params: CreatePaymentInput, gateway: GatewayName | str | None = None
    ) -> GatewayPaymentResult:
        return await self.resolve_gateway(gateway).create_payment(params)

    async def capture_payment(
        self, params: CaptureInput, gateway: GatewayName | str | None = None
    ) -> GatewayPaymentResult:
        return await self.resolve_gateway(gateway).capture_payment(params)

    async def refund_payment(
        self, params: RefundInput, gateway: GatewayName | str | None = None
    ) -> GatewayRefundResult:
        return await self.resolve_gateway(gateway).refund_payment(params)

    async def void_payment(
        self, params: VoidInput, gateway: GatewayName | str | None = None
    ) -> GatewayPaymentResult:
        """
        Void an authorization.

        Raises:
            GatewayNotConfiguredError: If the gateway cannot void
        """
        adapter = self.resolve_gateway(gateway)
        if not isinstance(adapter, SupportsVoid):
            raise GatewayNotConfiguredError(adapter.name.value, "void_payment is not supported")
        return await adapter.void_payment(params)

    async def get_payment(
        self, params: GetPaymentInput, gateway: GatewayName | str | None = None
    ) -> GatewayPaymentResult:
        adapter = self.resolve_gateway(gateway)
        if not isinstance(adapter, SupportsGetPayment):
            raise GatewayNotConfiguredError(adapter.name.value, "get_payment is not supported")
        return await adapter.get_payment(params)

    async def get_payment_status(
        self, gateway_payment_id: str, gateway: GatewayName | str | None = None
    ) -> PaymentStatus:
        adapter = self.resolve_gateway(gateway)
        if not isinstance(adapter, SupportsGetPayment):
            raise GatewayNotConfiguredError(
                adapter.name.value, "get_payment_status is not supported"
            )
        return await adapter.get_payment_status(gateway_payment_id)

    async def create_checkout_session(
        self, params: Any, gateway: GatewayName | str | None = None
    ) -> Any:
        """Create a hosted checkout session (Stripe, Tabby, Tamara)."""
        adapter = self.resolve_gateway(gateway)
        if not isinstance(adapter, SupportsCheckoutSession):
            raise GatewayNotConfiguredError(
                adapter.name.value, "create_checkout_session is not supported"
            )
        return await adapter.create_checkout_session(params)

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def handle_webhook(
        self,
        gateway: GatewayName | str,
        payload: Any,
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> WebhookEvent:
        """
        Verify and parse an incoming webhook.

        Flow: received hook -> verify -> parse -> verified hook. A failed
        verification or a malformed payload runs the failed hook and raises. Verification is synchronous unless the
        client was configured with ``verify_webhooks_async`` and the
        adapter supports it.

        Args:
            gateway: Gateway the webhook was delivered for
            payload: Raw body (str/bytes) or parsed JSON
            signature: Signature or token delivered out of band
            headers: Request headers

        Returns:
            Normalized webhook event

        Raises:
            GatewayNotConfiguredError: If the gateway is not configured
            InvalidWebhookError: If verification fails or the payload is malformed
        """
        adapter = self.gateway(gateway)
        name = adapter.name.value

        with log_context(gateway=name, operation="handle_webhook"):
            await self.hooks.run_webhook_received(adapter.name, payload)

            if self.config.verify_webhooks_async and isinstance(
                adapter, SupportsAsyncWebhookVerification
            ):
                verified = await adapter.verify_webhook_async(payload, signature, headers)
            else:
                verified = adapter.verify_webhook(payload, signature, headers)

            if not verified:
                error = InvalidWebhookError(f"Webhook signature verification failed for {name}")
                metrics.record_webhook(name, verified=False)
                logger.warning("webhook_verification_failed")
                await self.hooks.run_webhook_failed(payload, error)
                raise error

            try:
                event = adapter.parse_webhook_event(payload)
            except InvalidWebhookError as exc:
                metrics.record_webhook(name, verified=False)
                logger.warning("webhook_payload_invalid", error=exc.message)
                await self.hooks.run_webhook_failed(payload, exc)
                raise

            metrics.record_webhook(name, verified=True)
            logger.info(
                "webhook_processed",
                event_id=event.id,
                event_type=event.type,
                status=event.status.value,
            )
            await self.hooks.run_webhook_verified(event)
            return event

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "PaymentClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
