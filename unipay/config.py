"""
SDK Configuration - Pydantic Settings for type-safe config.

Loads ``UNIPAY_*`` environment variables (``.env`` supported) and turns
them into a PaymentClientConfig.
Settings load lazily through ``get_settings``; importing the package
never reads the environment.
FAIL FAST - Inconsistent config is rejected when settings load.
"""

import sys
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from unipay.models.config import (
    PAYMOB_REGION_URLS,
    MoyasarConfig,
    PaymentClientConfig,
    PaymobConfig,
    PayPalConfig,
    StripeConfig,
    TabbyConfig,
    TamaraConfig,
)
from unipay.models.payment import GatewayName

SDK_VERSION = "0.1.0"
DEFAULT_HTTP_TIMEOUT = 30.0


class ConfigurationError(Exception):
    """Raised when SDK configuration is missing or inconsistent."""

    pass


class PaymentSettings(BaseSettings):
    """SDK settings loaded from environment variables."""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "unipay"
    sdk_version: str = SDK_VERSION

    # HTTP
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    # Routing
    default_gateway: GatewayName | None = None
    verify_webhooks_async: bool = False

    # Moyasar
    moyasar_secret_key: str = ""
    moyasar_publishable_key: str | None = None
    moyasar_webhook_secret: str | None = None

    # PayPal
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_sandbox: bool = False
    paypal_webhook_id: str | None = None

    # Paymob
    paymob_secret_key: str | None = None
    paymob_public_key: str | None = None
    paymob_api_key: str | None = None  # legacy Accept API
    paymob_hmac_secret: str | None = None
    paymob_region: str = "ksa"
    paymob_base_url: str | None = None
    paymob_integration_id: str | None = None

    # Stripe
    stripe_secret_key: str = ""  # sk_test_... or sk_live_...
    stripe_publishable_key: str | None = None
    stripe_webhook_secret: str | None = None  # whsec_...
    stripe_api_version: str | None = None

    # Tabby
    tabby_secret_key: str = ""
    tabby_merchant_code: str = ""
    tabby_sandbox: bool = False
    tabby_webhook_auth_header: str | None = None

    # Tamara
    tamara_api_token: str = ""
    tamara_notification_token: str | None = None
    tamara_sandbox: bool = False

    model_config = SettingsConfigDict(
        env_prefix="UNIPAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def configured_gateways(self) -> list[GatewayName]:
        """Gateways whose required credentials are present."""
        present = {
            GatewayName.MOYASAR: bool(self.moyasar_secret_key),
            GatewayName.PAYPAL: bool(self.paypal_client_id and self.paypal_client_secret),
            GatewayName.PAYMOB: bool(
                (self.paymob_secret_key and self.paymob_public_key) or self.paymob_api_key
            ),
            GatewayName.STRIPE: bool(self.stripe_secret_key),
            GatewayName.TABBY: bool(self.tabby_secret_key and self.tabby_merchant_code),
            GatewayName.TAMARA: bool(self.tamara_api_token),
        }
        return [name for name, ok in present.items() if ok]

    @model_validator(mode="after")
    def validate_consistency(self) -> "PaymentSettings":
        """
        FAIL FAST: Reject settings that would only break at call time.
        """
        errors: list[str] = []

        if self.paymob_region not in PAYMOB_REGION_URLS:
            errors.append(
                f"UNIPAY_PAYMOB_REGION must be one of {sorted(PAYMOB_REGION_URLS)}, "
                f"got: {self.paymob_region}"
            )

        if self.default_gateway and self.default_gateway not in self.configured_gateways:
            errors.append(
                f"UNIPAY_DEFAULT_GATEWAY is '{self.default_gateway.value}' "
                "but that gateway has no credentials"
            )

        if self.log_format not in ("json", "console"):
            errors.append(f"UNIPAY_LOG_FORMAT must be json or console, got: {self.log_format}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "PAYMENT SDK CONFIGURATION ERROR",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    def build_client_config(self) -> PaymentClientConfig:
        """Build a client config containing only the configured gateways."""
        configured = set(self.configured_gateways)

        return PaymentClientConfig(
            moyasar=MoyasarConfig(
                secret_key=self.moyasar_secret_key,
                publishable_key=self.moyasar_publishable_key,
                webhook_secret=self.moyasar_webhook_secret,
            )
            if GatewayName.MOYASAR in configured
            else None,
            paypal=PayPalConfig(
                client_id=self.paypal_client_id,
                client_secret=self.paypal_client_secret,
                sandbox=self.paypal_sandbox,
                webhook_id=self.paypal_webhook_id,
            )
            if GatewayName.PAYPAL in configured
            else None,
            paymob=PaymobConfig(
                secret_key=self.paymob_secret_key,
                public_key=self.paymob_public_key,
                hmac_secret=self.paymob_hmac_secret,
                region=self.paymob_region,  # type: ignore[arg-type]
                base_url=self.paymob_base_url,
                integration_id=self.paymob_integration_id,
                api_key=self.paymob_api_key,
            )
            if GatewayName.PAYMOB in configured
            else None,
            stripe=StripeConfig(
                secret_key=self.stripe_secret_key,
                publishable_key=self.stripe_publishable_key,
                webhook_secret=self.stripe_webhook_secret,
                api_version=self.stripe_api_version,
            )
            if GatewayName.STRIPE in configured
            else None,
            tabby=TabbyConfig(
                secret_key=self.tabby_secret_key,
                merchant_code=self.tabby_merchant_code,
                sandbox=self.tabby_sandbox,
                webhook_auth_header=self.tabby_webhook_auth_header,
            )
            if GatewayName.TABBY in configured
            else None,
            tamara=TamaraConfig(
                api_token=self.tamara_api_token,
                notification_token=self.tamara_notification_token,
                sandbox=self.tamara_sandbox,
            )
            if GatewayName.TAMARA in configured
            else None,
            default_gateway=self.default_gateway,
            verify_webhooks_async=self.verify_webhooks_async,
        )


@lru_cache
def get_settings() -> PaymentSettings:
    """
    Load and validate settings once, on first call.

    Raises:
        ConfigurationError: If the UNIPAY_* environment is inconsistent
    """
    return PaymentSettings()
