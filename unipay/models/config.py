"""
Gateway configuration - one immutable record per gateway.

Each adapter owns its config type; there is no shared base shape.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from unipay.models.payment import GatewayName

if TYPE_CHECKING:
    from unipay.services.hooks import PaymentHooks

PaymobRegion = Literal["ksa", "eg", "pk", "om", "ae"]

PAYMOB_REGION_URLS: dict[str, str] = {
    "ksa": "https://ksa.paymob.com",
    "eg": "https://accept.paymob.com",
    "pk": "https://pakistan.paymob.com",
    "om": "https://oman.paymob.com",
    "ae": "https://ae.paymob.com",
}


@dataclass(frozen=True)
class MoyasarConfig:
    """Moyasar credentials."""

    secret_key: str
    publishable_key: str | None = None
    sandbox: bool = False
    webhook_secret: str | None = None  # compared against payload secret_token

    @property
    def api_base_url(self) -> str:
        """Moyasar serves test and live keys from one host."""
        return "https://api.moyasar.com/v1"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.secret_key:
            raise ValueError("secret_key cannot be empty")


@dataclass(frozen=True)
class PayPalConfig:
    """PayPal REST app credentials."""

    client_id: str
    client_secret: str
    sandbox: bool = False
    webhook_id: str | None = None

    @property
    def api_base_url(self) -> str:
        """Get the API base URL for the configured environment."""
        if self.sandbox:
            return "https://api-m.sandbox.paypal.com"
        return "https://api-m.paypal.com"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.client_id or not self.client_secret:
            raise ValueError("client_id and client_secret are required")


@dataclass(frozen=True)
class PaymobConfig:
    """
    Paymob credentials.

    The Unified Intention API uses ``secret_key``/``public_key``. The legacy
    Accept API uses ``api_key``. When both are present the intention flow wins.
    """

    secret_key: str | None = None
    public_key: str | None = None
    hmac_secret: str | None = None
    region: PaymobRegion = "ksa"
    base_url: str | None = None  # overrides region
    integration_id: str | None = None
    api_key: str | None = None  # legacy Accept API

    @property
    def api_base_url(self) -> str:
        """Base URL override first, then the region host."""
        if self.base_url:
            return self.base_url.rstrip("/")
        return PAYMOB_REGION_URLS[self.region]

    @property
    def uses_intention_api(self) -> bool:
        return bool(self.secret_key and self.public_key)

    @property
    def uses_legacy_api(self) -> bool:
        return bool(self.api_key)

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if self.region not in PAYMOB_REGION_URLS:
            raise ValueError(f"Unknown Paymob region: {self.region}")


@dataclass(frozen=True)
class StripeConfig:
    """Stripe API credentials."""

    secret_key: str
    publishable_key: str | None = None
    webhook_secret: str | None = None
    api_version: str | None = None

    @property
    def api_base_url(self) -> str:
        return "https://api.stripe.com/v1"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.secret_key:
            raise ValueError("secret_key cannot be empty")


@dataclass(frozen=True)
class TabbyConfig:
    """Tabby merchant credentials."""

    secret_key: str
    merchant_code: str
    sandbox: bool = False
    webhook_auth_header: str | None = None

    @property
    def api_base_url(self) -> str:
        """Tabby serves sandbox and live keys from the same host."""
        return "https://api.tabby.ai"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.secret_key:
            raise ValueError("secret_key cannot be empty")
        if not self.merchant_code:
            raise ValueError("merchant_code cannot be empty")


@dataclass(frozen=True)
class TamaraConfig:
    """Tamara merchant credentials."""

    api_token: str
    notification_token: str | None = None  # HS256 secret for webhook JWTs
    sandbox: bool = False

    @property
    def api_base_url(self) -> str:
        """Get the API base URL for the configured environment."""
        if self.sandbox:
            return "https://api-sandbox.tamara.co"
        return "https://api.tamara.co"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.api_token:
            raise ValueError("api_token cannot be empty")


@dataclass(frozen=True)
class PaymentClientConfig:
    """Top-level client configuration. Only configured gateways are built."""

    moyasar: MoyasarConfig | None = None
    paypal: PayPalConfig | None = None
    paymob: PaymobConfig | None = None
    stripe: StripeConfig | None = None
    tabby: TabbyConfig | None = None
    tamara: TamaraConfig | None = None
    hooks: "PaymentHooks | None" = None
    default_gateway: GatewayName | None = None
    verify_webhooks_async: bool = False

    def configured(self) -> list[GatewayName]:
        """Names of gateways with a config present, in declaration order."""
        return [name for name in GatewayName if getattr(self, name.value) is not None]
