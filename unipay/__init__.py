"""
unipay - Unified async payment gateway SDK.

Moyasar, PayPal, Paymob, Stripe, Tabby and Tamara behind one interface.
"""

from unipay.client import PaymentClient
from unipay.exceptions import (
    AuthenticationError,
    CardDeclinedError,
    GatewayApiError,
    GatewayNotConfiguredError,
    InsufficientFundsError,
    InvalidRequestError,
    InvalidWebhookError,
    MissingCredentialsError,
    NetworkError,
    PaymentAbortedError,
    PaymentError,
    RateLimitError,
)
from unipay.models.config import (
    MoyasarConfig,
    PaymentClientConfig,
    PaymobConfig,
    PayPalConfig,
    StripeConfig,
    TabbyConfig,
    TamaraConfig,
)
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
from unipay.models.webhook import WebhookEvent
from unipay.services.hooks import (
    AfterHookResult,
    BeforeHookResult,
    HookContext,
    PaymentHooks,
)

__version__ = "0.1.0"

__all__ = [
    "PaymentClient",
    # Config
    "PaymentClientConfig",
    "MoyasarConfig",
    "PayPalConfig",
    "PaymobConfig",
    "StripeConfig",
    "TabbyConfig",
    "TamaraConfig",
    # Models
    "GatewayName",
    "PaymentStatus",
    "RefundStatus",
    "OperationType",
    "CreatePaymentParams",
    "CaptureParams",
    "RefundParams",
    "VoidParams",
    "GetPaymentParams",
    "GatewayPaymentResult",
    "GatewayRefundResult",
    "WebhookEvent",
    # Hooks
    "PaymentHooks",
    "HookContext",
    "BeforeHookResult",
    "AfterHookResult",
    # Errors
    "PaymentError",
    "CardDeclinedError",
    "InsufficientFundsError",
    "AuthenticationError",
    "RateLimitError",
    "InvalidRequestError",
    "NetworkError",
    "PaymentAbortedError",
    "GatewayNotConfiguredError",
    "InvalidWebhookError",
    "GatewayApiError",
    "MissingCredentialsError",
]
