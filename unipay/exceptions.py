"""
Exception Classes - Strongly typed payment error hierarchy.

Every error carries a stable machine ``code`` and an HTTP-equivalent
``status_code`` so host applications can branch and relay responses.
"""

from typing import Any


class PaymentError(Exception):
    """Base exception for all payment SDK errors."""

    def __init__(self, message: str, code: str, status_code: int = 500) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the shape a host application relays upstream."""
        return {"code": self.code, "message": self.message, "status_code": self.status_code}


class PaymentAbortedError(PaymentError):
    """Raised when a lifecycle hook aborts an operation."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason or "Payment operation was aborted", "PAYMENT_ABORTED", 400)


class GatewayNotConfiguredError(PaymentError):
    """Raised when a gateway is requested but not configured or lacks an operation."""

    def __init__(self, gateway_name: str, detail: str | None = None) -> None:
        self.gateway_name = gateway_name
        message = f"Gateway '{gateway_name}' is not configured"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, "GATEWAY_NOT_CONFIGURED", 400)


class InvalidWebhookError(PaymentError):
    """Raised when webhook verification or payload validation fails."""

    def __init__(
        self,
        message: str = "Webhook verification failed",
        validation_errors: list[Any] | None = None,
    ) -> None:
        self.validation_errors = validation_errors or []
        super().__init__(message, "INVALID_WEBHOOK", 403)


class GatewayApiError(PaymentError):
    """Raised when a provider returns a non-2xx response.

    Adapters narrow this into a more specific subtype where they can;
    otherwise it surfaces unchanged.
    """

    def __init__(
        self,
        message: str,
        gateway_name: str,
        raw_error: Any = None,
        http_status: int | None = None,
    ) -> None:
        self.gateway_name = gateway_name
        self.raw_error = raw_error
        self.http_status = http_status
        super().__init__(message, "GATEWAY_API_ERROR", 502)


class CardDeclinedError(PaymentError):
    """Raised when the card issuer declines the payment."""

    def __init__(self, message: str = "Card was declined", raw_error: Any = None) -> None:
        self.raw_error = raw_error
        super().__init__(message, "CARD_DECLINED", 402)


class InsufficientFundsError(PaymentError):
    """Raised when the funding instrument lacks funds."""

    def __init__(self, message: str = "Insufficient funds", raw_error: Any = None) -> None:
        self.raw_error = raw_error
        super().__init__(message, "INSUFFICIENT_FUNDS", 402)


class AuthenticationError(PaymentError):
    """Raised when gateway credentials are rejected."""

    def __init__(self, message: str = "Authentication failed", raw_error: Any = None) -> None:
        self.raw_error = raw_error
        super().__init__(message, "AUTHENTICATION_FAILED", 401)


class RateLimitError(PaymentError):
    """Raised when a gateway throttles requests."""

    def __init__(self, gateway_name: str, retry_after: int | None = None) -> None:
        self.gateway_name = gateway_name
        self.retry_after = retry_after
        message = f"Rate limit exceeded for {gateway_name}"
        if retry_after is not None:
            message = f"{message}. Retry after {retry_after}s"
        super().__init__(message, "RATE_LIMIT_EXCEEDED", 429)


class InvalidRequestError(PaymentError):
    """Raised when request parameters fail validation locally or at the provider."""

    def __init__(self, message: str, validation_errors: list[Any] | None = None) -> None:
        self.validation_errors = validation_errors or []
        super().__init__(message, "INVALID_REQUEST", 400)


class NetworkError(PaymentError):
    """Raised on transport failures (DNS, timeout, connection reset)."""

    def __init__(
        self,
        message: str = "Network error occurred",
        original_error: BaseException | None = None,
    ) -> None:
        self.original_error = original_error
        super().__init__(message, "NETWORK_ERROR", 503)


class MissingCredentialsError(PaymentError):
    """Raised when an operation needs credentials the gateway config lacks."""

    def __init__(self, gateway_name: str, missing: str) -> None:
        self.gateway_name = gateway_name
        self.missing = missing
        super().__init__(
            f"{gateway_name} is missing required credentials: {missing}",
            "MISSING_CREDENTIALS",
            400,
        )
