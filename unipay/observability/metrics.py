"""
Metrics Collection with Prometheus.

Registers SDK metrics on the default registry so a host application's
``/metrics`` endpoint exposes them alongside its own.
"""

import time
from enum import StrEnum
from typing import Callable

from prometheus_client import Counter, Histogram, Info

from unipay.config import SDK_VERSION


class MetricLabels(StrEnum):
    """Standard metric label names."""

    GATEWAY = "gateway"
    OPERATION = "operation"
    OUTCOME = "outcome"
    METHOD = "method"
    STATUS_CODE = "status_code"
    ERROR_TYPE = "error_type"


class PaymentMetrics:
    """
    Centralized metrics for the payment SDK.

    Covers:
    - Gateway operations (rate, duration, outcome)
    - Provider HTTP calls (rate, status)
    - Webhooks (verified / rejected)
    - Token fetches and hook aborts
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # SDK Info
        # ====================================================================
        self.sdk_info = Info(
            "unipay_sdk",
            "Payment SDK information",
        )
        self.sdk_info.info({"version": SDK_VERSION})

        # ====================================================================
        # Operation Metrics
        # ====================================================================
        self.operations_total = Counter(
            "unipay_operations_total",
            "Total gateway operations",
            [MetricLabels.GATEWAY, MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.operation_duration_seconds = Histogram(
            "unipay_operation_duration_seconds",
            "Gateway operation duration in seconds (hooks included)",
            [MetricLabels.GATEWAY, MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.hook_aborts_total = Counter(
            "unipay_hook_aborts_total",
            "Operations aborted by a lifecycle hook",
            [MetricLabels.GATEWAY, MetricLabels.OPERATION, "stage"],
        )

        # ====================================================================
        # Provider HTTP Metrics
        # ====================================================================
        self.provider_requests_total = Counter(
            "unipay_provider_requests_total",
            "Total HTTP requests sent to payment providers",
            [MetricLabels.GATEWAY, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.provider_request_duration_seconds = Histogram(
            "unipay_provider_request_duration_seconds",
            "Provider HTTP request duration in seconds",
            [MetricLabels.GATEWAY],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.token_fetches_total = Counter(
            "unipay_token_fetches_total",
            "Access token fetches (cache misses)",
            [MetricLabels.GATEWAY],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "unipay_webhooks_total",
            "Inbound webhooks by verification outcome",
            [MetricLabels.GATEWAY, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "unipay_errors_total",
            "Total errors by type",
            [MetricLabels.GATEWAY, MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_operation(
        self, gateway: str, operation: str, success: bool, duration: float
    ) -> None:
        """Record a completed gateway operation."""
        self.operations_total.labels(
            gateway=gateway, operation=operation, outcome="success" if success else "error"
        ).inc()
        self.operation_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration
        )

    def record_hook_abort(self, gateway: str, operation: str, stage: str) -> None:
        """Record an abort raised by a before or after hook."""
        self.hook_aborts_total.labels(gateway=gateway, operation=operation, stage=stage).inc()

    def record_provider_request(
        self, gateway: str, method: str, status_code: int | str, duration: float
    ) -> None:
        """Record one HTTP exchange with a provider."""
        self.provider_requests_total.labels(
            gateway=gateway, method=method, status_code=str(status_code)
        ).inc()
        self.provider_request_duration_seconds.labels(gateway=gateway).observe(duration)

    def record_token_fetch(self, gateway: str) -> None:
        """Record an access-token fetch."""
        self.token_fetches_total.labels(gateway=gateway).inc()

    def record_webhook(self, gateway: str, verified: bool) -> None:
        """Record a webhook verification outcome."""
        self.webhooks_total.labels(
            gateway=gateway, outcome="verified" if verified else "rejected"
        ).inc()

    def record_error(self, gateway: str, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(
            gateway=gateway, error_type=error_type, operation=operation
        ).inc()


# Global metrics instance
metrics = PaymentMetrics()


class track_provider_request:
    """
    Context manager for timing provider HTTP calls.

    Usage:
        with track_provider_request("paypal", "POST") as tracker:
            response = await client.request(...)
            tracker.set_status_code(response.status_code)
    """

    def __init__(self, gateway: str, method: str) -> None:
        self.gateway = gateway
        self.method = method
        self.status_code: int | str = "error"
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_provider_request":
        """Start tracking."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.perf_counter() - self.start_time
        metrics.record_provider_request(self.gateway, self.method, self.status_code, duration)


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get a Prometheus exposition handler for a host web framework.

    Usage:
        handler = get_metrics_handler()
        body = handler()
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
