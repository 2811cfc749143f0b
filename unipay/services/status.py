"""
Status inference shared by order-centric gateways.
"""

from decimal import Decimal

from unipay.models.payment import PaymentStatus


def refund_status(refunded: Decimal | None, captured: Decimal | None) -> PaymentStatus:
    """Full refund when refunded covers captured; unknown amounts count as full."""
    if refunded is None or captured is None or refunded >= captured:
        return PaymentStatus.REFUNDED
    return PaymentStatus.PARTIALLY_REFUNDED


def infer_status(
    *,
    voided: bool,
    refunded: bool,
    pending: bool,
    success: bool,
    refunded_amount: Decimal | None = None,
    captured_amount: Decimal | None = None,
) -> PaymentStatus:
    """
    Derive a status from independent provider flags.

    Priority is void, refund, pending, success; the first match wins.
    """
    if voided:
        return PaymentStatus.CANCELLED
    if refunded:
        return refund_status(refunded_amount, captured_amount)
    if pending:
        return PaymentStatus.PENDING
    if success:
        return PaymentStatus.PAID
    return PaymentStatus.FAILED
