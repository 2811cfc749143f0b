"""
Money helpers - conversion between major and minor currency units.

Amounts cross provider wires in minor units (cents, halalas) and come back
as major-unit Decimals. Rounding is half-up so 2-decimal inputs round-trip.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_CENT = Decimal("0.01")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Coerce a numeric value to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def to_minor_units(amount: Decimal | int | float | str) -> int:
    """Convert a major-unit amount to integer minor units (x100, half-up)."""
    scaled = to_decimal(amount) * 100
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(minor: int | float | str | None) -> Decimal:
    """Convert minor units back to a major-unit Decimal."""
    if minor is None:
        return Decimal("0")
    return to_decimal(minor) / 100


def format_major(amount: Decimal | int | float | str) -> str:
    """Render a major-unit amount as a fixed two-decimal string ("12.50")."""
    return str(to_decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP))


def parse_major(value: str | int | float | None) -> Decimal:
    """Parse a provider major-unit amount ("12.50"), treating missing as zero."""
    if value is None or value == "":
        return Decimal("0")
    return to_decimal(value)
