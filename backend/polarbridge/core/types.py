"""
Polar Bridge - Canonical Amount & Rate Types
============================================

RULE: No floats allowed for amounts, prices or rates.

Amount: int smallest units of the asset (1 XLM = 10_000_000 stroops,
        1 INR = 1_000_000 micros)
        - Daily accrual never drifts
        - JSON-serializable as integer

Price / Rate: Decimal
        - Serialized as string in JSON
        - Never use float

All schemas and models MUST import from here.
"""

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Annotated, Any

from pydantic import BeforeValidator, PlainSerializer, WithJsonSchema


# =============================================================================
# AMOUNTS (Integer smallest units)
# =============================================================================


def _validate_units(v: Any) -> int:
    """
    Validate an amount in smallest units.

    Accepts:
        - int: Already in smallest units
        - str / Decimal: Must be a whole number
        - float: REJECTED (raises ValueError)
    """
    if isinstance(v, bool):
        raise ValueError(f"Invalid amount type: {type(v)}")

    if isinstance(v, float):
        raise ValueError(
            "Float not allowed for amounts. Use int smallest units. "
            f"Got: {v}"
        )

    if isinstance(v, int):
        return v

    if isinstance(v, (str, Decimal)):
        try:
            dec = Decimal(str(v))
        except Exception:
            raise ValueError(f"Invalid amount: {v}")
        if dec % 1 != 0:
            raise ValueError(f"Amount must be whole smallest units, got: {v}")
        return int(dec)

    raise ValueError(f"Invalid amount type: {type(v)}")


# Amount type: stored and transferred as integer smallest units
UnitAmount = Annotated[
    int,
    BeforeValidator(_validate_units),
    WithJsonSchema({"type": "integer", "description": "Amount in smallest indivisible units"}),
]


class Units:
    """
    Helpers for integer smallest-unit amounts.

    Usage:
        stroops = Units.from_decimal("12.5", 10_000_000)   # -> 125_000_000
        Units.to_decimal(125_000_000, 10_000_000)          # -> Decimal("12.5")
        Units.multiply(500_000_000, "0.02")                # -> 10_000_000
    """

    @staticmethod
    def from_decimal(amount: Decimal | str | int, scale: int) -> int:
        """Convert whole-asset amount to smallest units (half-up)."""
        if isinstance(amount, float):
            raise ValueError("Float not allowed. Use Decimal or string.")
        dec = Decimal(str(amount)) * scale
        return int(dec.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def to_decimal(units: int, scale: int) -> Decimal:
        """Convert smallest units to a whole-asset Decimal."""
        return Decimal(units) / scale

    @staticmethod
    def multiply(units: int, factor: Decimal | str | int) -> int:
        """Multiply an amount by a factor, rounding half-up to whole units."""
        if isinstance(factor, float):
            raise ValueError("Float not allowed. Use Decimal or string.")
        result = Decimal(units) * Decimal(str(factor))
        return int(result.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def ceil(value: Decimal) -> int:
        return int(value.to_integral_value(rounding=ROUND_CEILING))

    @staticmethod
    def floor(value: Decimal) -> int:
        return int(value.to_integral_value(rounding=ROUND_FLOOR))


# =============================================================================
# DECIMALS (prices, ratios)
# =============================================================================

def _validate_decimal(v: Any) -> Decimal:
    """Validate a Decimal value. Floats are rejected."""
    if isinstance(v, float):
        raise ValueError(f"Float not allowed. Use Decimal or string. Got: {v}")

    if isinstance(v, Decimal):
        return v

    if isinstance(v, (str, int)):
        try:
            return Decimal(str(v))
        except Exception:
            raise ValueError(f"Invalid decimal: {v}")

    raise ValueError(f"Invalid decimal type: {type(v)}")


def _serialize_decimal(v: Decimal) -> str:
    """Serialize Decimal as string (prevents JSON float issues)."""
    return str(v)


def _validate_price(v: Any) -> Decimal:
    dec = _validate_decimal(v)
    if dec <= 0:
        raise ValueError(f"Price must be positive, got: {dec}")
    return dec


Price = Annotated[
    Decimal,
    BeforeValidator(_validate_price),
    PlainSerializer(_serialize_decimal),
    WithJsonSchema({"type": "string", "description": "Price per whole collateral unit"}),
]


Ratio = Annotated[
    Decimal,
    BeforeValidator(_validate_decimal),
    PlainSerializer(_serialize_decimal),
    WithJsonSchema({"type": "string", "description": "Unbounded decimal ratio"}),
]


# =============================================================================
# RATE (Decimal, 0-1)
# =============================================================================

def _validate_rate(v: Any) -> Decimal:
    """Validate rate/percentage as Decimal 0-1."""
    dec = _validate_decimal(v)

    if dec < 0 or dec > 1:
        raise ValueError(f"Rate must be 0-1, got: {dec}")

    return dec


Rate = Annotated[
    Decimal,
    BeforeValidator(_validate_rate),
    PlainSerializer(_serialize_decimal),
    WithJsonSchema({"type": "string", "description": "Rate as decimal 0-1"}),
]


__all__ = [
    "UnitAmount",
    "Units",
    "Price",
    "Ratio",
    "Rate",
]
