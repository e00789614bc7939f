"""
Currency codec for USD amounts.

All money is handled internally as integer microcents (1e-8 USD) so that
per-token AI costs can be summed and marked up without floating-point error.
"""

import math
import re
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from .errors import InvalidAmount, OutOfRange

MICROCENTS_PER_CENT = 1_000_000
MICROCENTS_PER_DOLLAR = 100_000_000
FRACTION_DIGITS = 8

# Largest integer a JSON/JavaScript number can carry without losing precision
MAX_SAFE_INTEGER = 2 ** 53 - 1

_USD_PATTERN = re.compile(r"([+-]?)(\d+)(?:\.(\d+))?", re.ASCII)

UsdInput = Union[str, int, float, Decimal]


class RoundingMode(str, Enum):
    """Rounding applied when dividing microcents into coarser units."""
    CEIL = "ceil"
    FLOOR = "floor"
    ROUND = "round"  # half up


def coerce_rounding(mode: Union[RoundingMode, str]) -> RoundingMode:
    """Accept a RoundingMode or its string value."""
    try:
        return RoundingMode(mode)
    except ValueError:
        valid = [m.value for m in RoundingMode]
        raise ValueError(f"Rounding mode must be one of: {valid}")


def round_divide(numerator: int, divisor: int, mode: Union[RoundingMode, str]) -> int:
    """Divide two nonnegative integers with the given rounding mode.

    Args:
        numerator: Nonnegative dividend
        divisor: Positive divisor
        mode: Rounding mode

    Returns:
        Rounded integer quotient

    Raises:
        ZeroDivisionError: If divisor is zero
    """
    if divisor == 0:
        raise ZeroDivisionError("Division by zero")
    mode = coerce_rounding(mode)
    if mode is RoundingMode.FLOOR:
        return numerator // divisor
    if mode is RoundingMode.CEIL:
        return (numerator + divisor - 1) // divisor
    return (numerator + divisor // 2) // divisor


def _normalize_usd_input(value: UsdInput) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float, Decimal)):
        raise InvalidAmount(f"USD amount must be a string or number, got {type(value).__name__}")

    if isinstance(value, Decimal):
        raw = format(value, "f") if value.is_finite() else str(value)
    else:
        raw = str(value)

    trimmed = raw.strip()
    if not trimmed:
        raise InvalidAmount("USD amount is required")

    cleaned = trimmed.replace("$", "").replace(",", "")
    if not cleaned.isascii():
        raise InvalidAmount(f'USD amount is invalid: "{cleaned}"')
    if "e" in cleaned.lower():
        try:
            number = float(cleaned)
        except ValueError:
            raise InvalidAmount(f'USD amount is invalid: "{cleaned}"')
        if not math.isfinite(number):
            raise InvalidAmount(f'USD amount is invalid: "{cleaned}"')
        return f"{number:.9f}"
    return cleaned


def parse_usd_to_microcents(value: UsdInput) -> int:
    """Parse a USD amount into integer microcents.

    Accepts strings such as "0.0034", "$12,345.60" or "1.5e-7" as well as
    ints, floats and Decimals. Digits beyond the eighth fractional place are
    rounded half up.

    Args:
        value: USD amount

    Returns:
        Amount in microcents

    Raises:
        InvalidAmount: If the amount is malformed or negative
    """
    normalized = _normalize_usd_input(value)
    match = _USD_PATTERN.fullmatch(normalized)
    if not match:
        raise InvalidAmount(f'USD amount is invalid: "{normalized}"')

    sign, whole, fraction = match.group(1), match.group(2), match.group(3) or ""
    if sign == "-":
        raise InvalidAmount("USD amount must be non-negative")

    padded = fraction.ljust(FRACTION_DIGITS, "0")
    microcents = int(whole) * MICROCENTS_PER_DOLLAR + int(padded[:FRACTION_DIGITS])

    remainder = fraction[FRACTION_DIGITS:]
    if remainder and int(remainder[0]) >= 5:
        microcents += 1

    return microcents


def safe_parse_usd_to_microcents(value: Optional[UsdInput]) -> Optional[int]:
    """Like parse_usd_to_microcents, but returns None instead of raising."""
    if value is None:
        return None
    try:
        return parse_usd_to_microcents(value)
    except InvalidAmount:
        return None


def microcents_to_cents(microcents: int, rounding: Union[RoundingMode, str] = RoundingMode.CEIL) -> int:
    """Convert microcents to whole cents.

    Args:
        microcents: Nonnegative amount in microcents
        rounding: Rounding mode, ceil by default so real usage is never under-billed

    Returns:
        Amount in cents

    Raises:
        InvalidAmount: If microcents is negative
        OutOfRange: If the result exceeds MAX_SAFE_INTEGER
    """
    if microcents < 0:
        raise InvalidAmount("Microcents must be non-negative")
    cents = round_divide(microcents, MICROCENTS_PER_CENT, rounding)
    if cents > MAX_SAFE_INTEGER:
        raise OutOfRange("Value exceeds safe integer range")
    return cents


def microcents_to_usd(microcents: int) -> Decimal:
    """Exact USD value of a microcent amount."""
    return Decimal(microcents).scaleb(-FRACTION_DIGITS)


def format_microcents(microcents: int, places: Optional[int] = None) -> str:
    """Format microcents as a USD decimal string.

    Without places the shortest exact representation is used ("0.0034",
    "12"); with places the value is rounded half up for display.
    """
    usd = microcents_to_usd(microcents)
    if places is not None:
        sign = "-" if microcents < 0 else ""
        scaled = round_divide(abs(microcents), 10 ** (FRACTION_DIGITS - places), RoundingMode.ROUND)
        return sign + format(Decimal(scaled).scaleb(-places), "f")
    text = format(usd, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
