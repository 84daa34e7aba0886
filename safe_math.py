"""
Safe Math Utility - Decimal string arithmetic

Prices and token amounts travel through the bot as decimal strings.
These helpers convert between strings, Decimals and raw integer units
without ever going through float.
"""
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP, getcontext
from typing import Union, Optional

# 78 digits covers uint256 exactly
getcontext().prec = 78

Number = Union[int, float, str, Decimal, None]


def to_decimal(value: Number, default: Optional[Decimal] = None) -> Decimal:
    """
    Convert a value to Decimal.

    Floats are converted via str() so 0.1 stays 0.1.

    Examples:
        >>> to_decimal("100")
        Decimal('100')
        >>> to_decimal(0.5)
        Decimal('0.5')
        >>> to_decimal("abc", default=Decimal(0))
        Decimal('0')
    """
    if value is None:
        if default is not None:
            return default
        raise ValueError("Cannot convert None to Decimal")

    if isinstance(value, Decimal):
        return value

    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        if default is not None:
            return default
        raise ValueError(f"Not a decimal number: {value!r}")


def decimal_to_str(value: Number) -> str:
    """
    Render a Decimal as a plain string without exponent or trailing zeros.

    Examples:
        >>> decimal_to_str(Decimal("50.0"))
        '50'
        >>> decimal_to_str(Decimal("200"))
        '200'
        >>> decimal_to_str(Decimal("0.000120"))
        '0.00012'
    """
    d = to_decimal(value)
    if d == 0:
        return "0"
    return format(d.normalize(), "f")


def parse_units(amount: Number, decimals: int = 18) -> int:
    """
    Convert a human amount ("1.5") to raw integer units.
    Precision beyond `decimals` is truncated.

    Examples:
        >>> parse_units("1.5", 18)
        1500000000000000000
    """
    d = to_decimal(amount)
    scaled = (d * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def format_units(raw: Union[int, str], decimals: int = 18) -> str:
    """
    Convert raw integer units to a human decimal string.

    Examples:
        >>> format_units(1500000000000000000, 18)
        '1.5'
        >>> format_units(0, 18)
        '0'
    """
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return "0"
    return decimal_to_str(Decimal(value) / (Decimal(10) ** decimals))


def round_half_up(value: Number) -> int:
    """Round to nearest integer, halves away from zero."""
    return int(to_decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def safe_div_percentage(
    current: Number,
    previous: Number,
    default: Optional[Decimal] = None
) -> Optional[Decimal]:
    """
    Safe percentage change calculation.

    Calculates: ((current - previous) / previous) * 100

    Examples:
        >>> safe_div_percentage("150", "100")
        Decimal('50')
        >>> safe_div_percentage("50", "100")
        Decimal('-50')
        >>> safe_div_percentage("100", "0") is None
        True
    """
    try:
        cur = to_decimal(current)
        prev = to_decimal(previous)
    except ValueError:
        return default

    if prev == 0:
        return default

    return (cur - prev) / prev * 100
