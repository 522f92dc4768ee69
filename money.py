"""
Fixed-point money helpers.

Amounts are plain ints counting minor units (cents). Decimal strings only
appear at the input/display edges; nothing in between touches floats.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN, localcontext
from typing import Any, Union

DEFAULT_PLACES = 2

Number = Union[int, str, Decimal]


class PosError(Exception):
    """Base class for errors raised by the POS engine."""


class InvalidAmount(PosError, ValueError):
    """Negative or non-numeric money (or quantity) input."""


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(f"Not a number: {value!r}")
    if isinstance(value, Decimal):
        dec = value
    elif isinstance(value, (int, float)):
        # floats are accepted at the input edge only, via their shortest repr
        dec = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            raise InvalidAmount("Empty amount")
        try:
            dec = Decimal(text)
        except InvalidOperation:
            raise InvalidAmount(f"Not a number: {value!r}") from None
    else:
        raise InvalidAmount(f"Not a number: {value!r}")
    if not dec.is_finite():
        raise InvalidAmount(f"Not a finite number: {value!r}")
    return dec


def _precision_for(*values: Decimal, places: int = 0) -> int:
    """Context precision wide enough that scaling or multiplying `values` is exact."""
    digits = sum(len(v.as_tuple().digits) for v in values)
    return max(28, digits + abs(places) + 2)


def parse_quantity(value: Any) -> Decimal:
    """Parse a line quantity. Negative values are allowed here; the cart decides what they mean."""
    return _as_decimal(value)


def from_decimal(value: Any, allow_negative: bool = False, places: int = DEFAULT_PLACES) -> int:
    """'12.34' -> 1234. Rejects input finer than one minor unit."""
    dec = _as_decimal(value)
    with localcontext() as ctx:
        ctx.prec = _precision_for(dec, places=places)
        scaled = dec.scaleb(places)
        whole = scaled.to_integral_value()
    if scaled != whole:
        raise InvalidAmount(f"{value!r} has more than {places} decimal places")
    minor = int(scaled)
    if minor < 0 and not allow_negative:
        raise InvalidAmount(f"Negative amount not allowed: {value!r}")
    return minor


def to_decimal(minor: int, places: int = DEFAULT_PLACES) -> str:
    """1234 -> '12.34'"""
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise InvalidAmount(f"Minor units must be an int, got {minor!r}")
    dec = Decimal(minor)
    with localcontext() as ctx:
        ctx.prec = _precision_for(dec, places=places)
        return str(dec.scaleb(-places).quantize(Decimal(1).scaleb(-places)))


def require_non_negative(minor: Any, what: str = "amount") -> int:
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise InvalidAmount(f"{what} must be an integer number of minor units, got {minor!r}")
    if minor < 0:
        raise InvalidAmount(f"{what} must not be negative, got {minor}")
    return minor


def add(*amounts: int) -> int:
    return sum(amounts, 0)


def sub(a: int, b: int) -> int:
    return a - b


def mul(minor: int, scalar: Number) -> int:
    """Multiply by a (possibly fractional) scalar, rounding once, half to even."""
    base, factor = Decimal(minor), _as_decimal(scalar)
    with localcontext() as ctx:
        ctx.prec = _precision_for(base, factor)
        product = base * factor
        return int(product.to_integral_value(rounding=ROUND_HALF_EVEN))
