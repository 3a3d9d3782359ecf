"""
Minor-unit money arithmetic.

Responsibility:
    Convert between caller-facing Decimal amounts and the integer minor
    units the ledger stores.  Every balance comparison in the ledger is an
    integer comparison.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Conversion never rounds.  An amount with more precision than one
      minor unit raises InvalidAmountError.
    - float is rejected outright; binary floating point cannot represent
      most cent values.
"""

from decimal import Decimal, InvalidOperation

from ledger_kernel.exceptions import InvalidAmountError

MINOR_UNIT_EXPONENT = 2
MINOR_UNIT = Decimal(1).scaleb(-MINOR_UNIT_EXPONENT)  # Decimal("0.01")
_SCALE = 10 ** MINOR_UNIT_EXPONENT


def to_decimal(value: Decimal | int | str) -> Decimal:
    """Parse a caller-supplied amount without losing precision."""
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(repr(value), "use Decimal or str, not float")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmountError(str(value), "not a number") from None
    if not result.is_finite():
        raise InvalidAmountError(str(value), "not a finite number")
    return result


def to_minor(value: Decimal | int | str, *, allow_negative: bool = False) -> int:
    """
    Convert an amount to minor units.

    Raises:
        InvalidAmountError: negative (unless allowed) or finer than MINOR_UNIT.
    """
    amount = to_decimal(value)
    if amount < 0 and not allow_negative:
        raise InvalidAmountError(str(value), "must not be negative")
    scaled = amount * _SCALE
    if scaled != scaled.to_integral_value():
        raise InvalidAmountError(
            str(value), f"more precise than one minor unit ({MINOR_UNIT})"
        )
    return int(scaled)


def from_minor(minor: int) -> Decimal:
    """Minor units back to a Decimal with exactly two places."""
    return (Decimal(minor) / _SCALE).quantize(MINOR_UNIT)


def format_minor(minor: int) -> str:
    return str(from_minor(minor))
