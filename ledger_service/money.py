"""
Monetary Amount Handling

Parses and formats Decimal amounts. NEVER uses float for monetary values.
"""

from decimal import Decimal, Inexact, InvalidOperation, ROUND_HALF_UP, Rounded, getcontext, localcontext
from typing import Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

AmountLike = Union[str, int, Decimal]

ZERO = Decimal('0')


def parse_amount(value: AmountLike, precision: int = 2, field: str = "amount") -> Decimal:
    """
    Convert an incoming value to an exact Decimal.

    Args:
        value: String, integer or Decimal amount
        precision: Maximum number of decimal places accepted
        field: Name used in error messages

    Returns:
        Decimal amount

    Raises:
        ValidationError: If the value is a float, not a finite number, or
            carries more decimal places than ``precision``
    """
    # bool is an int subclass
    if isinstance(value, (float, bool)) or not isinstance(value, (str, int, Decimal)):
        raise ValidationError(
            f"{field} must be a decimal string or integer, got {type(value).__name__}",
            {field: str(value)}
        )

    try:
        amount = Decimal(value.strip() if isinstance(value, str) else value)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} is not a valid decimal: {value!r}", {field: str(value)})

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", {field: str(value)})

    try:
        quantized = amount.quantize(quantum(precision), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"{field} is too large", {field: str(value)})

    if amount != quantized:
        raise ValidationError(
            f"{field} has more than {precision} decimal places",
            {field: str(value)}
        )

    return amount


def exact_add(left: Decimal, right: Decimal, field: str = "balance") -> Decimal:
    """
    Add two amounts without rounding.

    Raises:
        ValidationError: If the exact result does not fit the decimal context
    """
    with localcontext() as ctx:
        ctx.traps[Inexact] = True
        ctx.traps[Rounded] = True
        try:
            return left + right
        except (Inexact, Rounded):
            raise ValidationError(
                f"{field} would exceed {ctx.prec} significant digits",
                {"left": str(left), "right": str(right)}
            )


def quantum(precision: int) -> Decimal:
    """Smallest representable step for a precision"""
    return Decimal('0.1') ** precision


def format_amount(amount: Decimal, precision: int = 2) -> str:
    """Format for display and wire output"""
    return str(amount.quantize(quantum(precision), rounding=ROUND_HALF_UP))
