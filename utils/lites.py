"""
Lite Amount Utilities
Integer lite arithmetic for LKY amounts (1 LKY = 10^8 lites)
"""

import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

logger = logging.getLogger(__name__)

LITES_PER_LKY = 10 ** 8
LKY_DECIMALS = 8

# Plain positive decimal with at most 8 fractional digits, no sign or exponent
_AMOUNT_PATTERN = re.compile(r"^(?:\d+(?:\.\d{0,8})?|\.\d{1,8})$")


class LiteAmountError(ValueError):
    """Raised for amounts that cannot be expressed in lites"""
    pass


def parse_lky_to_lites(text: str) -> int:
    """
    Parse a user-typed LKY amount into lites.

    Accepts "1", "1.5", "0.00000001", ".5"; rejects signs, exponents,
    thousands separators and more than 8 decimals.
    """
    if text is None:
        raise LiteAmountError("Amount is required")
    candidate = str(text).strip()
    if not _AMOUNT_PATTERN.match(candidate):
        raise LiteAmountError(f"Invalid LKY amount: {text!r}")
    whole, _, fraction = candidate.partition(".")
    fraction = (fraction + "0" * LKY_DECIMALS)[:LKY_DECIMALS]
    return int(whole or "0") * LITES_PER_LKY + int(fraction or "0")


def lky_to_lites(amount: Union[str, int, float, Decimal]) -> int:
    """
    Convert a node-reported LKY amount (JSON float) to lites.

    Goes through Decimal(str(x)) so 0.1 becomes exactly 10,000,000 lites.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise LiteAmountError(f"Invalid LKY amount from node: {amount!r}") from e
    return int((value * LITES_PER_LKY).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def lites_to_decimal(lites: int) -> Decimal:
    """Exact LKY value of a lite count"""
    return Decimal(int(lites)) / Decimal(LITES_PER_LKY)


def format_lky(lites: int) -> str:
    """Format lites as LKY with trailing zeros trimmed (150000000 -> '1.5')"""
    lites = int(lites)
    sign = "-" if lites < 0 else ""
    whole, fraction = divmod(abs(lites), LITES_PER_LKY)
    if fraction == 0:
        return f"{sign}{whole}"
    fraction_text = f"{fraction:0{LKY_DECIMALS}d}".rstrip("0")
    return f"{sign}{whole}.{fraction_text}"


def is_valid_tip_amount(lites: int) -> bool:
    """A tip must move at least one lite"""
    return isinstance(lites, int) and not isinstance(lites, bool) and lites >= 1
