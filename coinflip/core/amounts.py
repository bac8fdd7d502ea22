"""
CRC amount codec.

Amounts travel as decimal strings ("1", "0.25") and are compared on-chain in
base units (atto-CRC, 18 decimals). Conversion is string based so no precision
is lost at 18 decimals.
"""

import re
from decimal import Decimal

from coinflip.core.exceptions import InvalidAmount

DECIMALS = 18
BASE = 10 ** DECIMALS
AMOUNT_PATTERN = re.compile(r"^(0|[1-9]\d*)(\.\d{1,18})?$")


def _validate(value: str, field_label: str) -> str:
    if not isinstance(value, str) or not AMOUNT_PATTERN.match(value):
        raise InvalidAmount(f"{field_label} must be a decimal string with up to {DECIMALS} decimals")
    return value


def parse_decimal_amount(value: str, field_label: str = "amount") -> Decimal:
    """Validate a decimal amount string and return it as a Decimal."""
    _validate(value, field_label)
    parsed = Decimal(value)
    if parsed <= 0:
        raise InvalidAmount(f"{field_label} must be greater than 0")
    return parsed


def to_base_units(value: str, field_label: str = "amount") -> int:
    """Scale a decimal amount string by 10^18."""
    _validate(value, field_label)
    whole, _, fraction = value.partition(".")
    units = int(whole) * BASE + int(fraction.ljust(DECIMALS, "0") or "0")
    if units <= 0:
        raise InvalidAmount(f"{field_label} must be greater than 0")
    return units


def from_base_units(units: int) -> str:
    """Inverse of `to_base_units`; trailing fractional zeros are trimmed."""
    if units < 0:
        raise InvalidAmount("Base unit amounts cannot be negative")
    whole, fraction = divmod(int(units), BASE)
    fraction_text = str(fraction).rjust(DECIMALS, "0").rstrip("0")
    return f"{whole}.{fraction_text}" if fraction_text else str(whole)
