"""Money value type.

Form input is parsed exactly once, at the boundary, with ``Money.parse``.
Accepted forms::

    "$1,234.56"   "1,234.56"   "1234.56"   "1234"   "$0.50"   " 12.5 "

Anything else (letters, misplaced commas, more than two decimals, signs,
empty strings) raises ``ValidationFailure``.

Values already stored on documents go through ``Money.coerce``, which also
accepts JSON numbers and plain numeric strings, and treats missing / blank
values as zero.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .errors import ValidationFailure

_CENT = Decimal("0.01")

# Either grouped thousands (1,234,567) or a plain digit run, optional cents.
_MONEY_RE = re.compile(r"^\$?(?P<whole>\d{1,3}(?:,\d{3})+|\d+)(?:\.(?P<frac>\d{1,2}))?$")


@dataclass(frozen=True, order=True)
class Money:
    """A USD amount held as a ``Decimal``."""

    amount: Decimal = Decimal("0")

    @classmethod
    def parse(cls, text: str, field_name: str = "") -> Money:
        """Parse user-entered currency text."""
        if not isinstance(text, str):
            raise ValidationFailure(f"expected text, got {type(text).__name__}", field_name)
        match = _MONEY_RE.match(text.strip())
        if not match:
            raise ValidationFailure(f"not a currency amount: {text!r}", field_name)
        whole = match.group("whole").replace(",", "")
        frac = match.group("frac") or "0"
        return cls(Decimal(f"{whole}.{frac}"))

    @classmethod
    def coerce(cls, value: Any, field_name: str = "") -> Money:
        """Read a stored money field leniently.

        None and blank strings are zero.  Numbers are taken as-is (floats via
        their repr so 0.1 stays 0.1).  Strings may be either a form-style
        amount or a plain decimal literal, including negatives.
        """
        if value is None:
            return cls()
        if isinstance(value, Money):
            return value
        if isinstance(value, bool):
            raise ValidationFailure(f"boolean is not a money value: {value!r}", field_name)
        if isinstance(value, Decimal):
            return cls(value)
        if isinstance(value, int):
            return cls(Decimal(value))
        if isinstance(value, float):
            return cls(Decimal(repr(value)))
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return cls()
            if _MONEY_RE.match(text):
                return cls.parse(text, field_name)
            try:
                number = Decimal(text)
            except InvalidOperation:
                raise ValidationFailure(f"not a money value: {value!r}", field_name) from None
            if not number.is_finite():
                raise ValidationFailure(f"not a money value: {value!r}", field_name)
            return cls(number)
        raise ValidationFailure(f"unsupported money value: {value!r}", field_name)

    # -- arithmetic --------------------------------------------------------

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount + other.amount)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount - other.amount)

    def __bool__(self) -> bool:
        return self.amount != 0

    def rounded(self) -> Decimal:
        """Amount rounded half-up to cents."""
        return self.amount.quantize(_CENT, rounding=ROUND_HALF_UP)

    def __str__(self) -> str:
        return format_currency(self.amount)


ZERO = Money()


def format_currency(amount: Decimal | float | Money | None) -> str:
    """Format an amount as USD currency: '$1,510.00'.

    Negative amounts render as '-$12.00'.  Returns '$0.00' for None.
    """
    if amount is None:
        return "$0.00"
    if isinstance(amount, Money):
        amount = amount.amount
    value = Decimal(repr(amount)) if isinstance(amount, float) else Decimal(amount)
    value = value.quantize(_CENT, rounding=ROUND_HALF_UP)
    if value < 0:
        return f"-${-value:,.2f}"
    return f"${value:,.2f}"
