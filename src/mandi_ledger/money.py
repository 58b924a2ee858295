"""Fixed-precision helpers for currency and weight quantities.

Every amount that flows through the engine is a :class:`~decimal.Decimal`.
Values coming from the workbook or the command line are parsed through
``str`` so binary floating point never leaks into arithmetic, and results
are quantized to two places with round-half-up.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from .errors import ValidationError


TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

DecimalLike = Union[Decimal, int, float, str]


def to_decimal(value: Optional[DecimalLike], *, field: str = "value") -> Decimal:
    """Convert ``value`` into a :class:`Decimal` without float drift.

    ``None`` and empty strings map to zero. Floats are routed through their
    shortest ``repr`` so ``48.6`` becomes ``Decimal("48.6")`` rather than the
    binary approximation.

    Raises:
        ValidationError: If ``value`` is not a finite number.
    """

    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if not text:
            return ZERO
        try:
            result = Decimal(text)
        except InvalidOperation as exc:
            raise ValidationError(f"{field} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number, got {value!r}")
    return result


def optional_decimal(value: Optional[DecimalLike], *, field: str = "value") -> Optional[Decimal]:
    """Like :func:`to_decimal` but keep ``None``/blank as ``None``."""

    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return to_decimal(value, field=field)


def quantize_money(value: DecimalLike) -> Decimal:
    """Round a currency amount to paise using round-half-up."""

    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def quantize_weight(value: DecimalLike) -> Decimal:
    """Round a weight in kilograms to two places using round-half-up."""

    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def percent_of(amount: DecimalLike, percent: DecimalLike) -> Decimal:
    """Return ``amount * percent / 100`` rounded as money."""

    return quantize_money(to_decimal(amount) * to_decimal(percent) / HUNDRED)


__all__ = [
    "TWO_PLACES",
    "ZERO",
    "to_decimal",
    "optional_decimal",
    "quantize_money",
    "quantize_weight",
    "percent_of",
]
