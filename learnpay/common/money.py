"""Conversions between display amounts and integer minor units.

Everything below the HTTP layer works in minor units (paise, cents); decimals
only appear when parsing requests and rendering responses.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from learnpay.common.errors import InvalidAmount


CURRENCY_EXPONENTS: dict[str, int] = {
    "INR": 2,
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "SGD": 2,
    "AED": 2,
    "JPY": 0,
    "KWD": 3,
}


def exponent_for(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), 2)


def to_minor(amount: Decimal | int | str, currency: str) -> int:
    """Convert a display amount to minor units.

    Rejects values with more precision than the currency allows instead of
    rounding them away.
    """

    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise InvalidAmount(f"invalid amount {amount!r}") from exc
    if not value.is_finite():
        raise InvalidAmount(f"invalid amount {amount!r}")
    scaled = value.scaleb(exponent_for(currency))
    if scaled != scaled.to_integral_value():
        raise InvalidAmount(f"amount {amount} has too many decimal places for {currency.upper()}")
    return int(scaled)


def to_major(amount_minor: int, currency: str) -> Decimal:
    exponent = exponent_for(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return (Decimal(amount_minor).scaleb(-exponent)).quantize(quantum, rounding=ROUND_HALF_UP)
