from decimal import Decimal, ROUND_HALF_UP

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value):
    """Coerce ints, strings and Decimals to a 2-place Decimal (half-up)."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def percent_of(amount, rate):
    return to_money(Decimal(amount) * Decimal(rate or 0) / Decimal("100"))
