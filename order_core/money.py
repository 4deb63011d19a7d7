from decimal import ROUND_HALF_UP, Decimal

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        # str() first so floats coming back from SQLite sums don't drag binary noise in
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)
