from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

Amount = Union[Decimal, int, float, str]

CENT = Decimal("0.01")


def to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, bool):
        raise ValueError("Invalid amount")
    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, float):
        # repr() gives the shortest string that round-trips, so 0.1 stays 0.1
        value = Decimal(repr(amount))
    else:
        try:
            value = Decimal(str(amount).strip())
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
    if not value.is_finite():
        raise ValueError("Invalid amount")
    return value


def to_minor_units(amount: Amount) -> int:
    """Round an amount to whole cents, half-up on the absolute value."""
    cents = (to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def sum_minor_units(values: Iterable[int]) -> int:
    total = 0
    for value in values:
        total += int(value)
    return total


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


def round_amount(amount: Amount) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def format_brl(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    text = f"{from_minor_units(abs(cents)):,.2f}"
    text = text.replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{sign}R$ {text}"
