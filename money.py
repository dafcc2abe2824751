from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from errors import InvalidOperationError

CENT = Decimal("0.01")


def to_cents(amount: Union[Decimal, int, str]) -> int:
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise InvalidOperationError("Invalid amount") from exc
    if not value.is_finite():
        raise InvalidOperationError("Invalid amount")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)
