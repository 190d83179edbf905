from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENTS = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceQuote:
    days: int
    rental_fee: Decimal
    service_fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.rental_fee + self.service_fee


def quote(price_per_day: Number, service_fee_percent: Number, days: int) -> PriceQuote:
    """Rental fee is price x days; the platform fee is a percentage on top of it."""
    rental_fee = to_money(Decimal(str(price_per_day)) * days)
    service_fee = to_money(rental_fee * Decimal(str(service_fee_percent)) / Decimal(100))
    return PriceQuote(days=days, rental_fee=rental_fee, service_fee=service_fee)
