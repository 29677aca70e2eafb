"""
Rent and service fee calculation.

Rates are monthly. The daily rate is the monthly rate divided by the number
of days in the start month, nights are whole days (rounded up), and every
amount is rounded half-up to whole currency units. The quote endpoint and the
booking path both call price(), so a quoted total is exactly what is charged.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from rental_core.config import MIN_LEASE_MONTHS, SERVICE_FEE_RATE
from rental_core.errors import InvalidAmount, InvalidDateRange, InvalidDuration
from rental_core.utils.datetime import days_in_month

DAYS_PER_MONTH = Decimal("30.44")
WHOLE_UNIT = Decimal("1")


def round_amount(value: Decimal) -> Decimal:
    return value.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Quote:
    rent: Decimal
    service_fee: Decimal
    total: Decimal
    nights: int
    daily_rate: Decimal
    fee_rate: Decimal
    currency: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "rent": str(self.rent),
            "service_fee": str(self.service_fee),
            "total": str(self.total),
            "nights": self.nights,
            "daily_rate": str(self.daily_rate),
            "fee_rate": str(self.fee_rate),
            "currency": self.currency,
        }


def count_nights(start: date, end: date) -> int:
    # Date differences are already whole days; ceil keeps the rule explicit
    return math.ceil((end - start).days)


def check_minimum_lease(start: date, end: date, min_lease_months: int) -> None:
    """
    Raise InvalidDuration when [start, end) is shorter than the minimum lease.

    Months are approximated as 30.44 days.
    """
    if min_lease_months <= 0:
        return
    required_days = DAYS_PER_MONTH * min_lease_months
    if Decimal((end - start).days) < required_days:
        raise InvalidDuration(
            f"Minimum lease duration is {min_lease_months} month(s)",
            min_lease_months=min_lease_months,
        )


def price(
    monthly_rate: Decimal,
    start: date,
    end: date,
    fee_rate: Decimal = SERVICE_FEE_RATE,
    min_lease_months: int = MIN_LEASE_MONTHS,
    currency: Optional[str] = None,
) -> Quote:
    """
    Compute the charge for staying from ``start`` (inclusive) to ``end`` (exclusive).

    Args:
        monthly_rate: Property rate per month
        start: First night
        end: Checkout date, must be after start
        fee_rate: Service fee as a fraction of rent (0.05 = 5%)
        min_lease_months: Minimum stay in months, 0 disables the check
        currency: Currency code carried through to the quote

    Returns:
        Quote with rent, service_fee and total (rent + service_fee)

    Raises:
        InvalidDateRange: end is not after start
        InvalidDuration: stay shorter than the minimum lease
        InvalidAmount: rate is not positive

    Example:
        >>> q = price(Decimal("3000"), date(2024, 6, 1), date(2024, 6, 10))
        >>> (q.rent, q.service_fee, q.total)
        (Decimal('900'), Decimal('45'), Decimal('945'))
    """
    if end <= start:
        raise InvalidDateRange("End date must be after start date")
    monthly_rate = Decimal(str(monthly_rate))
    fee_rate = Decimal(str(fee_rate))
    if monthly_rate <= 0:
        raise InvalidAmount("Monthly rate must be greater than zero")

    check_minimum_lease(start, end, min_lease_months)

    nights = count_nights(start, end)
    daily_rate = monthly_rate / Decimal(days_in_month(start))
    rent = round_amount(daily_rate * nights)
    service_fee = round_amount(rent * fee_rate)

    return Quote(
        rent=rent,
        service_fee=service_fee,
        total=rent + service_fee,
        nights=nights,
        daily_rate=daily_rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        fee_rate=fee_rate,
        currency=currency,
    )
