"""
Payment Schedule Generator

Spreads an approved installment value over the payments implied by the
request's duration and frequency.

ROUNDING:
---------
Every entry is `ceil(total / count)` whole currency units except the last,
which takes whatever is left: `total - amount * (count - 1)`. The entries
therefore always sum to exactly the approved value, including totals with
fractional units. This is the only place rounding is resolved.

    >>> [e.amount for e in generate_payment_schedule(Decimal("1000"), 3, "MONTHLY", today=date(2025, 1, 1))]
    [Decimal('334'), Decimal('334'), Decimal('332')]

DUE DATES:
----------
The first payment is due `first_due_offset_days` (30) after today. Monthly
payments then advance one calendar month per step, clamped to the end of
shorter months; weekly payments advance seven days per step.
"""
from datetime import date, timedelta
from decimal import ROUND_CEILING, Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta

from installments.errors import ScheduleError
from installments.logging import get_logger
from installments.negotiation.states import PaymentFrequency, PaymentStatus
from installments.schemas import ScheduleEntry

logger = get_logger(__name__)

WEEKS_PER_MONTH = 4
WHOLE_UNIT = Decimal("1")
# Largest value a Numeric(14, 2) column holds
MAX_TOTAL = Decimal("999999999999.99")
DEFAULT_FIRST_DUE_OFFSET_DAYS = 30


def payment_count(duration_months: int, frequency: PaymentFrequency) -> int:
    """Number of payments for a duration: one per month, or four per month when weekly."""
    if PaymentFrequency(frequency) is PaymentFrequency.WEEKLY:
        return duration_months * WEEKS_PER_MONTH
    return duration_months


def generate_payment_schedule(
    total_approved_value: Decimal,
    duration_months: int,
    frequency: PaymentFrequency,
    today: Optional[date] = None,
    first_due_offset_days: int = DEFAULT_FIRST_DUE_OFFSET_DAYS,
) -> list[ScheduleEntry]:
    """
    Generate the ordered payment schedule for an approved value.

    Args:
        total_approved_value: Value the offer finances
        duration_months: Requested duration, at least 1
        frequency: WEEKLY or MONTHLY
        today: Reference date for the first due date; defaults to the current date
        first_due_offset_days: Days between today and the first due date

    Returns:
        List of PENDING schedule entries numbered from 1

    Raises:
        ValueError: on a non-positive duration or a negative total
        ScheduleError: when the total is too small to cover every payment, is
            not a finite number, has more than 2 decimal places or exceeds MAX_TOTAL
    """
    frequency = PaymentFrequency(frequency)
    total = Decimal(total_approved_value)

    if duration_months < 1:
        raise ValueError(f"duration_months must be at least 1, got: {duration_months}")
    if not total.is_finite():
        raise ScheduleError(f"Approved value {total} is not a number", total=total)
    if total < 0:
        raise ValueError(f"total_approved_value cannot be negative, got: {total}")
    if total > MAX_TOTAL:
        raise ScheduleError(f"Approved value {total} exceeds the maximum of {MAX_TOTAL}", total=total)
    if total.normalize().as_tuple().exponent < -2:
        raise ScheduleError(f"Approved value {total} has more than 2 decimal places", total=total)

    count = payment_count(duration_months, frequency)
    amount = (total / count).quantize(WHOLE_UNIT, rounding=ROUND_CEILING)
    last_amount = total - amount * (count - 1)

    if last_amount < 0:
        raise ScheduleError(
            f"Approved value {total} is too small for {count} {frequency.value.lower()} payments",
            total=total,
            payments=count,
        )

    first_due = (today or date.today()) + timedelta(days=first_due_offset_days)

    schedule = []
    for i in range(count):
        if frequency is PaymentFrequency.MONTHLY:
            due_date = first_due + relativedelta(months=i)
        else:
            due_date = first_due + timedelta(weeks=i)

        schedule.append(
            ScheduleEntry(
                payment_number=i + 1,
                due_date=due_date,
                amount=last_amount if i == count - 1 else amount,
                status=PaymentStatus.PENDING,
            )
        )

    logger.debug(
        "schedule_generated",
        total=str(total),
        payments=count,
        frequency=frequency.value,
        first_due_date=first_due.isoformat(),
    )

    return schedule
