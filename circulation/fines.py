import math
from datetime import timedelta
from typing import NamedTuple

from .domain import LoanStatus, parse_timestamp

ONE_DAY = timedelta(days=1)


class Accrual(NamedTuple):
    days_overdue: int
    fine_amount: float


def classify(loan, now):
    """Status a loan should have at ``now``.

    Returned loans are always ``returned`` whatever their due date.
    """
    if loan.is_closed:
        return LoanStatus.RETURNED
    if loan.due_date and parse_timestamp(now) > loan.due_at:
        return LoanStatus.OVERDUE
    return LoanStatus.BORROWED


def days_between(start, end):
    """Whole days from ``start`` to ``end``, rounded up; never negative.

    An hour late is a full day late.
    """
    elapsed = parse_timestamp(end) - parse_timestamp(start)
    if elapsed <= timedelta(0):
        return 0
    return math.ceil(elapsed / ONE_DAY)


def accrue(loan, fine_per_day, now):
    end = loan.return_date or now
    if not loan.due_date:
        return Accrual(0, 0)
    days = days_between(loan.due_date, end)
    return Accrual(days, days * fine_per_day)
