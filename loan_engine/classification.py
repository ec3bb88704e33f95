"""
Period Classification Module

Derives a display status for each scheduled period from the payments matched
to it and the current date. Rules are checked in a fixed order and the first
match wins:

1. Paid within tolerance: paid-advance if the due date is still in the
   future, late-paid if any payment landed after the due date, else paid.
2. Some but not enough paid: partial.
3. Due in the current calendar month: current.
4. Due strictly before today: overdue.
5. Otherwise: upcoming.

Rule 3 precedes rule 4, so a period due earlier this month reads as current.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union
from enum import Enum

from .amortization import LoanSchedule, ScheduleEntry
from .clock import as_date
from .currency import Money
from .ledger import Payment, ledger_total
from .matching import match_payments_to_periods


DEFAULT_EMI_TOLERANCE = Decimal('1.00')


class PeriodStatus(Enum):
    """Status of one scheduled period"""
    PAID = "paid"
    PAID_ADVANCE = "paid-advance"
    LATE_PAID = "late-paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    UPCOMING = "upcoming"
    CURRENT = "current"

    @property
    def is_satisfied(self) -> bool:
        return self in (PeriodStatus.PAID, PeriodStatus.PAID_ADVANCE, PeriodStatus.LATE_PAID)


def classify_period(
    entry: ScheduleEntry,
    payments: Iterable[Payment],
    today: Union[date, datetime],
    tolerance: Decimal = DEFAULT_EMI_TOLERANCE
) -> PeriodStatus:
    """
    Classify one scheduled period

    Args:
        entry: Scheduled period
        payments: Payments targeting this period
        today: Current date (time of day is ignored)
        tolerance: Shortfall still treated as fully paid

    Returns:
        PeriodStatus
    """
    payments = list(payments or [])
    today = as_date(today)
    due = entry.due_date
    total_paid = ledger_total(payments, entry.installment.currency)

    if total_paid.amount >= entry.installment.amount - tolerance:
        if due > today:
            return PeriodStatus.PAID_ADVANCE
        if any(as_date(p.date_paid) > due for p in payments):
            return PeriodStatus.LATE_PAID
        return PeriodStatus.PAID

    if total_paid.is_positive() and total_paid < entry.installment:
        return PeriodStatus.PARTIAL

    if (due.year, due.month) == (today.year, today.month):
        return PeriodStatus.CURRENT

    if due < today:
        return PeriodStatus.OVERDUE

    return PeriodStatus.UPCOMING


@dataclass
class PeriodClassification:
    """A period, its status and the payments behind it, for the repayment grid"""
    entry: ScheduleEntry
    status: PeriodStatus
    amount_paid: Money
    payments: List[Payment] = field(default_factory=list)

    @property
    def shortfall(self) -> Money:
        remaining = self.entry.installment - self.amount_paid
        if remaining.is_negative():
            return Money.zero(remaining.currency)
        return remaining

    @property
    def within_tolerance(self) -> bool:
        """Satisfied although slightly under the installment"""
        return self.status.is_satisfied and self.amount_paid < self.entry.installment


def classify_schedule(
    schedule: LoanSchedule,
    payments: Iterable[Payment],
    today: Union[date, datetime],
    tolerance: Optional[Decimal] = None
) -> List[PeriodClassification]:
    """Classify every period of a schedule against a loan's ledger"""
    tolerance = DEFAULT_EMI_TOLERANCE if tolerance is None else tolerance
    matched = match_payments_to_periods(payments, schedule.entries)

    results = []
    for entry in schedule.entries:
        period_payments = matched.get(entry.period, [])
        results.append(PeriodClassification(
            entry=entry,
            status=classify_period(entry, period_payments, today, tolerance),
            amount_paid=ledger_total(period_payments, schedule.currency),
            payments=period_payments,
        ))
    return results
