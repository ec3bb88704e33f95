"""
Payment Matching Module

Groups a loan's ledger by scheduled period. The ledger, not the calendar,
decides which period a payment satisfies: grouping uses each payment's
declared target period, never its date.
"""

import logging
from typing import Dict, Iterable, List, Sequence

from .amortization import ScheduleEntry
from .currency import Currency, Money
from .ledger import Payment, ledger_total


logger = logging.getLogger("loan_engine.matching")


def match_payments_to_periods(
    payments: Iterable[Payment],
    schedule_entries: Sequence[ScheduleEntry]
) -> Dict[int, List[Payment]]:
    """
    Group payments by the period they target

    Args:
        payments: Ledger entries for one loan
        schedule_entries: The loan's schedule

    Returns:
        Mapping of every scheduled period index to its payments (possibly
        empty), each list ordered by date paid. Split payments stay
        individual so they remain auditable.
    """
    matched: Dict[int, List[Payment]] = {entry.period: [] for entry in schedule_entries}

    for payment in payments:
        period = getattr(payment, 'month_for', None)
        if period not in matched:
            logger.debug(
                "Payment %s targets period %r outside the schedule; ignored for matching",
                getattr(payment, 'id', '?'), period
            )
            continue
        matched[period].append(payment)

    for period_payments in matched.values():
        period_payments.sort(key=lambda p: p.date_paid)

    return matched


def total_paid(payments: Iterable[Payment], currency: Currency) -> Money:
    """Sum of a period's payments; missing amounts count as zero"""
    return ledger_total(payments, currency)
