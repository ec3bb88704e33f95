"""
Arrears Module

Loan-level delinquency metrics. Two strategies exist:

* estimate_arrears: a cheap calendar-elapsed approximation for list views.
  It works from the loan's recorded total paid and is presentation only.
* ArrearsCalculator.snapshot: the golden record, computed from the schedule
  and the full payment ledger. Anything that affects reporting, default
  classification or a displayed balance reads this one.
"""

from decimal import Decimal, ROUND_CEILING
from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union
from enum import Enum

from .amortization import LoanSchedule
from .clock import as_date
from .config import EngineConfig, get_config
from .currency import Money
from .ledger import Payment, ledger_total
from .loans import LoanStatus


DAYS_PER_MONTH_ESTIMATE = 30


class DpdBucket(Enum):
    """Days-past-due bands"""
    CURRENT = "Current"
    DPD_1_30 = "1-30 DPD"
    DPD_31_60 = "31-60 DPD"
    DPD_61_90 = "61-90 DPD"
    DPD_90_PLUS = "90+ DPD"

    @classmethod
    def for_days(cls, days_past_due: int) -> 'DpdBucket':
        if days_past_due <= 0:
            return cls.CURRENT
        elif days_past_due <= 30:
            return cls.DPD_1_30
        elif days_past_due <= 60:
            return cls.DPD_31_60
        elif days_past_due <= 90:
            return cls.DPD_61_90
        else:
            return cls.DPD_90_PLUS


class LoanHealth(Enum):
    COMPLETED = "completed"
    NPL = "npl"
    DELINQUENT = "delinquent"
    PERFORMING = "performing"


def months_between(start: date, end: date) -> int:
    """Whole calendar months from start to end, never negative"""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    return max(0, months)


@dataclass(frozen=True)
class ArrearsEstimate:
    """Calendar-elapsed arrears approximation"""
    months_elapsed: int
    expected_paid: Money
    deficit: Money
    months_behind: int
    days_past_due: int
    arrears_amount: Money
    not_yet_due: bool = False

    @property
    def in_arrears(self) -> bool:
        return self.months_behind > 0


def estimate_arrears(
    commencement_date: date,
    tenor_months: int,
    monthly_installment: Money,
    total_paid: Money,
    today: Union[date, datetime]
) -> ArrearsEstimate:
    """
    Approximate arrears from whole calendar months elapsed since commencement

    Returns a not_yet_due estimate when no full month has elapsed; that is
    distinct from a loan that is current.
    """
    today = as_date(today)
    zero = Money.zero(monthly_installment.currency)
    months_elapsed = min(months_between(commencement_date, today), tenor_months)

    if months_elapsed == 0:
        return ArrearsEstimate(
            months_elapsed=0,
            expected_paid=zero,
            deficit=zero,
            months_behind=0,
            days_past_due=0,
            arrears_amount=zero,
            not_yet_due=True,
        )

    expected = monthly_installment * Decimal(months_elapsed)
    deficit = expected - total_paid
    if not deficit.is_positive() or not monthly_installment.is_positive():
        return ArrearsEstimate(months_elapsed, expected, zero, 0, 0, zero)

    months_behind = int((deficit.amount / monthly_installment.amount).to_integral_value(rounding=ROUND_CEILING))
    return ArrearsEstimate(
        months_elapsed=months_elapsed,
        expected_paid=expected,
        deficit=deficit,
        months_behind=months_behind,
        days_past_due=months_behind * DAYS_PER_MONTH_ESTIMATE,
        arrears_amount=monthly_installment * Decimal(months_behind),
    )


@dataclass(frozen=True)
class ArrearsSnapshot:
    """Ledger-verified delinquency state of one loan at one date"""
    loan_id: str
    as_of: date
    verified_total_paid: Money
    verified_outstanding: Money
    months_due: int
    months_paid: int
    overdue_months: int
    overdue_amount: Money
    arrears_months: int
    arrears_amount: Money
    days_past_due: int
    first_unpaid_due_date: Optional[date]
    dpd_bucket: DpdBucket
    is_npl: bool
    health: LoanHealth
    has_payment_discrepancy: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'as_of': self.as_of.isoformat(),
            'verified_total_paid': str(self.verified_total_paid.amount),
            'verified_outstanding': str(self.verified_outstanding.amount),
            'months_due': self.months_due,
            'months_paid': self.months_paid,
            'overdue_months': self.overdue_months,
            'overdue_amount': str(self.overdue_amount.amount),
            'arrears_months': self.arrears_months,
            'arrears_amount': str(self.arrears_amount.amount),
            'days_past_due': self.days_past_due,
            'first_unpaid_due_date': self.first_unpaid_due_date.isoformat() if self.first_unpaid_due_date else None,
            'dpd_bucket': self.dpd_bucket.value,
            'is_npl': self.is_npl,
            'health': self.health.value,
            'has_payment_discrepancy': self.has_payment_discrepancy,
        }


class ArrearsCalculator:
    """
    Builds golden-record arrears snapshots

    Only the ledger and the recomputed schedule feed the metrics. The loan's
    own total_paid is read solely to raise the discrepancy flag.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        config = config or get_config()
        self.completion_tolerance = config.completion_tolerance_amount
        self.emi_tolerance = config.emi_tolerance_amount
        self.discrepancy_tolerance = config.discrepancy_tolerance_amount
        self.npl_days_threshold = config.npl_days_threshold

    def snapshot(
        self,
        loan,
        schedule: LoanSchedule,
        payments: Iterable[Payment],
        today: Union[date, datetime]
    ) -> ArrearsSnapshot:
        """
        Compute the arrears snapshot for a loan

        Args:
            loan: Loan record (id, status and recorded total paid are read)
            schedule: The loan's recomputed schedule
            payments: The loan's ledger entries
            today: As-of date

        Returns:
            ArrearsSnapshot
        """
        today = as_date(today)
        currency = schedule.currency
        zero = Money.zero(currency)

        verified = ledger_total(payments, currency)
        remaining = schedule.total_payment - verified
        outstanding = zero if remaining.is_negative() else remaining

        recorded = loan.total_paid if isinstance(loan.total_paid, Money) else zero
        has_discrepancy = not recorded.close_to(verified, self.discrepancy_tolerance)

        if loan.status == LoanStatus.COMPLETED or outstanding.amount < self.completion_tolerance:
            return ArrearsSnapshot(
                loan_id=loan.id,
                as_of=today,
                verified_total_paid=verified,
                verified_outstanding=outstanding,
                months_due=0,
                months_paid=0,
                overdue_months=0,
                overdue_amount=zero,
                arrears_months=0,
                arrears_amount=zero,
                days_past_due=0,
                first_unpaid_due_date=None,
                dpd_bucket=DpdBucket.CURRENT,
                is_npl=False,
                health=LoanHealth.COMPLETED,
                has_payment_discrepancy=has_discrepancy,
            )

        months_due = sum(1 for entry in schedule.entries if entry.due_date <= today)

        # Leading periods whose cumulative installments the ledger covers,
        # allowing the classifier's per-period tolerance for each of them
        months_paid = 0
        covered = zero
        for entry in schedule.entries:
            covered = covered + entry.installment
            allowance = self.emi_tolerance * (months_paid + 1)
            if covered.amount > verified.amount + allowance:
                break
            months_paid += 1

        overdue_months = max(0, months_due - months_paid)
        overdue_amount = schedule.cumulative_due(months_due) - verified
        if overdue_months == 0 or overdue_amount.is_negative():
            overdue_amount = zero

        first_unpaid = None
        days_past_due = 0
        if overdue_months > 0:
            first_unpaid = schedule.entries[months_paid].due_date
            if today > first_unpaid:
                days_past_due = (today - first_unpaid).days

        # The most recent due month is overdue but not yet in arrears
        arrears_months = 0
        if overdue_months > 0 and days_past_due >= 30:
            arrears_months = overdue_months - 1

        is_npl = days_past_due >= self.npl_days_threshold
        if is_npl:
            health = LoanHealth.NPL
        elif days_past_due > 0:
            health = LoanHealth.DELINQUENT
        else:
            health = LoanHealth.PERFORMING

        return ArrearsSnapshot(
            loan_id=loan.id,
            as_of=today,
            verified_total_paid=verified,
            verified_outstanding=outstanding,
            months_due=months_due,
            months_paid=months_paid,
            overdue_months=overdue_months,
            overdue_amount=overdue_amount,
            arrears_months=arrears_months,
            arrears_amount=schedule.monthly_installment * Decimal(arrears_months),
            days_past_due=days_past_due,
            first_unpaid_due_date=first_unpaid,
            dpd_bucket=DpdBucket.for_days(days_past_due),
            is_npl=is_npl,
            health=health,
            has_payment_discrepancy=has_discrepancy,
        )
