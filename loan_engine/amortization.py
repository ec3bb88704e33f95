"""
Amortization Module

Turns a loan's origination parameters into its canonical repayment schedule:
moratorium interest accrual and capitalization, equal-installment (annuity)
payment calculation, per-period interest and principal split, and the
final-period adjustment that clears the balance exactly. Interest accrual is
selected through a named, versioned AccrualPolicy.

The engine is pure: schedules are recomputed from parameters on demand, never
mutated, and safe to compute concurrently.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterator, List, Optional, Tuple
from enum import Enum
import calendar

from .currency import Money, Currency, sum_money, to_decimal
from .exceptions import ConfigurationError, InvalidLoanParameters


DAYS_IN_YEAR = Decimal('365')
MONTHS_IN_YEAR = Decimal('12')
HUNDRED = Decimal('100')


class DayCountConvention(Enum):
    """How a repayment period's interest is accrued"""
    MONTHLY_RATE = "monthly_rate"  # opening balance x annual rate / 12
    ACTUAL_365 = "actual_365"      # opening balance x annual rate x actual days / 365


class PaymentBasis(Enum):
    """Balance the fixed installment is computed against"""
    ORIGINAL_PRINCIPAL = "original_principal"
    CAPITALIZED_BALANCE = "capitalized_balance"


@dataclass(frozen=True)
class AccrualPolicy:
    """Named, versioned interest-accrual strategy"""
    name: str
    version: int
    day_count: DayCountConvention
    capitalize_moratorium: bool
    payment_basis: PaymentBasis
    description: str = ""

    @property
    def key(self) -> str:
        return f"{self.name}/v{self.version}"


SIMPLE_MONTHLY_V1 = AccrualPolicy(
    name="simple_monthly",
    version=1,
    day_count=DayCountConvention.MONTHLY_RATE,
    capitalize_moratorium=False,
    payment_basis=PaymentBasis.ORIGINAL_PRINCIPAL,
    description="Calendar-month model; moratorium only delays commencement",
)

ACTUAL_365_CAPITALIZED_V2 = AccrualPolicy(
    name="actual_365_capitalized",
    version=2,
    day_count=DayCountConvention.ACTUAL_365,
    capitalize_moratorium=True,
    payment_basis=PaymentBasis.CAPITALIZED_BALANCE,
    description="Actual/365 accrual, moratorium interest capitalized, PMT on capitalized balance",
)

ACTUAL_365_ORIGINAL_PMT_V2 = AccrualPolicy(
    name="actual_365_original_pmt",
    version=2,
    day_count=DayCountConvention.ACTUAL_365,
    capitalize_moratorium=True,
    payment_basis=PaymentBasis.ORIGINAL_PRINCIPAL,
    description="Actual/365 accrual, moratorium interest capitalized, PMT on original principal",
)

POLICIES: Dict[str, AccrualPolicy] = {
    policy.key: policy
    for policy in (SIMPLE_MONTHLY_V1, ACTUAL_365_CAPITALIZED_V2, ACTUAL_365_ORIGINAL_PMT_V2)
}

DEFAULT_POLICY = ACTUAL_365_CAPITALIZED_V2


def get_policy(key: str) -> AccrualPolicy:
    """Look up a registered accrual policy by its "name/vN" key"""
    try:
        return POLICIES[key]
    except KeyError:
        raise ConfigurationError(
            f"Unknown accrual policy '{key}'. Known policies: {', '.join(sorted(POLICIES))}"
        )


# --- Calendar helpers -------------------------------------------------------

def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def end_of_month(value: date) -> date:
    return date(value.year, value.month, calendar.monthrange(value.year, value.month)[1])


def first_of_month(value: date) -> date:
    return date(value.year, value.month, 1)


def commencement_date_for(disbursement_date: date, moratorium_months: int) -> date:
    """
    Date repayment starts: the disbursement date itself without a moratorium,
    otherwise the first day of the month the moratorium ends in.
    """
    if moratorium_months == 0:
        return disbursement_date
    return first_of_month(add_months(disbursement_date, moratorium_months))


def due_date_for(commencement_date: date, period: int) -> date:
    """Due date of a period: last day of its one-month window"""
    return add_months(commencement_date, period) - timedelta(days=1)


def termination_date_for(commencement_date: date, tenor_months: int) -> date:
    return due_date_for(commencement_date, tenor_months)


# --- Schedule values --------------------------------------------------------

@dataclass(frozen=True)
class LoanParameters:
    """Origination parameters a schedule is computed from"""
    principal: Decimal
    annual_rate_percent: Decimal   # e.g. 6 for 6%
    tenor_months: int
    moratorium_months: int
    disbursement_date: date


@dataclass(frozen=True)
class ScheduleEntry:
    """One projected repayment period"""
    period: int
    due_date: date
    days_in_period: int
    opening_balance: Money
    principal: Money
    interest: Money
    installment: Money
    closing_balance: Money

    def __post_init__(self):
        if abs((self.principal + self.interest).amount - self.installment.amount) > Decimal('0.01'):
            raise ValueError(f"Installment {self.installment.to_string()} does not equal "
                             f"principal {self.principal.to_string()} + "
                             f"interest {self.interest.to_string()}")


class StatementRowType(Enum):
    """Row types of the full loan statement"""
    DISBURSEMENT = "Disbursement"
    INTEREST_CAPITALIZATION = "Interest Capitalization"
    REPAYMENT = "Repayment"


@dataclass(frozen=True)
class StatementRow:
    """Row of the full statement: disbursement, capitalization, then repayments"""
    row_type: StatementRowType
    row_date: date
    days_in_period: int
    beginning_balance: Money
    interest: Money
    principal: Money
    payment: Money
    ending_balance: Money
    period: Optional[int] = None


@dataclass(frozen=True)
class LoanSchedule:
    """Repayment schedule plus the summary figures derived from it"""
    principal: Money
    annual_rate_percent: Decimal
    tenor_months: int
    moratorium_months: int
    disbursement_date: date
    commencement_date: date
    termination_date: date
    monthly_installment: Money
    total_interest: Money
    total_payment: Money
    amortizing_balance: Money
    moratorium_interest: Money
    moratorium_days: int
    policy: AccrualPolicy
    entries: Tuple[ScheduleEntry, ...]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ScheduleEntry]:
        return iter(self.entries)

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def final_entry(self) -> ScheduleEntry:
        return self.entries[-1]

    def entry(self, period: int) -> Optional[ScheduleEntry]:
        """Entry for a 1-based period index, or None when out of range"""
        if 1 <= period <= len(self.entries):
            return self.entries[period - 1]
        return None

    def cumulative_due(self, periods: int) -> Money:
        """Sum of installments for the first `periods` periods"""
        periods = max(0, min(periods, len(self.entries)))
        return sum_money((e.installment for e in self.entries[:periods]), self.currency)

    def statement_rows(self) -> List[StatementRow]:
        """
        Full statement view: one disbursement row, one capitalization row when
        moratorium interest was capitalized, then one row per repayment.
        """
        zero = Money.zero(self.currency)
        rows = [StatementRow(
            row_type=StatementRowType.DISBURSEMENT,
            row_date=self.disbursement_date,
            days_in_period=0,
            beginning_balance=zero,
            interest=zero,
            principal=self.principal,
            payment=zero,
            ending_balance=self.principal,
        )]

        if self.moratorium_interest.is_positive():
            rows.append(StatementRow(
                row_type=StatementRowType.INTEREST_CAPITALIZATION,
                row_date=self.commencement_date,
                days_in_period=self.moratorium_days,
                beginning_balance=self.principal,
                interest=self.moratorium_interest,
                principal=zero,
                payment=zero,
                ending_balance=self.amortizing_balance,
            ))

        for entry in self.entries:
            rows.append(StatementRow(
                row_type=StatementRowType.REPAYMENT,
                row_date=entry.due_date,
                days_in_period=entry.days_in_period,
                beginning_balance=entry.opening_balance,
                interest=entry.interest,
                principal=entry.principal,
                payment=entry.installment,
                ending_balance=entry.closing_balance,
                period=entry.period,
            ))
        return rows


# --- Engine -----------------------------------------------------------------

def annuity_payment(balance: Decimal, monthly_rate: Decimal, periods: int) -> Decimal:
    """
    Equal installment for a balance: P * r * (1+r)^n / ((1+r)^n - 1),
    or straight-line P / n when the rate is zero
    """
    if monthly_rate == 0:
        return balance / Decimal(periods)
    factor = (Decimal('1') + monthly_rate) ** periods
    return balance * monthly_rate * factor / (factor - Decimal('1'))


def validate_parameters(
    principal,
    annual_rate_percent,
    tenor_months,
    moratorium_months,
    disbursement_date
) -> LoanParameters:
    """
    Normalize raw origination parameters

    Raises:
        InvalidLoanParameters: For non-positive principal or tenor, negative
            moratorium, non-finite or negative rate, or a missing date
    """
    try:
        principal = to_decimal(principal)
        rate = to_decimal(annual_rate_percent)
    except ValueError as e:
        raise InvalidLoanParameters(str(e))

    if not principal.is_finite() or principal <= 0:
        raise InvalidLoanParameters(f"Principal must be positive, got {principal}")
    if not rate.is_finite():
        raise InvalidLoanParameters(f"Interest rate must be finite, got {rate}")
    if rate < 0:
        raise InvalidLoanParameters(f"Interest rate cannot be negative, got {rate}")
    if isinstance(tenor_months, bool) or not isinstance(tenor_months, int) or tenor_months <= 0:
        raise InvalidLoanParameters(f"Tenor must be a positive number of months, got {tenor_months!r}")
    if isinstance(moratorium_months, bool) or not isinstance(moratorium_months, int) or moratorium_months < 0:
        raise InvalidLoanParameters(f"Moratorium must be zero or more months, got {moratorium_months!r}")
    if isinstance(disbursement_date, datetime):
        disbursement_date = disbursement_date.date()
    if not isinstance(disbursement_date, date):
        raise InvalidLoanParameters(f"Disbursement date is required, got {disbursement_date!r}")

    return LoanParameters(
        principal=principal,
        annual_rate_percent=rate,
        tenor_months=tenor_months,
        moratorium_months=moratorium_months,
        disbursement_date=disbursement_date,
    )


class AmortizationEngine:
    """
    Computes repayment schedules under one configured accrual policy
    """

    def __init__(self, policy: Optional[AccrualPolicy] = None, currency: Currency = Currency.NGN):
        self.policy = policy or DEFAULT_POLICY
        self.currency = currency

    def compute_schedule(
        self,
        principal,
        annual_rate_percent,
        tenor_months: int,
        moratorium_months: int,
        disbursement_date: date
    ) -> LoanSchedule:
        """
        Compute the repayment schedule for a loan

        Args:
            principal: Disbursed amount
            annual_rate_percent: Annual rate in percent (6 for 6%)
            tenor_months: Number of monthly repayment periods
            moratorium_months: Months between disbursement and first repayment
            disbursement_date: Date funds were disbursed

        Returns:
            LoanSchedule with entries and summary figures

        Raises:
            InvalidLoanParameters: If parameters are malformed
        """
        params = validate_parameters(
            principal, annual_rate_percent, tenor_months, moratorium_months, disbursement_date
        )
        return _build_schedule(params, self.policy, self.currency)

    def compute(self, params: LoanParameters) -> LoanSchedule:
        return self.compute_schedule(
            params.principal,
            params.annual_rate_percent,
            params.tenor_months,
            params.moratorium_months,
            params.disbursement_date,
        )


def _moratorium_accrual(
    principal: Money,
    annual_rate: Decimal,
    disbursement_date: date,
    moratorium_months: int
) -> Tuple[Money, int]:
    """Actual/365 interest on the principal, one calendar-month segment at a time"""
    interest = Money.zero(principal.currency)
    total_days = 0
    segment_start = disbursement_date
    for _ in range(moratorium_months):
        month_end = end_of_month(segment_start)
        days = (month_end - segment_start).days
        interest = interest + Money(principal.amount * annual_rate * days / DAYS_IN_YEAR, principal.currency)
        total_days += days
        segment_start = month_end + timedelta(days=1)
    return interest, total_days


@lru_cache(maxsize=2048)
def _build_schedule(params: LoanParameters, policy: AccrualPolicy, currency: Currency) -> LoanSchedule:
    """
    Build the period-by-period schedule for validated parameters.

    Under the original-principal payment basis the installment can fall
    short of the interest accrued on a capitalized balance, typically after
    a long moratorium at a high rate. Such a period repays no principal and
    its installment is raised to the accrued interest, so the balance never
    grows.
    """
    principal = Money(params.principal, currency)
    annual_rate = params.annual_rate_percent / HUNDRED
    monthly_rate = annual_rate / MONTHS_IN_YEAR
    tenor = params.tenor_months

    commencement = commencement_date_for(params.disbursement_date, params.moratorium_months)
    termination = termination_date_for(commencement, tenor)

    moratorium_interest = Money.zero(currency)
    moratorium_days = 0
    if policy.capitalize_moratorium and params.moratorium_months > 0:
        moratorium_interest, moratorium_days = _moratorium_accrual(
            principal, annual_rate, params.disbursement_date, params.moratorium_months
        )
    amortizing_balance = principal + moratorium_interest

    if policy.payment_basis == PaymentBasis.CAPITALIZED_BALANCE:
        basis = amortizing_balance
    else:
        basis = principal
    installment = Money(annuity_payment(basis.amount, monthly_rate, tenor), currency)

    entries = []
    balance = amortizing_balance
    previous_due = commencement - timedelta(days=1)
    zero = Money.zero(currency)

    for period in range(1, tenor + 1):
        due = due_date_for(commencement, period)
        days = (due - previous_due).days

        if policy.day_count == DayCountConvention.ACTUAL_365:
            interest = Money(balance.amount * annual_rate * days / DAYS_IN_YEAR, currency)
        else:
            interest = Money(balance.amount * monthly_rate, currency)

        if period == tenor:
            # Final period clears whatever rounding left behind
            principal_part = balance
            payment = principal_part + interest
            closing = zero
        else:
            principal_part = installment - interest
            payment = installment
            if principal_part.is_negative():
                principal_part = zero
                payment = interest
            if principal_part > balance:
                principal_part = balance
                payment = principal_part + interest
            closing = balance - principal_part
            if closing.is_negative():
                closing = zero

        entries.append(ScheduleEntry(
            period=period,
            due_date=due,
            days_in_period=days,
            opening_balance=balance,
            principal=principal_part,
            interest=interest,
            installment=payment,
            closing_balance=closing,
        ))
        balance = closing
        previous_due = due

    total_payment = sum_money((e.installment for e in entries), currency)

    return LoanSchedule(
        principal=principal,
        annual_rate_percent=params.annual_rate_percent,
        tenor_months=tenor,
        moratorium_months=params.moratorium_months,
        disbursement_date=params.disbursement_date,
        commencement_date=commencement,
        termination_date=termination,
        monthly_installment=installment,
        total_interest=total_payment - principal,
        total_payment=total_payment,
        amortizing_balance=amortizing_balance,
        moratorium_interest=moratorium_interest,
        moratorium_days=moratorium_days,
        policy=policy,
        entries=tuple(entries),
    )
