"""
Loan Module

Handles loan origination, the payment ledger, lifecycle status transitions
and the denormalized balance fields (total paid, outstanding balance) that
the reconciliation service keeps honest against the ledger.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import logging
import threading
import uuid

from .amortization import (
    AmortizationEngine, LoanParameters, LoanSchedule, DEFAULT_POLICY, get_policy
)
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import EngineConfig, get_config
from .currency import Money, Currency, to_decimal
from .exceptions import InvalidLoanParameters, InvalidPayment, LoanNotFound
from .ledger import Payment, group_by_loan, ledger_total
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("loan_engine.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Disbursed, repayment not yet commenced
    ACTIVE = "active"          # In repayment
    COMPLETED = "completed"    # Fully repaid
    DEFAULTED = "defaulted"    # Classified non-performing


def resolve_status(
    current: LoanStatus,
    outstanding: Money,
    total_paid: Money,
    completion_tolerance: Decimal
) -> LoanStatus:
    """
    Status after balances change: completed once nothing is outstanding,
    otherwise a completed loan reopens and a pending loan with payments
    becomes active. Defaulted loans stay defaulted until repaid.
    """
    if outstanding.amount < completion_tolerance:
        return LoanStatus.COMPLETED
    if current == LoanStatus.COMPLETED:
        return LoanStatus.ACTIVE
    if current == LoanStatus.PENDING and total_paid.is_positive():
        return LoanStatus.ACTIVE
    return current


@dataclass
class Loan(StorageRecord):
    """One disbursed facility with its derived and denormalized figures"""
    borrower_name: str
    principal: Money
    annual_rate_percent: Decimal
    tenor_months: int
    moratorium_months: int
    disbursement_date: date

    # Derived at origination
    commencement_date: Optional[date] = None
    termination_date: Optional[date] = None
    monthly_installment: Money = None
    total_expected: Money = None

    # Denormalized cache of the ledger, corrected by reconciliation
    total_paid: Money = None
    outstanding_balance: Money = None

    status: LoanStatus = LoanStatus.PENDING
    accrual_policy: str = DEFAULT_POLICY.key
    employee_id: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        zero = Money.zero(self.principal.currency)
        if self.monthly_installment is None:
            self.monthly_installment = zero
        if self.total_expected is None:
            self.total_expected = zero
        if self.total_paid is None:
            self.total_paid = zero
        if self.outstanding_balance is None:
            remaining = self.total_expected - self.total_paid
            self.outstanding_balance = zero if remaining.is_negative() else remaining

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def parameters(self) -> LoanParameters:
        return LoanParameters(
            principal=self.principal.amount,
            annual_rate_percent=self.annual_rate_percent,
            tenor_months=self.tenor_months,
            moratorium_months=self.moratorium_months,
            disbursement_date=self.disbursement_date,
        )

    @property
    def is_closed(self) -> bool:
        return self.status == LoanStatus.COMPLETED

    def to_dict(self) -> Dict:
        money_fields = ['principal', 'monthly_installment', 'total_expected',
                        'total_paid', 'outstanding_balance']
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'borrower_name': self.borrower_name,
            'employee_id': self.employee_id,
            'currency': self.currency.code,
            'annual_rate_percent': str(self.annual_rate_percent),
            'tenor_months': self.tenor_months,
            'moratorium_months': self.moratorium_months,
            'status': self.status.value,
            'accrual_policy': self.accrual_policy,
            'version': self.version,
        }
        for name in money_fields:
            result[name] = str(getattr(self, name).amount)
        for name in ['disbursement_date', 'commencement_date', 'termination_date']:
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Loan':
        currency = Currency[data.get('currency', 'NGN')]

        def money(name: str) -> Optional[Money]:
            if data.get(name) is None:
                return None
            return Money(Decimal(data[name]), currency)

        def get_date(name: str) -> Optional[date]:
            if data.get(name):
                return date.fromisoformat(data[name])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_name=data.get('borrower_name', ''),
            principal=money('principal'),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            tenor_months=data['tenor_months'],
            moratorium_months=data.get('moratorium_months', 0),
            disbursement_date=get_date('disbursement_date'),
            commencement_date=get_date('commencement_date'),
            termination_date=get_date('termination_date'),
            monthly_installment=money('monthly_installment'),
            total_expected=money('total_expected'),
            total_paid=money('total_paid'),
            outstanding_balance=money('outstanding_balance'),
            status=LoanStatus(data.get('status', LoanStatus.PENDING.value)),
            accrual_policy=data.get('accrual_policy', DEFAULT_POLICY.key),
            employee_id=data.get('employee_id'),
            version=data.get('version', 0),
        )


class LoanBook:
    """
    Manages loan records and their payment ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        engine: Optional[AmortizationEngine] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]
        self.engine = engine or AmortizationEngine(get_policy(self.config.accrual_policy), self.currency)
        self.clock = clock or SystemClock(self.config.timezone)

        self.loans_table = "loans"
        self.payments_table = "loan_payments"

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._ledger_cache: Dict[str, List[Payment]] = {}
        self._cache_guard = threading.Lock()

    def lock_for(self, loan_id: str) -> threading.RLock:
        """Per-loan mutual exclusion for read-then-write sequences"""
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = self._locks[loan_id] = threading.RLock()
            return lock

    def originate_loan(
        self,
        borrower_name: str,
        principal,
        annual_rate_percent,
        tenor_months: int,
        moratorium_months: int,
        disbursement_date: date,
        employee_id: Optional[str] = None,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Create a loan record at disbursement

        Args:
            borrower_name: Beneficiary name
            principal: Disbursed amount
            annual_rate_percent: Annual rate in percent
            tenor_months: Repayment periods, bounded by max_tenor_months
            moratorium_months: Months before the first repayment
            disbursement_date: Date funds were disbursed
            employee_id: Optional staff/employee reference
            loan_id: Optional explicit identifier

        Returns:
            Created Loan

        Raises:
            InvalidLoanParameters: If parameters are malformed or exceed the tenor bound
        """
        if isinstance(tenor_months, int) and tenor_months > self.config.max_tenor_months:
            raise InvalidLoanParameters(
                f"Tenor {tenor_months} exceeds the maximum of {self.config.max_tenor_months} months"
            )

        schedule = self.engine.compute_schedule(
            principal, annual_rate_percent, tenor_months, moratorium_months, disbursement_date
        )

        now = self.clock.now()
        status = LoanStatus.PENDING if self.clock.today() < schedule.commencement_date else LoanStatus.ACTIVE

        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_name=borrower_name,
            principal=schedule.principal,
            annual_rate_percent=schedule.annual_rate_percent,
            tenor_months=schedule.tenor_months,
            moratorium_months=schedule.moratorium_months,
            disbursement_date=schedule.disbursement_date,
            commencement_date=schedule.commencement_date,
            termination_date=schedule.termination_date,
            monthly_installment=schedule.monthly_installment,
            total_expected=schedule.total_payment,
            status=status,
            accrual_policy=schedule.policy.key,
            employee_id=employee_id,
        )

        self.storage.save(self.loans_table, loan.id, loan.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_ORIGINATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "principal": loan.principal.to_string(),
                "annual_rate_percent": loan.annual_rate_percent,
                "tenor_months": loan.tenor_months,
                "moratorium_months": loan.moratorium_months,
                "monthly_installment": loan.monthly_installment.to_string(),
                "total_expected": loan.total_expected.to_string(),
                "accrual_policy": loan.accrual_policy,
            }
        )
        logger.info("Originated loan %s for %s", loan.id, loan.principal.to_string())

        return loan

    def record_payment(
        self,
        loan_id: str,
        amount,
        month_for: int,
        date_paid: Optional[date] = None,
        reference: str = "",
        payment_id: Optional[str] = None
    ) -> Payment:
        """
        Accept a repayment into the ledger and update the loan's cached balances

        Args:
            loan_id: Loan being repaid
            amount: Payment amount (Money or number)
            month_for: Scheduled period the payment targets
            date_paid: Date of payment (defaults to today)
            reference: External reference number
            payment_id: Optional explicit identifier

        Returns:
            Recorded Payment

        Raises:
            LoanNotFound: If the loan does not exist
            InvalidPayment: If amount or target period is invalid
        """
        if not isinstance(amount, Money):
            try:
                amount = Money(to_decimal(amount), self.currency)
            except ValueError as e:
                raise InvalidPayment(str(e))
        date_paid = date_paid or self.clock.today()

        with self.lock_for(loan_id):
            loan = self.require_loan(loan_id)
            if isinstance(month_for, int) and month_for > loan.tenor_months:
                raise InvalidPayment(
                    f"Period {month_for} is beyond the {loan.tenor_months}-month tenor of loan {loan_id}"
                )

            now = self.clock.now()
            payment = Payment(
                id=payment_id or str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=amount,
                date_paid=date_paid,
                month_for=month_for,
                reference=reference,
            )

            previous_status = loan.status
            with self.storage.atomic():
                self.storage.insert(self.payments_table, payment.id, payment.to_dict())
                self._apply_paid_delta(loan, amount)
                self.storage.save(self.loans_table, loan.id, loan.to_dict())
            self.invalidate_cache(loan_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={
                "payment_id": payment.id,
                "amount": amount.to_string(),
                "month_for": month_for,
                "date_paid": date_paid,
                "reference": reference,
                "total_paid": loan.total_paid.to_string(),
                "outstanding_balance": loan.outstanding_balance.to_string(),
            }
        )
        self._audit_status_change(loan, previous_status, "payment_recorded")

        return payment

    def reverse_payment(self, payment_id: str, reason: str, actor: Optional[str] = None) -> Payment:
        """
        Remove a ledger entry through the explicit correction workflow

        Raises:
            LookupError: If the payment does not exist
        """
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise LookupError(f"Payment {payment_id} not found")
        payment = Payment.from_dict(data)

        with self.lock_for(payment.loan_id):
            loan = self.require_loan(payment.loan_id)
            previous_status = loan.status
            with self.storage.atomic():
                self.storage.delete(self.payments_table, payment_id)
                self._apply_paid_delta(loan, -payment.amount)
                self.storage.save(self.loans_table, loan.id, loan.to_dict())
            self.invalidate_cache(loan.id)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_REVERSED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "payment_id": payment_id,
                "amount": payment.amount.to_string(),
                "reason": reason,
            },
            actor=actor
        )
        self._audit_status_change(loan, previous_status, "payment_reversed")
        return payment

    def mark_defaulted(self, loan_id: str, snapshot) -> Loan:
        """
        Move a loan to defaulted based on its ledger-verified arrears snapshot

        Raises:
            ValueError: If the snapshot does not show a non-performing loan
        """
        if snapshot.loan_id != loan_id:
            raise ValueError(f"Snapshot belongs to loan {snapshot.loan_id}, not {loan_id}")
        if not snapshot.is_npl:
            raise ValueError(
                f"Loan {loan_id} is {snapshot.days_past_due} days past due; only NPL loans can default"
            )

        with self.lock_for(loan_id):
            loan = self.require_loan(loan_id)
            if loan.status == LoanStatus.DEFAULTED:
                return loan
            previous_status = loan.status
            loan.status = LoanStatus.DEFAULTED
            loan.version += 1
            loan.updated_at = self.clock.now()
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

        self._audit_status_change(loan, previous_status, "npl_classification")
        return loan

    def save_correction(self, loan: Loan, expected_version: int) -> Loan:
        """
        Persist reconciled balances if nobody wrote the loan since it was read

        Raises:
            StaleLoanVersion: If the stored version changed
        """
        loan.version = expected_version + 1
        loan.updated_at = self.clock.now()
        self.storage.save_if_version(self.loans_table, loan.id, loan.to_dict(), expected_version)
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def list_loans(self) -> List[Loan]:
        """All loans, oldest first"""
        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]
        loans.sort(key=lambda l: (l.created_at, l.id))
        return loans

    def get_payments(self, loan_id: str) -> List[Payment]:
        """Ledger for one loan ordered by date paid, served from cache until the next write"""
        with self._cache_guard:
            cached = self._ledger_cache.get(loan_id)
        if cached is None:
            rows = self.storage.find(self.payments_table, {"loan_id": loan_id})
            cached = group_by_loan(Payment.from_dict(row) for row in rows).get(loan_id, [])
            with self._cache_guard:
                self._ledger_cache[loan_id] = cached
        return list(cached)

    def get_ledger(self) -> Dict[str, List[Payment]]:
        """Full ledger read straight from storage, grouped by loan"""
        return group_by_loan(Payment.from_dict(row) for row in self.storage.load_all(self.payments_table))

    def verified_total_paid(self, loan_id: str) -> Money:
        return ledger_total(self.get_payments(loan_id), self.currency)

    def invalidate_cache(self, loan_id: Optional[str] = None) -> None:
        with self._cache_guard:
            if loan_id is None:
                self._ledger_cache.clear()
            else:
                self._ledger_cache.pop(loan_id, None)

    def schedule_for(self, loan: Loan) -> LoanSchedule:
        return self.engine.compute(loan.parameters)

    def _apply_paid_delta(self, loan: Loan, delta: Money) -> None:
        loan.total_paid = loan.total_paid + delta
        remaining = loan.total_expected - loan.total_paid
        loan.outstanding_balance = Money.zero(loan.currency) if remaining.is_negative() else remaining
        loan.status = resolve_status(
            loan.status, loan.outstanding_balance, loan.total_paid,
            self.config.completion_tolerance_amount
        )
        loan.version += 1
        loan.updated_at = self.clock.now()

    def _audit_status_change(self, loan: Loan, previous: LoanStatus, reason: str) -> None:
        if loan.status == previous:
            return
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_STATUS_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"from": previous, "to": loan.status, "reason": reason}
        )
        logger.info("Loan %s moved from %s to %s (%s)", loan.id, previous.value, loan.status.value, reason)
