"""
Loan Servicing Core

Wires the engine components together and exposes the calls made by the
portal's pages, exporters and scheduled jobs.
"""

from datetime import date, datetime
from typing import Iterable, List, Optional, Union

from .amortization import AmortizationEngine, LoanParameters, LoanSchedule, ScheduleEntry, get_policy
from .arrears import ArrearsCalculator, ArrearsEstimate, ArrearsSnapshot, estimate_arrears
from .audit import AuditTrail
from .classification import PeriodClassification, PeriodStatus, classify_period, classify_schedule
from .clock import Clock, SystemClock
from .config import EngineConfig, get_config
from .currency import Currency
from .ledger import Payment
from .loans import LoanBook
from .reconciliation import (
    IntegrityReport, IntegrityReportLog, RecalculationResult, ReconciliationService
)
from .storage import StorageInterface, InMemoryStorage


class LoanServicingCore:
    """Loan amortization and reconciliation engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or get_config()
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock(self.config.timezone)
        self.currency = Currency[self.config.currency]

        self.engine = AmortizationEngine(get_policy(self.config.accrual_policy), self.currency)
        self.audit_trail = AuditTrail(self.storage)
        self.loan_book = LoanBook(
            self.storage, self.audit_trail, self.engine, self.config, self.clock
        )
        self.calculator = ArrearsCalculator(self.config)
        self.report_log = IntegrityReportLog(self.storage)
        self.reconciliation = ReconciliationService(
            self.loan_book, self.calculator, self.report_log,
            self.audit_trail, self.config, self.clock
        )

    def compute_schedule(self, params: LoanParameters) -> LoanSchedule:
        return self.engine.compute(params)

    def classify_period(
        self,
        entry: ScheduleEntry,
        payments: Iterable[Payment],
        now: Optional[Union[date, datetime]] = None
    ) -> PeriodStatus:
        today = now if now is not None else self.clock.today()
        return classify_period(entry, payments, today, self.config.emi_tolerance_amount)

    def repayment_grid(self, loan_id: str) -> List[PeriodClassification]:
        """Every period of a loan with its status, for the repayment schedule grid"""
        loan = self.loan_book.require_loan(loan_id)
        return classify_schedule(
            self.loan_book.schedule_for(loan),
            self.loan_book.get_payments(loan_id),
            self.clock.today(),
            self.config.emi_tolerance_amount,
        )

    def get_arrears_snapshot(self, loan_id: str) -> ArrearsSnapshot:
        """
        Golden-record arrears for a loan

        Raises:
            LoanNotFound: If the loan does not exist
        """
        loan = self.loan_book.require_loan(loan_id)
        return self.calculator.snapshot(
            loan,
            self.loan_book.schedule_for(loan),
            self.loan_book.get_payments(loan_id),
            self.clock.today(),
        )

    def estimate_arrears(self, loan_id: str) -> ArrearsEstimate:
        """Calendar-elapsed approximation for list views; never used for reporting"""
        loan = self.loan_book.require_loan(loan_id)
        return estimate_arrears(
            loan.commencement_date,
            loan.tenor_months,
            loan.monthly_installment,
            loan.total_paid,
            self.clock.today(),
        )

    def run_integrity_check(self, deadline_seconds: Optional[float] = None) -> IntegrityReport:
        return self.reconciliation.run_integrity_check(deadline_seconds)

    def recalculate_balances(self) -> RecalculationResult:
        return self.reconciliation.recalculate_balances()
