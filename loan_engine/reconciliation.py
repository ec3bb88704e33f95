"""
Reconciliation Module

Portfolio-level integrity check. Recomputes every loan's obligation, compares
the denormalized balances on loan records against the verified ledger,
aggregates portfolio risk metrics, self-heals drifted loans and appends an
IntegrityReport to an append-only log.

Reading loans or the ledger either succeeds completely or the run aborts
before any write. Corrections are independent per loan and best effort: a
failed or conflicting write is logged, audited and counted, and the run
carries on.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
from concurrent.futures import ThreadPoolExecutor
import logging
import time
import uuid

from .amortization import LoanSchedule
from .arrears import ArrearsCalculator, ArrearsSnapshot
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import EngineConfig, get_config
from .currency import Money, Currency, sum_money
from .exceptions import (
    InvalidLoanParameters, LedgerReadFailure, LoanStoreReadFailure,
    PerLoanWriteFailure, StaleLoanVersion
)
from .loans import Loan, LoanBook, LoanStatus, resolve_status
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("loan_engine.reconciliation")

HUNDRED = Decimal('100')


class IntegrityStatus(Enum):
    CLEAN = "clean"
    DISCREPANCIES_FOUND = "discrepancies_found"


class CorrectionOutcome(Enum):
    APPLIED = "applied"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass
class DiscrepancyDetail:
    """One drifted loan, as sampled into the integrity report"""
    loan_id: str
    borrower_name: str
    employee_id: Optional[str]
    system_total_paid: Money
    verified_total_paid: Money
    variance: Money
    outstanding_balance: Money
    days_past_due: int
    is_npl: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'borrower_name': self.borrower_name,
            'employee_id': self.employee_id,
            'currency': self.variance.currency.code,
            'system_total_paid': str(self.system_total_paid.amount),
            'verified_total_paid': str(self.verified_total_paid.amount),
            'variance': str(self.variance.amount),
            'outstanding_balance': str(self.outstanding_balance.amount),
            'days_past_due': self.days_past_due,
            'is_npl': self.is_npl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DiscrepancyDetail':
        currency = Currency[data.get('currency', 'NGN')]
        return cls(
            loan_id=data['loan_id'],
            borrower_name=data.get('borrower_name', ''),
            employee_id=data.get('employee_id'),
            system_total_paid=Money(Decimal(data['system_total_paid']), currency),
            verified_total_paid=Money(Decimal(data['verified_total_paid']), currency),
            variance=Money(Decimal(data['variance']), currency),
            outstanding_balance=Money(Decimal(data['outstanding_balance']), currency),
            days_past_due=data.get('days_past_due', 0),
            is_npl=data.get('is_npl', False),
        )


@dataclass
class IntegrityReport(StorageRecord):
    """Output of one reconciliation run"""
    run_id: str
    check_type: str
    total_loans: int
    loans_with_discrepancies: int
    total_portfolio_balance: Money
    verified_portfolio_balance: Money
    balance_variance: Money
    total_paid_system: Money
    total_paid_transactions: Money
    payment_variance: Money
    npl_count: int
    npl_balance: Money
    npl_ratio: Decimal
    par_30_count: int
    par_30_balance: Money
    par_90_count: int
    par_90_balance: Money
    status: IntegrityStatus
    notes: str = ""
    discrepancy_details: List[DiscrepancyDetail] = field(default_factory=list)
    corrections_applied: int = 0
    corrections_failed: int = 0
    corrections_deferred: int = 0
    skipped_loans: List[str] = field(default_factory=list)

    @property
    def discrepancies_found(self) -> int:
        return self.loans_with_discrepancies

    def to_dict(self) -> Dict[str, Any]:
        money_fields = [
            'total_portfolio_balance', 'verified_portfolio_balance', 'balance_variance',
            'total_paid_system', 'total_paid_transactions', 'payment_variance',
            'npl_balance', 'par_30_balance', 'par_90_balance',
        ]
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'run_id': self.run_id,
            'check_type': self.check_type,
            'currency': self.payment_variance.currency.code,
            'total_loans': self.total_loans,
            'loans_with_discrepancies': self.loans_with_discrepancies,
            'npl_count': self.npl_count,
            'npl_ratio': str(self.npl_ratio),
            'par_30_count': self.par_30_count,
            'par_90_count': self.par_90_count,
            'status': self.status.value,
            'notes': self.notes,
            'discrepancy_details': [d.to_dict() for d in self.discrepancy_details],
            'corrections_applied': self.corrections_applied,
            'corrections_failed': self.corrections_failed,
            'corrections_deferred': self.corrections_deferred,
            'skipped_loans': list(self.skipped_loans),
        }
        for name in money_fields:
            result[name] = str(getattr(self, name).amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IntegrityReport':
        currency = Currency[data.get('currency', 'NGN')]

        def money(name: str) -> Money:
            return Money(Decimal(data.get(name, '0')), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            run_id=data['run_id'],
            check_type=data.get('check_type', ''),
            total_loans=data['total_loans'],
            loans_with_discrepancies=data['loans_with_discrepancies'],
            total_portfolio_balance=money('total_portfolio_balance'),
            verified_portfolio_balance=money('verified_portfolio_balance'),
            balance_variance=money('balance_variance'),
            total_paid_system=money('total_paid_system'),
            total_paid_transactions=money('total_paid_transactions'),
            payment_variance=money('payment_variance'),
            npl_count=data['npl_count'],
            npl_balance=money('npl_balance'),
            npl_ratio=Decimal(data['npl_ratio']),
            par_30_count=data['par_30_count'],
            par_30_balance=money('par_30_balance'),
            par_90_count=data['par_90_count'],
            par_90_balance=money('par_90_balance'),
            status=IntegrityStatus(data['status']),
            notes=data.get('notes', ''),
            discrepancy_details=[DiscrepancyDetail.from_dict(d) for d in data.get('discrepancy_details', [])],
            corrections_applied=data.get('corrections_applied', 0),
            corrections_failed=data.get('corrections_failed', 0),
            corrections_deferred=data.get('corrections_deferred', 0),
            skipped_loans=list(data.get('skipped_loans', [])),
        )


class IntegrityReportLog:
    """Append-only store of integrity reports"""

    def __init__(self, storage: StorageInterface, table_name: str = "integrity_checks"):
        self.storage = storage
        self.table_name = table_name

    def append(self, report: IntegrityReport) -> None:
        """
        Raises:
            AppendOnlyViolation: If a report with the same ID already exists
        """
        self.storage.insert(self.table_name, report.id, report.to_dict())

    def list_reports(self, limit: Optional[int] = None) -> List[IntegrityReport]:
        """Reports newest first"""
        reports = [IntegrityReport.from_dict(data) for data in self.storage.load_all(self.table_name)]
        reports.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        if limit is not None:
            reports = reports[:limit]
        return reports

    def latest(self) -> Optional[IntegrityReport]:
        reports = self.list_reports(limit=1)
        return reports[0] if reports else None


@dataclass
class LoanReview:
    """A loan as seen by one run: record, recomputed schedule, golden snapshot"""
    loan: Loan
    schedule: LoanSchedule
    snapshot: ArrearsSnapshot


@dataclass
class RecalculationResult:
    """Outcome of a batch balance recalculation"""
    updated: int = 0
    failed: int = 0
    skipped: List[str] = field(default_factory=list)
    results: List[Dict[str, Any]] = field(default_factory=list)


class ReconciliationService:
    """
    Keeps loan balances honest against the payment ledger
    """

    def __init__(
        self,
        loan_book: LoanBook,
        calculator: ArrearsCalculator,
        report_log: IntegrityReportLog,
        audit_trail: AuditTrail,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.loan_book = loan_book
        self.calculator = calculator
        self.report_log = report_log
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.clock = clock or SystemClock(self.config.timezone)
        self.currency = loan_book.currency

    def run_integrity_check(self, deadline_seconds: Optional[float] = None) -> IntegrityReport:
        """
        Reconcile the whole portfolio and record the result

        Args:
            deadline_seconds: Stop issuing corrections this many seconds after
                the run starts; remaining loans are counted as deferred.
                Defaults to the configured reconciliation deadline.

        Returns:
            The appended IntegrityReport

        Raises:
            LoanStoreReadFailure: If the loan set cannot be read
            LedgerReadFailure: If the payment ledger cannot be read
        """
        run_id = str(uuid.uuid4())
        started = time.monotonic()
        if deadline_seconds is None:
            deadline_seconds = self.config.reconciliation_deadline_seconds
        cutoff = started + deadline_seconds if deadline_seconds is not None else None
        today = self.clock.today()

        log_action(logger, "info", "Integrity check started", run_id=run_id, action="integrity_check")

        try:
            loans = self.loan_book.list_loans()
        except Exception as e:
            self._record_run_failure(run_id, "loans", e)
            raise LoanStoreReadFailure(f"Unable to read loan records: {e}") from e

        try:
            ledger = self.loan_book.get_ledger()
        except Exception as e:
            self._record_run_failure(run_id, "ledger", e)
            raise LedgerReadFailure(f"Unable to read payment ledger: {e}") from e

        reviews, skipped = self._review_loans(run_id, loans, ledger, today)
        discrepant = [r for r in reviews if r.snapshot.has_payment_discrepancy]
        details = [self._detail_for(r) for r in discrepant[:self.config.max_discrepancy_details]]

        outcomes = self._apply_corrections(run_id, discrepant, cutoff)
        applied = outcomes.count(CorrectionOutcome.APPLIED)
        failed = outcomes.count(CorrectionOutcome.FAILED)
        deferred = outcomes.count(CorrectionOutcome.DEFERRED)

        report = self._build_report(run_id, reviews, discrepant, details, skipped)
        report.corrections_applied = applied
        report.corrections_failed = failed
        report.corrections_deferred = deferred
        if failed or deferred:
            report.notes += f" {applied} correction(s) applied, {failed} failed, {deferred} deferred."

        self.report_log.append(report)

        self.audit_trail.log_event(
            event_type=AuditEventType.INTEGRITY_CHECK_COMPLETED,
            entity_type="integrity_check",
            entity_id=report.id,
            metadata={
                "run_id": run_id,
                "status": report.status,
                "total_loans": report.total_loans,
                "loans_with_discrepancies": report.loans_with_discrepancies,
                "payment_variance": report.payment_variance.to_string(),
                "corrections_applied": applied,
                "corrections_failed": failed,
                "corrections_deferred": deferred,
            }
        )
        log_action(
            logger, "info",
            f"Integrity check finished: {report.status.value}",
            run_id=run_id,
            action="integrity_check",
            extra={
                "total_loans": report.total_loans,
                "discrepancies": report.loans_with_discrepancies,
                "corrections_applied": applied,
                "corrections_failed": failed,
                "corrections_deferred": deferred,
                "elapsed_seconds": round(time.monotonic() - started, 3),
            }
        )
        return report

    def recalculate_balances(self) -> RecalculationResult:
        """
        Re-derive every loan's expected obligation under the configured
        policy and refresh its outstanding balance and status from the
        recorded total paid. Version-checked and best effort.
        """
        result = RecalculationResult()
        try:
            loans = self.loan_book.list_loans()
        except Exception as e:
            logger.error("Balance recalculation aborted reading loans: %s", e)
            raise LoanStoreReadFailure(f"Unable to read loan records: {e}") from e

        for loan in loans:
            try:
                schedule = self.loan_book.schedule_for(loan)
            except InvalidLoanParameters as e:
                logger.warning("Skipping loan %s during recalculation: %s", loan.id, e)
                result.skipped.append(loan.id)
                continue

            with self.loan_book.lock_for(loan.id):
                updated = replace(loan)
                updated.total_expected = schedule.total_payment
                updated.monthly_installment = schedule.monthly_installment
                updated.commencement_date = schedule.commencement_date
                updated.termination_date = schedule.termination_date
                updated.accrual_policy = schedule.policy.key
                remaining = schedule.total_payment - loan.total_paid
                updated.outstanding_balance = Money.zero(self.currency) if remaining.is_negative() else remaining
                updated.status = resolve_status(
                    loan.status, updated.outstanding_balance, loan.total_paid,
                    self.config.completion_tolerance_amount
                )
                try:
                    self.loan_book.save_correction(updated, loan.version)
                except Exception as e:
                    logger.error("Error recalculating loan %s: %s", loan.id, e)
                    result.failed += 1
                    continue

            result.updated += 1
            result.results.append({
                'loan_id': loan.id,
                'total_expected': str(updated.total_expected.amount),
                'outstanding_balance': str(updated.outstanding_balance.amount),
                'status': updated.status.value,
            })

        self.audit_trail.log_event(
            event_type=AuditEventType.BALANCES_RECALCULATED,
            entity_type="portfolio",
            entity_id="loans",
            metadata={
                "updated": result.updated,
                "failed": result.failed,
                "skipped": len(result.skipped),
                "accrual_policy": self.loan_book.engine.policy.key,
            }
        )
        logger.info("Recalculated %d loan(s), %d failed", result.updated, result.failed)
        return result

    def _review_loans(
        self,
        run_id: str,
        loans: List[Loan],
        ledger: Dict[str, list],
        today
    ) -> Tuple[List[LoanReview], List[str]]:
        reviews = []
        skipped = []
        for loan in loans:
            try:
                schedule = self.loan_book.schedule_for(loan)
            except InvalidLoanParameters as e:
                log_action(
                    logger, "warning", f"Loan skipped, parameters invalid: {e}",
                    loan_id=loan.id, run_id=run_id, action="review_loan"
                )
                skipped.append(loan.id)
                continue
            snapshot = self.calculator.snapshot(loan, schedule, ledger.get(loan.id, []), today)
            reviews.append(LoanReview(loan=loan, schedule=schedule, snapshot=snapshot))
        return reviews, skipped

    def _apply_corrections(
        self,
        run_id: str,
        discrepant: List[LoanReview],
        cutoff: Optional[float]
    ) -> List[CorrectionOutcome]:
        if not discrepant:
            return []

        workers = max(1, self.config.reconciliation_workers)
        if workers == 1:
            return [self._correct_before(run_id, review, cutoff) for review in discrepant]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as executor:
            futures = [executor.submit(self._correct_before, run_id, review, cutoff) for review in discrepant]
            return [future.result() for future in futures]

    def _correct_before(self, run_id: str, review: LoanReview, cutoff: Optional[float]) -> CorrectionOutcome:
        if cutoff is not None and time.monotonic() >= cutoff:
            log_action(
                logger, "warning", "Correction deferred, run deadline reached",
                loan_id=review.loan.id, run_id=run_id, action="correct_loan"
            )
            return CorrectionOutcome.DEFERRED
        return self._correct_loan(run_id, review)

    def _correct_loan(self, run_id: str, review: LoanReview) -> CorrectionOutcome:
        """Overwrite one loan's cached balances with the verified figures"""
        loan = review.loan
        snapshot = review.snapshot

        corrected = replace(loan)
        corrected.total_paid = snapshot.verified_total_paid
        corrected.total_expected = review.schedule.total_payment
        corrected.outstanding_balance = snapshot.verified_outstanding
        corrected.status = resolve_status(
            loan.status, snapshot.verified_outstanding, snapshot.verified_total_paid,
            self.config.completion_tolerance_amount
        )

        with self.loan_book.lock_for(loan.id):
            try:
                self.loan_book.save_correction(corrected, loan.version)
            except StaleLoanVersion as e:
                failure = e
            except Exception as e:
                failure = PerLoanWriteFailure(loan.id, str(e))
            else:
                failure = None

        if failure is not None:
            log_action(
                logger, "error", f"Correction failed: {failure}",
                loan_id=loan.id, run_id=run_id, action="correct_loan"
            )
            self._audit_loan_event(
                run_id, loan.id, AuditEventType.LOAN_CORRECTION_FAILED,
                {"run_id": run_id, "error": str(failure), "error_type": type(failure).__name__}
            )
            return CorrectionOutcome.FAILED

        self._audit_loan_event(
            run_id, loan.id, AuditEventType.LOAN_BALANCE_CORRECTED,
            {
                "run_id": run_id,
                "previous_total_paid": loan.total_paid.to_string(),
                "total_paid": corrected.total_paid.to_string(),
                "previous_outstanding": loan.outstanding_balance.to_string(),
                "outstanding_balance": corrected.outstanding_balance.to_string(),
                "previous_status": loan.status,
                "status": corrected.status,
            }
        )
        log_action(
            logger, "info", "Loan balances corrected from ledger",
            loan_id=loan.id, run_id=run_id, action="correct_loan",
            extra={"variance": str((loan.total_paid - corrected.total_paid).amount)}
        )
        return CorrectionOutcome.APPLIED

    def _audit_loan_event(
        self,
        run_id: str,
        loan_id: str,
        event_type: AuditEventType,
        metadata: Dict[str, Any]
    ) -> None:
        """Record a per-loan audit event; a failed audit write never stops the run"""
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan_id,
                metadata=metadata
            )
        except Exception as e:
            log_action(
                logger, "error", f"Audit write failed for {event_type.value}: {e}",
                loan_id=loan_id, run_id=run_id, action="audit_correction",
                extra={"error_type": type(e).__name__}
            )

    def _detail_for(self, review: LoanReview) -> DiscrepancyDetail:
        loan = review.loan
        snapshot = review.snapshot
        return DiscrepancyDetail(
            loan_id=loan.id,
            borrower_name=loan.borrower_name,
            employee_id=loan.employee_id,
            system_total_paid=loan.total_paid,
            verified_total_paid=snapshot.verified_total_paid,
            variance=loan.total_paid - snapshot.verified_total_paid,
            outstanding_balance=loan.outstanding_balance,
            days_past_due=snapshot.days_past_due,
            is_npl=snapshot.is_npl,
        )

    def _build_report(
        self,
        run_id: str,
        reviews: List[LoanReview],
        discrepant: List[LoanReview],
        details: List[DiscrepancyDetail],
        skipped: List[str]
    ) -> IntegrityReport:
        currency = self.currency
        tolerance = self.config.discrepancy_tolerance_amount

        system_balance = sum_money((r.loan.outstanding_balance for r in reviews), currency)
        verified_balance = sum_money((r.snapshot.verified_outstanding for r in reviews), currency)
        paid_system = sum_money((r.loan.total_paid for r in reviews), currency)
        paid_verified = sum_money((r.snapshot.verified_total_paid for r in reviews), currency)
        payment_variance = paid_system - paid_verified

        npl = [r for r in reviews if r.snapshot.is_npl]
        npl_balance = sum_money((r.snapshot.verified_outstanding for r in npl), currency)
        active_balance = sum_money(
            (r.snapshot.verified_outstanding for r in reviews
             if r.loan.status != LoanStatus.COMPLETED and r.snapshot.verified_outstanding.is_positive()),
            currency
        )
        npl_ratio = Decimal('0.00')
        if active_balance.is_positive():
            npl_ratio = (npl_balance.amount / active_balance.amount * HUNDRED).quantize(Decimal('0.01'))

        par_30 = [r for r in reviews if r.snapshot.days_past_due >= self.config.par_30_days]
        par_90 = [r for r in reviews if r.snapshot.days_past_due >= self.config.par_90_days]

        if discrepant or abs(payment_variance.amount) > tolerance:
            status = IntegrityStatus.DISCREPANCIES_FOUND
            notes = (f"Found {len(discrepant)} loan(s) with payment discrepancies. "
                     f"Total variance: {payment_variance.amount}.")
        else:
            status = IntegrityStatus.CLEAN
            notes = "All financial records are synchronized."

        now = self.clock.now()
        return IntegrityReport(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            run_id=run_id,
            check_type=self.config.integrity_check_type,
            total_loans=len(reviews),
            loans_with_discrepancies=len(discrepant),
            total_portfolio_balance=system_balance,
            verified_portfolio_balance=verified_balance,
            balance_variance=system_balance - verified_balance,
            total_paid_system=paid_system,
            total_paid_transactions=paid_verified,
            payment_variance=payment_variance,
            npl_count=len(npl),
            npl_balance=npl_balance,
            npl_ratio=npl_ratio,
            par_30_count=len(par_30),
            par_30_balance=sum_money((r.snapshot.verified_outstanding for r in par_30), currency),
            par_90_count=len(par_90),
            par_90_balance=sum_money((r.snapshot.verified_outstanding for r in par_90), currency),
            status=status,
            notes=notes,
            discrepancy_details=details,
            skipped_loans=skipped,
        )

    def _record_run_failure(self, run_id: str, source: str, error: Exception) -> None:
        log_action(
            logger, "error", f"Integrity check aborted reading {source}: {error}",
            run_id=run_id, action="integrity_check"
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.INTEGRITY_CHECK_FAILED,
            entity_type="integrity_check",
            entity_id=run_id,
            metadata={"source": source, "error": str(error), "error_type": type(error).__name__}
        )
