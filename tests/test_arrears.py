"""
Test suite for arrears calculation

Covers the calendar-elapsed estimate and the ledger-verified golden-record
snapshot: DPD, overdue and arrears months, NPL classification, health and
the payment discrepancy flag.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_engine.config import EngineConfig
from loan_engine.currency import Money, Currency
from loan_engine.amortization import AmortizationEngine
from loan_engine.ledger import Payment
from loan_engine.classification import PeriodStatus, classify_schedule
from loan_engine.loans import Loan, LoanStatus
from loan_engine.arrears import (
    ArrearsCalculator, DpdBucket, LoanHealth, estimate_arrears, months_between
)


def ngn(value) -> Money:
    return Money(Decimal(str(value)), Currency.NGN)


def make_payment(amount, date_paid: date, month_for: int) -> Payment:
    now = datetime.now(timezone.utc)
    return Payment(
        id=f"PAY-{month_for}-{date_paid.isoformat()}",
        created_at=now,
        updated_at=now,
        loan_id="LOAN-1",
        amount=ngn(amount),
        date_paid=date_paid,
        month_for=month_for,
    )


class TestEstimateArrears:
    """Calendar-elapsed approximation"""

    def setup_method(self):
        self.installment = ngn('1000')

    def test_not_yet_due_sentinel(self):
        estimate = estimate_arrears(date(2024, 1, 1), 12, self.installment, ngn('0'), date(2024, 1, 20))

        assert estimate.not_yet_due
        assert estimate.months_elapsed == 0
        assert estimate.days_past_due == 0
        assert estimate.arrears_amount.is_zero()
        assert not estimate.in_arrears

    def test_deficit_rounds_months_up(self):
        estimate = estimate_arrears(date(2024, 1, 1), 12, self.installment, ngn('1500'), date(2024, 4, 1))

        assert not estimate.not_yet_due
        assert estimate.months_elapsed == 3
        assert estimate.expected_paid == ngn('3000')
        assert estimate.deficit == ngn('1500')
        assert estimate.months_behind == 2
        assert estimate.days_past_due == 60
        assert estimate.arrears_amount == ngn('2000')

    def test_up_to_date(self):
        estimate = estimate_arrears(date(2024, 1, 1), 12, self.installment, ngn('3000'), date(2024, 4, 1))

        assert not estimate.not_yet_due
        assert estimate.months_behind == 0
        assert estimate.deficit.is_zero()

    def test_months_capped_at_tenor(self):
        estimate = estimate_arrears(date(2024, 1, 1), 12, self.installment, ngn('0'), date(2027, 1, 1))

        assert estimate.months_elapsed == 12
        assert estimate.months_behind == 12
        assert estimate.days_past_due == 360

    def test_months_between(self):
        assert months_between(date(2024, 1, 15), date(2024, 2, 14)) == 0
        assert months_between(date(2024, 1, 15), date(2024, 2, 15)) == 1
        assert months_between(date(2024, 1, 1), date(2024, 3, 31)) == 2
        assert months_between(date(2024, 5, 1), date(2024, 1, 1)) == 0


class TestDpdBucket:
    @pytest.mark.parametrize("days,bucket", [
        (0, DpdBucket.CURRENT),
        (1, DpdBucket.DPD_1_30),
        (30, DpdBucket.DPD_1_30),
        (31, DpdBucket.DPD_31_60),
        (60, DpdBucket.DPD_31_60),
        (61, DpdBucket.DPD_61_90),
        (90, DpdBucket.DPD_61_90),
        (91, DpdBucket.DPD_90_PLUS),
    ])
    def test_bands(self, days, bucket):
        assert DpdBucket.for_days(days) == bucket

    def test_labels(self):
        assert DpdBucket.DPD_90_PLUS.value == "90+ DPD"
        assert DpdBucket.CURRENT.value == "Current"


class TestArrearsSnapshot:
    """Golden-record snapshot on a zero-rate loan: 12 x 50,000 due on the 14th"""

    def setup_method(self):
        self.calculator = ArrearsCalculator(EngineConfig())
        self.schedule = AmortizationEngine().compute_schedule(600000, 0, 12, 0, date(2024, 1, 15))

    def make_loan(self, total_paid='0', status=LoanStatus.ACTIVE) -> Loan:
        now = datetime.now(timezone.utc)
        return Loan(
            id="LOAN-1",
            created_at=now,
            updated_at=now,
            borrower_name="Adaeze Okafor",
            principal=ngn('600000'),
            annual_rate_percent=Decimal('0'),
            tenor_months=12,
            moratorium_months=0,
            disbursement_date=date(2024, 1, 15),
            commencement_date=self.schedule.commencement_date,
            termination_date=self.schedule.termination_date,
            monthly_installment=self.schedule.monthly_installment,
            total_expected=self.schedule.total_payment,
            total_paid=ngn(total_paid),
            status=status,
        )

    def test_two_months_behind(self):
        payments = [
            make_payment('50000', date(2024, 2, 10), 1),
            make_payment('50000', date(2024, 3, 10), 2),
        ]
        snapshot = self.calculator.snapshot(self.make_loan('100000'), self.schedule, payments, date(2024, 5, 20))

        assert snapshot.verified_total_paid == ngn('100000')
        assert snapshot.verified_outstanding == ngn('500000')
        assert snapshot.months_due == 4
        assert snapshot.months_paid == 2
        assert snapshot.overdue_months == 2
        assert snapshot.overdue_amount == ngn('100000')
        assert snapshot.first_unpaid_due_date == date(2024, 4, 14)
        assert snapshot.days_past_due == 36
        assert snapshot.arrears_months == 1
        assert snapshot.arrears_amount == ngn('50000')
        assert snapshot.dpd_bucket == DpdBucket.DPD_31_60
        assert snapshot.health == LoanHealth.DELINQUENT
        assert not snapshot.is_npl
        assert not snapshot.has_payment_discrepancy

    def test_never_paid_is_npl(self):
        snapshot = self.calculator.snapshot(self.make_loan(), self.schedule, [], date(2024, 8, 1))

        assert snapshot.months_due == 6
        assert snapshot.months_paid == 0
        assert snapshot.first_unpaid_due_date == date(2024, 2, 14)
        assert snapshot.days_past_due == 169
        assert snapshot.arrears_months == 5
        assert snapshot.arrears_amount == ngn('250000')
        assert snapshot.overdue_amount == ngn('300000')
        assert snapshot.is_npl
        assert snapshot.health == LoanHealth.NPL
        assert snapshot.dpd_bucket == DpdBucket.DPD_90_PLUS

    def test_npl_threshold_is_inclusive(self):
        """Exactly 90 days past due is non-performing"""
        snapshot = self.calculator.snapshot(self.make_loan(), self.schedule, [], date(2024, 5, 14))

        assert snapshot.days_past_due == 90
        assert snapshot.is_npl
        assert snapshot.dpd_bucket == DpdBucket.DPD_61_90

    def test_due_today_is_not_past_due(self):
        snapshot = self.calculator.snapshot(self.make_loan(), self.schedule, [], date(2024, 2, 14))

        assert snapshot.months_due == 1
        assert snapshot.overdue_months == 1
        assert snapshot.days_past_due == 0
        assert snapshot.arrears_months == 0
        assert snapshot.health == LoanHealth.PERFORMING

    def test_under_thirty_days_has_no_arrears(self):
        snapshot = self.calculator.snapshot(self.make_loan(), self.schedule, [], date(2024, 3, 1))

        assert snapshot.days_past_due == 16
        assert snapshot.overdue_months == 1
        assert snapshot.arrears_months == 0
        assert snapshot.arrears_amount.is_zero()
        assert snapshot.dpd_bucket == DpdBucket.DPD_1_30

    def test_before_first_due_date(self):
        snapshot = self.calculator.snapshot(self.make_loan(), self.schedule, [], date(2024, 1, 20))

        assert snapshot.months_due == 0
        assert snapshot.days_past_due == 0
        assert snapshot.first_unpaid_due_date is None
        assert snapshot.health == LoanHealth.PERFORMING

    def test_fully_repaid_has_zero_metrics(self):
        payments = [
            make_payment('50000', date(2024, 1, 20) if i == 1 else date(2024, i, 10), i)
            for i in range(1, 13)
        ]
        snapshot = self.calculator.snapshot(self.make_loan('600000'), self.schedule, payments, date(2025, 6, 1))

        assert snapshot.health == LoanHealth.COMPLETED
        assert snapshot.verified_outstanding.is_zero()
        assert snapshot.days_past_due == 0
        assert snapshot.months_due == 0
        assert not snapshot.is_npl

    def test_completed_status_has_zero_metrics(self):
        snapshot = self.calculator.snapshot(
            self.make_loan('600000', LoanStatus.COMPLETED), self.schedule, [], date(2025, 6, 1)
        )

        assert snapshot.health == LoanHealth.COMPLETED
        assert snapshot.overdue_months == 0
        assert snapshot.has_payment_discrepancy

    def test_metrics_come_from_ledger_not_loan_record(self):
        """The recorded total paid only raises the discrepancy flag"""
        payments = [
            make_payment('50000', date(2024, 2, 10), 1),
            make_payment('50000', date(2024, 3, 10), 2),
        ]
        snapshot = self.calculator.snapshot(self.make_loan('150000'), self.schedule, payments, date(2024, 5, 20))

        assert snapshot.has_payment_discrepancy
        assert snapshot.verified_total_paid == ngn('100000')
        assert snapshot.months_paid == 2

    def test_discrepancy_within_tolerance_is_ignored(self):
        payments = [make_payment('50000', date(2024, 2, 10), 1)]
        snapshot = self.calculator.snapshot(self.make_loan('50000.01'), self.schedule, payments, date(2024, 2, 20))

        assert not snapshot.has_payment_discrepancy

    def test_configured_npl_threshold(self):
        calculator = ArrearsCalculator(EngineConfig(npl_days_threshold=60))
        snapshot = calculator.snapshot(self.make_loan(), self.schedule, [], date(2024, 4, 20))

        assert snapshot.days_past_due == 66
        assert snapshot.is_npl

    def test_to_dict(self):
        snapshot = self.calculator.snapshot(self.make_loan(), self.schedule, [], date(2024, 8, 1))
        data = snapshot.to_dict()

        assert data['loan_id'] == "LOAN-1"
        assert data['days_past_due'] == 169
        assert data['dpd_bucket'] == "90+ DPD"
        assert data['health'] == "npl"
        assert data['first_unpaid_due_date'] == "2024-02-14"

    def test_rounding_shortfall_within_tolerance_is_paid(self):
        """Periods each paid just under the installment agree with the repayment grid"""
        payments = [
            make_payment('49999.50', entry.due_date, entry.period)
            for entry in self.schedule.entries[:4]
        ]
        today = date(2024, 5, 20)

        grid = classify_schedule(self.schedule, payments, today, EngineConfig().emi_tolerance_amount)
        snapshot = self.calculator.snapshot(self.make_loan('199998'), self.schedule, payments, today)

        assert [row.status for row in grid[:4]] == [PeriodStatus.PAID] * 4
        assert snapshot.months_due == 4
        assert snapshot.months_paid == 4
        assert snapshot.overdue_months == 0
        assert snapshot.overdue_amount.is_zero()
        assert snapshot.days_past_due == 0
        assert snapshot.first_unpaid_due_date is None
        assert snapshot.health == LoanHealth.PERFORMING

    def test_shortfall_beyond_tolerance_is_overdue(self):
        payments = [
            make_payment('49998.00', entry.due_date, entry.period)
            for entry in self.schedule.entries[:4]
        ]
        snapshot = self.calculator.snapshot(self.make_loan('199992'), self.schedule, payments, date(2024, 5, 20))

        assert snapshot.months_paid == 0
        assert snapshot.overdue_months == 4
        assert snapshot.days_past_due == 96
