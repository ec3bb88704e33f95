"""
Test suite for payment matching

Payments are grouped by their declared target period, never by date.
"""

from decimal import Decimal
from datetime import datetime, timezone, date

from loan_engine.currency import Money, Currency
from loan_engine.amortization import AmortizationEngine
from loan_engine.ledger import Payment, ledger_total
from loan_engine.matching import match_payments_to_periods, total_paid


def make_payment(payment_id: str, amount, date_paid: date, month_for: int) -> Payment:
    now = datetime.now(timezone.utc)
    return Payment(
        id=payment_id,
        created_at=now,
        updated_at=now,
        loan_id="LOAN-1",
        amount=Money(Decimal(amount), Currency.NGN),
        date_paid=date_paid,
        month_for=month_for,
        reference=f"RRR-{payment_id}",
    )


class TestMatchPaymentsToPeriods:
    """Test grouping of the ledger by scheduled period"""

    def setup_method(self):
        self.schedule = AmortizationEngine().compute_schedule(600000, 0, 12, 0, date(2024, 1, 15))

    def test_every_period_has_a_key(self):
        matched = match_payments_to_periods([], self.schedule.entries)

        assert sorted(matched) == list(range(1, 13))
        assert all(payments == [] for payments in matched.values())

    def test_groups_by_declared_period_not_date(self):
        """A payment made in June for period 1 still belongs to period 1"""
        payments = [make_payment("P1", "50000", date(2024, 6, 1), 1)]
        matched = match_payments_to_periods(payments, self.schedule.entries)

        assert [p.id for p in matched[1]] == ["P1"]
        assert matched[5] == []

    def test_split_payments_kept_individually_and_ordered(self):
        payments = [
            make_payment("P2", "30000", date(2024, 2, 12), 1),
            make_payment("P1", "20000", date(2024, 2, 1), 1),
            make_payment("P3", "50000", date(2024, 3, 14), 2),
        ]
        matched = match_payments_to_periods(payments, self.schedule.entries)

        assert [p.id for p in matched[1]] == ["P1", "P2"]
        assert [p.id for p in matched[2]] == ["P3"]

    def test_out_of_schedule_period_is_ignored(self):
        payments = [
            make_payment("P1", "50000", date(2024, 2, 1), 1),
            make_payment("P99", "50000", date(2024, 2, 1), 99),
        ]
        matched = match_payments_to_periods(payments, self.schedule.entries)

        assert 99 not in matched
        assert sum(len(group) for group in matched.values()) == 1


class TestTotals:
    """Summing payments"""

    def test_total_paid(self):
        payments = [
            make_payment("P1", "20000.10", date(2024, 2, 1), 1),
            make_payment("P2", "29999.90", date(2024, 2, 5), 1),
        ]
        assert total_paid(payments, Currency.NGN) == Money(Decimal('50000'), Currency.NGN)

    def test_empty_total_is_zero(self):
        assert total_paid([], Currency.NGN).is_zero()

    def test_malformed_amount_counts_as_zero(self):
        class Broken:
            amount = None

        payments = [make_payment("P1", "100", date(2024, 2, 1), 1), Broken()]
        assert ledger_total(payments, Currency.NGN) == Money(Decimal('100'), Currency.NGN)
