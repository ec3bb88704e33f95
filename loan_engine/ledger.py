"""
Payment Ledger Module

Ledger transactions are the verified record of repayments: each carries the
owning loan, the amount, the date paid, the scheduled period it targets
("month for") and an externally verifiable reference number. Ledger entries
are never mutated; removal only happens through an explicit reversal.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from .currency import Money, Currency
from .exceptions import InvalidPayment
from .storage import StorageRecord


@dataclass
class Payment(StorageRecord):
    """One recorded repayment event"""
    loan_id: str
    amount: Money
    date_paid: date
    month_for: int            # Scheduled period this payment satisfies
    reference: str = ""       # Remita/bank reference number

    def __post_init__(self):
        if not self.amount.is_positive():
            raise InvalidPayment(f"Payment amount must be positive, got {self.amount.to_string()}")
        if isinstance(self.month_for, bool) or not isinstance(self.month_for, int) or self.month_for < 1:
            raise InvalidPayment(f"Payment must target a period >= 1, got {self.month_for!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'date_paid': self.date_paid.isoformat(),
            'month_for': self.month_for,
            'reference': self.reference,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            date_paid=date.fromisoformat(data['date_paid']),
            month_for=data['month_for'],
            reference=data.get('reference', ''),
        )


def payment_amount(payment: Any, currency: Currency) -> Money:
    """Amount of a ledger entry; missing or malformed amounts count as zero"""
    amount = getattr(payment, 'amount', None)
    if isinstance(amount, Money) and amount.currency == currency:
        return amount
    return Money.zero(currency)


def ledger_total(payments: Iterable[Any], currency: Currency) -> Money:
    """Verified total paid: the plain sum of ledger amounts"""
    total = Money.zero(currency)
    for payment in payments:
        total = total + payment_amount(payment, currency)
    return total


def group_by_loan(payments: Iterable[Payment]) -> Dict[str, List[Payment]]:
    ledger: Dict[str, List[Payment]] = {}
    for payment in payments:
        ledger.setdefault(payment.loan_id, []).append(payment)
    for entries in ledger.values():
        entries.sort(key=lambda p: (p.date_paid, p.created_at))
    return ledger
