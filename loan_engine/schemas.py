"""
Pydantic schemas for portfolio snapshots loaded by the reconciliation job
"""

import uuid
from decimal import Decimal
from datetime import date, datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from .currency import Money, Currency
from .ledger import Payment
from .loans import LoanStatus


class PortfolioLoanModel(BaseModel):
    id: Optional[str] = None
    borrower_name: str = ""
    principal: Decimal = Field(..., description="Disbursed amount")
    annual_rate_percent: Decimal  # e.g. 6 for 6%
    tenor_months: int
    moratorium_months: int = 0
    disbursement_date: date
    total_paid: Decimal = Decimal("0")  # As recorded by the loan system, drift included
    status: Optional[LoanStatus] = None
    employee_id: Optional[str] = None

    def recorded_total_paid(self, currency: Currency) -> Money:
        return Money(self.total_paid, currency)


class PortfolioPaymentModel(BaseModel):
    id: Optional[str] = None
    loan_id: str
    amount: Decimal = Field(..., description="Amount paid")
    date_paid: date
    month_for: int
    reference: str = ""

    def to_payment(self, currency: Currency, now: datetime) -> Payment:
        return Payment(
            id=self.id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=self.loan_id,
            amount=Money(self.amount, currency),
            date_paid=self.date_paid,
            month_for=self.month_for,
            reference=self.reference,
        )


class PortfolioModel(BaseModel):
    loans: List[PortfolioLoanModel] = []
    payments: List[PortfolioPaymentModel] = []
