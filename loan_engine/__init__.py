"""
Loan Amortization & Reconciliation Engine

Turns loan origination parameters into repayment schedules, classifies
scheduled periods against the payment ledger, derives delinquency metrics
and reconciles denormalized loan balances against verified transactions.
All financial math uses Decimal.
"""

__version__ = "1.0.0"
