#!/usr/bin/env python3
"""
Loan Engine Reconciliation Job

Loads a portfolio snapshot (loans with their recorded balances plus the
payment ledger) and runs one integrity check against it. Intended to be
invoked by a scheduler; exits non-zero when the run fails.

Portfolio file format:
    {
      "loans": [{"id", "borrower_name", "principal", "annual_rate_percent",
                 "tenor_months", "moratorium_months", "disbursement_date",
                 "total_paid", "status", "employee_id"}],
      "payments": [{"id", "loan_id", "amount", "date_paid", "month_for",
                    "reference"}]
    }
"""

import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from loan_engine.config import get_config
from loan_engine.core import LoanServicingCore
from loan_engine.currency import Money
from loan_engine.exceptions import LoanEngineError
from loan_engine.loans import resolve_status
from loan_engine.logging_config import setup_logging
from loan_engine.schemas import PortfolioModel


def load_portfolio(core: LoanServicingCore, path: Path) -> None:
    """Populate the core's store with loans and ledger entries as recorded"""
    portfolio = PortfolioModel.model_validate_json(path.read_text(encoding="utf-8"))

    book = core.loan_book
    now = core.clock.now()

    for row in portfolio.loans:
        loan = book.originate_loan(
            borrower_name=row.borrower_name,
            principal=row.principal,
            annual_rate_percent=row.annual_rate_percent,
            tenor_months=row.tenor_months,
            moratorium_months=row.moratorium_months,
            disbursement_date=row.disbursement_date,
            employee_id=row.employee_id,
            loan_id=row.id,
        )
        # Carry over the system-recorded figures, drift included
        loan.total_paid = row.recorded_total_paid(book.currency)
        remaining = loan.total_expected - loan.total_paid
        loan.outstanding_balance = Money.zero(book.currency) if remaining.is_negative() else remaining
        if row.status is not None:
            loan.status = row.status
        else:
            loan.status = resolve_status(
                loan.status, loan.outstanding_balance, loan.total_paid,
                core.config.completion_tolerance_amount
            )
        core.storage.save(book.loans_table, loan.id, loan.to_dict())

    for row in portfolio.payments:
        payment = row.to_payment(book.currency, now)
        core.storage.insert(book.payments_table, payment.id, payment.to_dict())
    book.invalidate_cache()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run a loan portfolio integrity check")
    parser.add_argument("portfolio", type=Path, help="Portfolio JSON file")
    parser.add_argument("--deadline", type=float, default=None,
                        help="Seconds after which no further corrections are issued")
    args = parser.parse_args(argv)

    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    core = LoanServicingCore(config=config)
    try:
        load_portfolio(core, args.portfolio)
        report = core.run_integrity_check(args.deadline)
    except (LoanEngineError, ValidationError, ValueError, OSError) as e:
        logger.error("Integrity check job failed: %s", e, exc_info=True)
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
