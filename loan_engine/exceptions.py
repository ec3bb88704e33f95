"""Exception hierarchy for the loan engine."""


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""


class ConfigurationError(LoanEngineError):
    """Raised when configuration is invalid or names an unknown policy."""


class InvalidLoanParameters(LoanEngineError, ValueError):
    """Raised for non-positive principal or tenor, or a non-finite rate."""


class InvalidPayment(LoanEngineError, ValueError):
    """Raised when a ledger entry has a non-positive amount or no target period."""


class LoanNotFound(LoanEngineError, LookupError):
    """Raised when a referenced loan does not exist."""


class LoanStoreReadFailure(LoanEngineError):
    """Raised when the loan set cannot be read; aborts a reconciliation run."""


class LedgerReadFailure(LoanEngineError):
    """Raised when the payment ledger cannot be read; aborts a reconciliation run."""


class PerLoanWriteFailure(LoanEngineError):
    """Raised when a single loan correction cannot be written."""

    def __init__(self, loan_id: str, message: str):
        super().__init__(f"Loan {loan_id}: {message}")
        self.loan_id = loan_id


class StaleLoanVersion(PerLoanWriteFailure):
    """Raised when a loan changed between read and corrective write."""

    def __init__(self, loan_id: str, expected_version: int, actual_version: int):
        super().__init__(
            loan_id,
            f"expected version {expected_version}, found {actual_version}"
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class AppendOnlyViolation(LoanEngineError):
    """Raised when an append-only record would be overwritten."""
