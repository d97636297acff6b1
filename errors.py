"""Error kinds raised by the loan core.

``LoanError`` subclasses are expected business outcomes whose message can be shown
to a librarian as is. ``InvariantViolation`` and ``StockReleaseError`` signal bugs
or infrastructure failures and are reported as generic failures.
"""

from typing import Optional


class LoanError(Exception):
    code = "loan_error"


class NotFoundError(LoanError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity.capitalize()} {entity_id} not found.")
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(LoanError):
    code = "validation_error"


class InsufficientStockError(LoanError):
    code = "insufficient_stock"

    def __init__(self, resource_id: str, requested: int, available: Optional[int] = None) -> None:
        if available is None:
            message = f"Insufficient stock for resource {resource_id}. Requested: {requested}"
        else:
            message = f"Insufficient stock for resource {resource_id}. Available: {available}, requested: {requested}"
        super().__init__(message)
        self.resource_id = resource_id
        self.requested = requested
        self.available = available


class PersonNotEligibleError(LoanError):
    code = "person_not_eligible"

    def __init__(self, person_id: str, reason: str) -> None:
        super().__init__(reason)
        self.person_id = person_id
        self.reason = reason


class ResourceNotLoanableError(LoanError):
    code = "resource_not_loanable"


class AlreadyClosedError(LoanError):
    code = "already_closed"

    def __init__(self, loan_id: str, status: str) -> None:
        super().__init__(f"Loan {loan_id} is already {status}.")
        self.loan_id = loan_id
        self.status = status


class LoanOverdueError(LoanError):
    code = "loan_overdue"


class InvariantViolation(Exception):
    code = "invariant_violation"


class StockReleaseError(Exception):
    code = "stock_release_failed"

    def __init__(self, loan_id: str, attempts: int) -> None:
        super().__init__(f"Could not restore stock for loan {loan_id} after {attempts} attempt(s).")
        self.loan_id = loan_id
        self.attempts = attempts
