import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import database
import overdue
from config import settings
from errors import AlreadyClosedError, StockReleaseError
from loan import Loan, LoanStatus, ResourceCondition, ensure_utc, utcnow
from loans import LoanManager
from stock_ledger import StockLedger

logger = logging.getLogger(__name__)

# listener(resource_id, delta, conn=...)
TotalAdjustmentListener = Callable[..., None]
# listener(resource_id, condition, conn=...)
ConditionListener = Callable[..., None]


@dataclass
class ReturnResult:
    loan: Loan
    days_overdue: int
    was_overdue: bool
    condition_flagged: bool
    message: str

    def to_dict(self, now: datetime) -> Dict[str, Any]:
        return {
            "loan": overdue.annotate(self.loan, now),
            "days_overdue": self.days_overdue,
            "was_overdue": self.was_overdue,
            "condition_flagged": self.condition_flagged,
            "message": self.message,
        }


class ReturnProcessor:
    """Closes loans and puts their units back on the shelf.

    Closing the loan and restoring stock are two transactions. The loan keeps
    ``stock_released = 0`` until the second one commits, so a failed release is
    retried by loan id and never double counted.
    """

    def __init__(
        self,
        loans: LoanManager,
        ledger: StockLedger,
        retries: Optional[int] = None,
        backoff: Optional[float] = None,
    ) -> None:
        self.loans = loans
        self.ledger = ledger
        self.retries = max(1, settings.stock_release_retries if retries is None else retries)
        self.backoff = settings.stock_release_backoff if backoff is None else backoff
        self._total_adjustment_listeners: List[TotalAdjustmentListener] = []
        self._condition_listeners: List[ConditionListener] = []

    def on_total_adjustment(self, listener: TotalAdjustmentListener) -> None:
        """Called with ``delta = -quantity`` when a loan closes as lost."""
        self._total_adjustment_listeners.append(listener)

    def on_condition_reported(self, listener: ConditionListener) -> None:
        """Called when a resource comes back in any condition other than good."""
        self._condition_listeners.append(listener)

    def process_return(
        self,
        loan_id: str,
        return_date: Optional[datetime] = None,
        resource_condition: Union[str, ResourceCondition] = ResourceCondition.GOOD,
        observations: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReturnResult:
        now = ensure_utc(now or utcnow())
        before = self.loans.get_loan(loan_id)
        try:
            loan = self.loans.return_loan(
                loan_id,
                return_date=return_date,
                resource_condition=resource_condition,
                observations=observations,
                now=now,
            )
        except AlreadyClosedError:
            self._finish_pending(before)
            raise
        self._release_with_retry(loan.id)
        return self._result(before, self.loans.get_loan(loan.id))

    def mark_as_lost(self, loan_id: str, observations: Optional[str] = None, now: Optional[datetime] = None) -> ReturnResult:
        now = ensure_utc(now or utcnow())
        before = self.loans.get_loan(loan_id)
        try:
            loan = self.loans.mark_as_lost(loan_id, observations=observations, now=now)
        except AlreadyClosedError:
            self._finish_pending(before)
            raise
        self._release_with_retry(loan.id)
        return self._result(before, self.loans.get_loan(loan.id))

    def retry_release(self, loan_id: str) -> bool:
        """Finish the stock release of a closed loan; ``False`` if nothing was pending."""
        return self._release_with_retry(loan_id)

    def reconcile_pending(self) -> List[str]:
        """Retry every pending release. Returns the ids of loans settled now."""
        settled = []
        for loan in self.loans.pending_releases():
            if self._release_with_retry(loan.id):
                settled.append(loan.id)
        if settled:
            logger.warning(f"Reconciled stock for {len(settled)} loan(s): {', '.join(settled)}")
        return settled

    # ------------------------- Internals ------------------------- #
    def _finish_pending(self, loan: Loan) -> None:
        # a repeated close request still completes a release left over from the first one
        if loan.is_closed and not loan.stock_released:
            self._release_with_retry(loan.id)

    def _settle(self, loan_id: str) -> bool:
        with database.transaction(db_file=self.loans.db_file) as conn:
            loan = self.loans.get_loan(loan_id, conn=conn)
            if not self.ledger.release_for_loan(loan_id, conn=conn):
                return False
            condition = loan.resource_condition
            if loan.status == LoanStatus.LOST:
                for listener in self._total_adjustment_listeners:
                    listener(loan.resource_id, -loan.quantity, conn=conn)
            if condition is not None and condition != ResourceCondition.GOOD:
                for listener in self._condition_listeners:
                    listener(loan.resource_id, condition.value, conn=conn)
        return True

    def _release_with_retry(self, loan_id: str) -> bool:
        """Transient database errors are retried with exponential backoff."""
        for attempt in range(self.retries):
            try:
                return self._settle(loan_id)
            except sqlite3.OperationalError as e:
                if attempt < self.retries - 1:
                    wait = self.backoff * (2 ** attempt)
                    logger.warning(
                        f"Stock release for loan {loan_id} failed (attempt {attempt + 1}/{self.retries}): {e}; "
                        f"retrying in {wait:.2f}s"
                    )
                    time.sleep(wait)
                else:
                    logger.error(f"Stock release for loan {loan_id} failed after {self.retries} attempt(s): {e}")
                    raise StockReleaseError(loan_id, self.retries) from e
        return False

    @staticmethod
    def _result(before: Loan, loan: Loan) -> ReturnResult:
        # lateness is measured at the moment the loan was closed
        closed_at = loan.returned_date
        was_overdue = overdue.is_overdue(before, closed_at)
        days = overdue.days_overdue(before, closed_at) if was_overdue else 0
        condition = loan.resource_condition
        flagged = condition is not None and condition != ResourceCondition.GOOD

        if loan.status == LoanStatus.LOST:
            message = f"Loan marked as lost; {loan.quantity} unit(s) withdrawn from stock."
        elif was_overdue:
            message = f"Loan returned {days} day(s) late."
        else:
            message = "Loan returned on time."
        return ReturnResult(loan, days, was_overdue, flagged, message)
