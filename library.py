import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import database
import overdue
from catalog import Person, PersonDirectory, Resource, ResourceCatalog
from config import Settings, settings
from database import initialize_database
from eligibility import EligibilityChecker, EligibilityResult
from loan import Loan, utcnow
from loans import LoanManager
from returns import ReturnProcessor, ReturnResult
from stock_ledger import StockLedger

logger = logging.getLogger(__name__)


class Library:
    """Wires the loan core to its collaborators and persistence.

    The API and the CLI talk to this facade only.
    """

    def __init__(self, db_file: Optional[str] = None, config: Settings = settings) -> None:
        # every component is bound to this file, so several libraries can coexist
        self.db_file = db_file or database.resolve_database_file()
        initialize_database(self.db_file)

        self.config = config
        self.catalog = ResourceCatalog(self.db_file)
        self.people = PersonDirectory(self.db_file)
        self.ledger = StockLedger(self.catalog)
        self.eligibility = EligibilityChecker(
            self.people,
            max_active_loans=config.max_active_loans,
            person_type_limits=config.person_type_loan_limits,
            block_overdue=config.block_borrowers_with_overdue,
        )
        self.loans = LoanManager(
            self.catalog,
            self.people,
            self.ledger,
            self.eligibility,
            loan_period_days=config.loan_period_days,
            max_quantity=config.max_loan_quantity,
            allowed_resource_states=config.allowed_resource_states,
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
            db_file=self.db_file,
        )
        self.returns = ReturnProcessor(
            self.loans,
            self.ledger,
            retries=config.stock_release_retries,
            backoff=config.stock_release_backoff,
        )
        # cataloguing state is owned by the catalog; the return path only signals it
        self.returns.on_total_adjustment(self.catalog.adjust_total_quantity)
        self.returns.on_condition_reported(self.catalog.flag_condition)

    # ------------------------- Collaborators ------------------------- #
    def add_resource(self, title: str, total_quantity: int = 1, **kwargs: Any) -> Resource:
        return self.catalog.add_resource(title, total_quantity, **kwargs)

    def get_resource(self, resource_id: str) -> Resource:
        return self.catalog.get_resource(resource_id)

    def add_person(self, full_name: str, person_type: str = "student", **kwargs: Any) -> Person:
        return self.people.add_person(full_name, person_type, **kwargs)

    def get_person(self, person_id: str) -> Person:
        return self.people.get_person(person_id)

    # ------------------------- Loans ------------------------- #
    def create_loan(
        self,
        person_id: str,
        resource_id: str,
        quantity: int = 1,
        observations: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Loan:
        return self.loans.create_loan(person_id, resource_id, quantity, observations, now=now)

    def return_loan(
        self,
        loan_id: str,
        return_date: Optional[datetime] = None,
        resource_condition: str = "good",
        observations: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReturnResult:
        return self.returns.process_return(loan_id, return_date, resource_condition, observations, now=now)

    def mark_as_lost(self, loan_id: str, observations: Optional[str] = None, now: Optional[datetime] = None) -> ReturnResult:
        return self.returns.mark_as_lost(loan_id, observations, now=now)

    def renew_loan(self, loan_id: str, new_due_date: Optional[datetime] = None, now: Optional[datetime] = None) -> Loan:
        return self.loans.renew_loan(loan_id, new_due_date, now=now)

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.get_loan(loan_id)

    def can_borrow(self, person_id: str, now: Optional[datetime] = None) -> EligibilityResult:
        return self.eligibility.can_borrow(person_id, now=now)

    def list_loans(self, **filters: Any) -> Dict[str, Any]:
        return self.loans.list_loans(**filters)

    def list_overdue(self, now: Optional[datetime] = None) -> List[Loan]:
        return self.loans.list_overdue(now)

    def overdue_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.loans.overdue_statistics(now)

    def loan_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.loans.loan_statistics(now)

    def reconcile_stock(self) -> List[str]:
        return self.returns.reconcile_pending()

    def describe(self, loan: Loan, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Loan as served to callers, with the derived overdue fields."""
        return overdue.annotate(loan, now or utcnow())

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
