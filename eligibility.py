import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from catalog import Person, PersonDirectory
from config import settings

logger = logging.getLogger(__name__)


@dataclass
class EligibilityResult:
    eligible: bool
    reason: Optional[str] = None
    active_count: int = 0
    overdue_count: int = 0
    max_loans_allowed: int = 0
    person_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "active_count": self.active_count,
            "overdue_count": self.overdue_count,
            "max_loans_allowed": self.max_loans_allowed,
            "restrictions": {
                "is_person_active": self.person_active,
                "has_reached_limit": self.active_count >= self.max_loans_allowed,
                "has_overdue_loans": self.overdue_count > 0,
            },
        }


class EligibilityChecker:
    """Decides whether a person may take a new loan.

    Checks run in order and the first failure supplies the reason:
    account active, active loans below the ceiling, no overdue loans.
    """

    def __init__(
        self,
        people: PersonDirectory,
        max_active_loans: Optional[int] = None,
        person_type_limits: Optional[Dict[str, int]] = None,
        block_overdue: Optional[bool] = None,
    ) -> None:
        self.people = people
        self.max_active_loans = settings.max_active_loans if max_active_loans is None else max_active_loans
        self.person_type_limits = dict(
            settings.person_type_loan_limits if person_type_limits is None else person_type_limits
        )
        self.block_overdue = settings.block_borrowers_with_overdue if block_overdue is None else block_overdue

    def ceiling_for(self, person: Person) -> int:
        return self.person_type_limits.get(person.person_type, self.max_active_loans)

    def can_borrow(
        self, person_id: str, now: Optional[datetime] = None, conn: Optional[sqlite3.Connection] = None
    ) -> EligibilityResult:
        """Raises ``NotFoundError`` for an unknown person."""
        person = self.people.get_person(person_id, conn=conn)
        ceiling = self.ceiling_for(person)

        if not person.active:
            return EligibilityResult(False, "Person account is inactive", max_loans_allowed=ceiling, person_active=False)

        active_count = self.people.count_active_loans(person_id, conn=conn)
        if active_count >= ceiling:
            return EligibilityResult(
                False,
                f"Active loan limit reached ({ceiling})",
                active_count=active_count,
                max_loans_allowed=ceiling,
            )

        overdue_count = self.people.count_overdue_loans(person_id, now=now, conn=conn)
        if self.block_overdue and overdue_count > 0:
            return EligibilityResult(
                False,
                f"Person has {overdue_count} overdue loan(s)",
                active_count=active_count,
                overdue_count=overdue_count,
                max_loans_allowed=ceiling,
            )

        return EligibilityResult(
            True, active_count=active_count, overdue_count=overdue_count, max_loans_allowed=ceiling
        )
