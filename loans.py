import logging
import math
import sqlite3
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import database
import overdue
from catalog import PersonDirectory, ResourceCatalog, new_id
from config import settings
from eligibility import EligibilityChecker
from errors import (
    AlreadyClosedError,
    LoanOverdueError,
    NotFoundError,
    PersonNotEligibleError,
    ResourceNotLoanableError,
    ValidationError,
)
from loan import Loan, LoanStatus, ResourceCondition, ensure_utc, format_dt, utcnow
from stock_ledger import StockLedger
from utils.validators import LoanValidator, TextValidator

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime]


def _day(value: DateLike) -> str:
    if isinstance(value, datetime):
        return ensure_utc(value).date().isoformat()
    return value.isoformat()


class LoanManager:
    """Owns the loan state machine: active -> returned | lost.

    Creation, closing and renewal each run in a single write transaction so a
    failure leaves both the loan records and the stock untouched.
    """

    STATUS_FILTERS = ("active", "returned", "lost", "overdue")
    SORT_FIELDS = ("loan_date", "due_date", "days_overdue")

    def __init__(
        self,
        catalog: ResourceCatalog,
        people: PersonDirectory,
        ledger: StockLedger,
        eligibility: EligibilityChecker,
        *,
        loan_period_days: Optional[int] = None,
        max_quantity: Optional[int] = None,
        allowed_resource_states: Optional[Iterable[str]] = None,
        default_page_size: Optional[int] = None,
        max_page_size: Optional[int] = None,
        db_file: Optional[str] = None,
    ) -> None:
        self.catalog = catalog
        self.people = people
        self.ledger = ledger
        self.eligibility = eligibility
        self.loan_period = timedelta(days=settings.loan_period_days if loan_period_days is None else loan_period_days)
        self.max_quantity = settings.max_loan_quantity if max_quantity is None else max_quantity
        self.allowed_resource_states = tuple(
            settings.allowed_resource_states if allowed_resource_states is None else allowed_resource_states
        )
        self.default_page_size = default_page_size or settings.default_page_size
        self.max_page_size = max_page_size or settings.max_page_size
        self.db_file = db_file

    # ------------------------- Lifecycle ------------------------- #
    def create_loan(
        self,
        person_id: str,
        resource_id: str,
        quantity: int = 1,
        observations: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Loan:
        LoanValidator.validate_quantity(quantity, self.max_quantity)
        now = ensure_utc(now or utcnow())

        with database.transaction(db_file=self.db_file) as conn:
            self.people.get_person(person_id, conn=conn)
            resource = self.catalog.get_resource(resource_id, conn=conn)
            if resource.state not in self.allowed_resource_states:
                raise ResourceNotLoanableError(
                    f"Resource {resource_id} cannot be loaned in state '{resource.state}'."
                )

            # authoritative check, whatever the client saw before submitting
            verdict = self.eligibility.can_borrow(person_id, now=now, conn=conn)
            if not verdict.eligible:
                logger.info(f"Loan refused for person {person_id}: {verdict.reason}")
                raise PersonNotEligibleError(person_id, verdict.reason)

            self.ledger.reserve(resource_id, quantity, conn=conn)

            loan = Loan(
                id=new_id(),
                person_id=person_id,
                resource_id=resource_id,
                quantity=quantity,
                loan_date=now,
                due_date=now + self.loan_period,
                observations=TextValidator.sanitize_text(observations) or None,
                created_at=now,
                updated_at=now,
            )
            conn.execute(
                """
                INSERT INTO loans (id, person_id, resource_id, quantity, loan_date, due_date,
                                   status, observations, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    loan.id,
                    loan.person_id,
                    loan.resource_id,
                    loan.quantity,
                    format_dt(loan.loan_date),
                    format_dt(loan.due_date),
                    loan.status.value,
                    loan.observations,
                    format_dt(loan.created_at),
                    format_dt(loan.updated_at),
                ),
            )
            self.catalog.increment_total_loans(resource_id, conn)

        logger.info(f"Loan {loan.id} created: {quantity} x {resource_id} to {person_id}, due {format_dt(loan.due_date)}")
        return loan

    def return_loan(
        self,
        loan_id: str,
        return_date: Optional[datetime] = None,
        resource_condition: Union[str, ResourceCondition] = ResourceCondition.GOOD,
        observations: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Loan:
        """Close an active loan. Stock is restored by the return processor afterwards."""
        condition = LoanValidator.parse_condition(resource_condition)
        now = ensure_utc(now or utcnow())

        with database.transaction(db_file=self.db_file) as conn:
            loan = self.get_loan(loan_id, conn=conn)
            if loan.is_closed:
                raise AlreadyClosedError(loan.id, loan.status.value)
            returned = LoanValidator.validate_return_date(return_date or now, loan.loan_date, now)
            status = LoanStatus.LOST if condition == ResourceCondition.LOST else LoanStatus.RETURNED

            updated = conn.execute(
                """
                UPDATE loans
                   SET status = ?, returned_date = ?, resource_condition = ?, observations = ?,
                       stock_released = 0, updated_at = ?
                 WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    format_dt(returned),
                    condition.value,
                    TextValidator.append_observation(loan.observations, observations),
                    format_dt(now),
                    loan.id,
                    LoanStatus.ACTIVE.value,
                ),
            ).rowcount
            if updated != 1:
                raise AlreadyClosedError(loan.id, "closed")
            loan = self.get_loan(loan_id, conn=conn)

        logger.info(f"Loan {loan.id} closed as {loan.status.value} (condition: {condition.value})")
        return loan

    def mark_as_lost(self, loan_id: str, observations: Optional[str] = None, now: Optional[datetime] = None) -> Loan:
        """The loan was never given back."""
        now = ensure_utc(now or utcnow())
        return self.return_loan(
            loan_id, return_date=now, resource_condition=ResourceCondition.LOST, observations=observations, now=now
        )

    def renew_loan(self, loan_id: str, new_due_date: Optional[datetime] = None, now: Optional[datetime] = None) -> Loan:
        now = ensure_utc(now or utcnow())
        with database.transaction(db_file=self.db_file) as conn:
            loan = self.get_loan(loan_id, conn=conn)
            if loan.is_closed:
                raise AlreadyClosedError(loan.id, loan.status.value)
            if overdue.is_overdue(loan, now):
                raise LoanOverdueError(
                    f"Loan {loan.id} is {overdue.days_overdue(loan, now)} day(s) overdue and cannot be renewed."
                )
            due = LoanValidator.validate_due_date(new_due_date or now + self.loan_period, loan.loan_date, now)
            conn.execute(
                "UPDATE loans SET due_date = ?, updated_at = ? WHERE id = ? AND status = ?",
                (format_dt(due), format_dt(now), loan.id, LoanStatus.ACTIVE.value),
            )
            loan = self.get_loan(loan_id, conn=conn)
        logger.info(f"Loan {loan.id} renewed until {format_dt(loan.due_date)}")
        return loan

    # ------------------------- Queries ------------------------- #
    def get_loan(self, loan_id: str, conn: Optional[sqlite3.Connection] = None) -> Loan:
        with database.connection(conn, self.db_file) as c:
            row = c.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFoundError("loan", loan_id)
        return Loan.from_row(row)

    def list_loans(
        self,
        *,
        status: Optional[str] = None,
        is_overdue: Optional[bool] = None,
        person_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        date_from: Optional[DateLike] = None,
        date_to: Optional[DateLike] = None,
        page: int = 1,
        limit: Optional[int] = None,
        sort_by: str = "loan_date",
        sort_order: str = "desc",
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Filtered, paginated loan listing.

        ``status="overdue"`` is shorthand for active loans past their due day.
        Sorting by ``days_overdue`` puts overdue loans apart from the rest, ordered by due date.
        """
        now = ensure_utc(now or utcnow())
        today = _day(now)
        limit = self.default_page_size if limit is None else limit
        if page < 1:
            raise ValidationError("page must be 1 or greater.")
        if limit < 1:
            raise ValidationError("limit must be 1 or greater.")
        limit = min(limit, self.max_page_size)
        if sort_by not in self.SORT_FIELDS:
            raise ValidationError(f"Invalid sort_by. Allowed: {', '.join(self.SORT_FIELDS)}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("Invalid sort_order. Allowed: asc, desc")

        where: List[str] = []
        params: List[Any] = []
        overdue_sql = "(status = 'active' AND substr(due_date, 1, 10) < ?)"

        if status is not None:
            if status not in self.STATUS_FILTERS:
                raise ValidationError(f"Invalid status. Allowed: {', '.join(self.STATUS_FILTERS)}")
            if status == "overdue":
                where.append(overdue_sql)
                params.append(today)
            else:
                where.append("status = ?")
                params.append(status)
        if is_overdue is not None:
            where.append(overdue_sql if is_overdue else f"NOT {overdue_sql}")
            params.append(today)
        if person_id:
            where.append("person_id = ?")
            params.append(person_id)
        if resource_id:
            where.append("resource_id = ?")
            params.append(resource_id)
        if date_from is not None:
            where.append("substr(loan_date, 1, 10) >= ?")
            params.append(_day(date_from))
        if date_to is not None:
            where.append("substr(loan_date, 1, 10) <= ?")
            params.append(_day(date_to))

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        order_params: List[Any] = []
        if sort_by == "days_overdue":
            # loans that are not overdue count as 0 days; among overdue ones the
            # earliest due date is the most overdue
            rank_sql = f"CASE WHEN {overdue_sql} THEN 1 ELSE 0 END"
            order_params.append(today)
            if sort_order == "desc":
                order_sql = f"{rank_sql} DESC, due_date ASC"
            else:
                order_sql = f"{rank_sql} ASC, due_date DESC"
        else:
            order_sql = f"{sort_by} {sort_order.upper()}"

        with database.connection(db_file=self.db_file) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM loans {where_sql}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM loans {where_sql} ORDER BY {order_sql}, id LIMIT ? OFFSET ?",
                [*params, *order_params, limit, (page - 1) * limit],
            ).fetchall()

        return {
            "items": [Loan.from_row(r) for r in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def list_overdue(self, now: Optional[datetime] = None) -> List[Loan]:
        """Overdue loans, most overdue first."""
        return [loan for loan, _ in self.overdue_with_person_types(now)]

    def overdue_with_person_types(self, now: Optional[datetime] = None) -> List[Tuple[Loan, Optional[str]]]:
        today = _day(ensure_utc(now or utcnow()))
        with database.connection(db_file=self.db_file) as conn:
            rows = conn.execute(
                """
                SELECT l.*, p.person_type AS person_type
                  FROM loans l
                  LEFT JOIN people p ON p.id = l.person_id
                 WHERE l.status = 'active' AND substr(l.due_date, 1, 10) < ?
                 ORDER BY l.due_date ASC, l.id
                """,
                (today,),
            ).fetchall()
        return [(Loan.from_row(r), r["person_type"]) for r in rows]

    def overdue_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = ensure_utc(now or utcnow())
        return overdue.overdue_stats(self.overdue_with_person_types(now), now)

    def pending_releases(self) -> List[Loan]:
        """Closed loans whose units have not been put back on the shelf yet."""
        with database.connection(db_file=self.db_file) as conn:
            rows = conn.execute(
                "SELECT * FROM loans WHERE status != 'active' AND stock_released = 0 ORDER BY updated_at"
            ).fetchall()
        return [Loan.from_row(r) for r in rows]

    def loan_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = ensure_utc(now or utcnow())
        today = _day(now)
        with database.connection(db_file=self.db_file) as conn:
            counts = {
                r["status"]: r["n"]
                for r in conn.execute("SELECT status, COUNT(*) AS n FROM loans GROUP BY status").fetchall()
            }
            overdue_count = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE status = 'active' AND substr(due_date, 1, 10) < ?", (today,)
            ).fetchone()[0]
            returned_rows = conn.execute(
                "SELECT loan_date, returned_date FROM loans WHERE status = 'returned'"
            ).fetchall()
            top_rows = conn.execute(
                "SELECT id, title, total_loans FROM resources WHERE total_loans > 0 "
                "ORDER BY total_loans DESC, title LIMIT 5"
            ).fetchall()

        active = counts.get("active", 0)
        returned = counts.get("returned", 0)
        lost = counts.get("lost", 0)
        total = active + returned + lost

        durations = [
            (ensure_utc(datetime.fromisoformat(r["returned_date"])) - ensure_utc(datetime.fromisoformat(r["loan_date"])))
            / timedelta(days=1)
            for r in returned_rows
        ]
        average_duration = round(sum(durations) / len(durations), 2) if durations else 0.0

        # display statuses: overdue loans are counted apart from the other active ones
        distribution = [
            ("active", active - overdue_count),
            ("overdue", overdue_count),
            ("returned", returned),
            ("lost", lost),
        ]
        return {
            "total_loans": total,
            "active_loans": active,
            "overdue_loans": overdue_count,
            "returned_loans": returned,
            "lost_loans": lost,
            "average_loan_duration_days": average_duration,
            "status_distribution": [
                {
                    "status": name,
                    "count": count,
                    "percentage": round(count * 100 / total, 1) if total else 0.0,
                }
                for name, count in distribution
            ],
            "most_borrowed_resources": [
                {"resource_id": r["id"], "title": r["title"], "total_loans": r["total_loans"]} for r in top_rows
            ],
        }
