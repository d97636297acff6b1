"""Collaborators consumed by the loan core: the resource catalog and the person directory.

Only the subset of cataloguing and people management the loan lifecycle needs lives
here: stock figures, resource state, and borrower eligibility flags.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import database
from errors import InvariantViolation, NotFoundError, ValidationError
from loan import LoanStatus, ResourceCondition, ResourceStock, format_dt, utcnow

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Resource:
    id: str
    title: str
    total_quantity: int
    available_quantity: int
    state: str = ResourceCondition.GOOD.value
    total_loans: int = 0
    needs_review: bool = False
    last_reported_condition: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.available_quantity > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "total_quantity": self.total_quantity,
            "available_quantity": self.available_quantity,
            "available": self.available,
            "state": self.state,
            "total_loans": self.total_loans,
            "needs_review": self.needs_review,
            "last_reported_condition": self.last_reported_condition,
        }

    @staticmethod
    def from_row(row: Any) -> "Resource":
        data = dict(row)
        return Resource(
            id=data["id"],
            title=data["title"],
            total_quantity=int(data["total_quantity"]),
            available_quantity=int(data["available_quantity"]),
            state=data["state"],
            total_loans=int(data["total_loans"]),
            needs_review=bool(data["needs_review"]),
            last_reported_condition=data.get("last_reported_condition"),
        )


@dataclass
class Person:
    id: str
    full_name: str
    person_type: str = "student"
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "person_type": self.person_type,
            "active": self.active,
        }

    @staticmethod
    def from_row(row: Any) -> "Person":
        data = dict(row)
        return Person(
            id=data["id"],
            full_name=data["full_name"],
            person_type=data["person_type"],
            active=bool(data["active"]),
        )


class ResourceCatalog:
    """Resource records and their stock figures."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def add_resource(
        self,
        title: str,
        total_quantity: int = 1,
        *,
        available_quantity: Optional[int] = None,
        state: str = ResourceCondition.GOOD.value,
        resource_id: Optional[str] = None,
    ) -> Resource:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title cannot be empty.")
        if total_quantity < 0:
            raise ValidationError("Total quantity cannot be negative.")
        if available_quantity is None:
            available_quantity = total_quantity
        if not 0 <= available_quantity <= total_quantity:
            raise ValidationError("Available quantity must be between 0 and the total quantity.")
        if state not in {c.value for c in ResourceCondition}:
            raise ValidationError(f"Unknown resource state: {state}")

        resource = Resource(
            id=resource_id or new_id(),
            title=title,
            total_quantity=total_quantity,
            available_quantity=available_quantity,
            state=state,
        )
        with database.transaction(db_file=self.db_file) as conn:
            try:
                conn.execute(
                    "INSERT INTO resources (id, title, total_quantity, available_quantity, state) VALUES (?, ?, ?, ?, ?)",
                    (resource.id, resource.title, resource.total_quantity, resource.available_quantity, resource.state),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Resource {resource.id} already exists.") from e
        return resource

    def get_resource(self, resource_id: str, conn: Optional[sqlite3.Connection] = None) -> Resource:
        with database.connection(conn, self.db_file) as c:
            row = c.execute("SELECT * FROM resources WHERE id = ?", (resource_id,)).fetchone()
        if row is None:
            raise NotFoundError("resource", resource_id)
        return Resource.from_row(row)

    def get_resource_stock(self, resource_id: str, conn: Optional[sqlite3.Connection] = None) -> ResourceStock:
        with database.connection(conn, self.db_file) as c:
            row = c.execute(
                "SELECT total_quantity, available_quantity FROM resources WHERE id = ?", (resource_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError("resource", resource_id)
        return ResourceStock(resource_id, int(row["total_quantity"]), int(row["available_quantity"]))

    def increment_total_loans(self, resource_id: str, conn: sqlite3.Connection) -> None:
        conn.execute("UPDATE resources SET total_loans = total_loans + 1 WHERE id = ?", (resource_id,))

    def adjust_total_quantity(self, resource_id: str, delta: int, conn: Optional[sqlite3.Connection] = None) -> None:
        """Add ``delta`` units to the resource, on the shelf and in the total.

        A negative delta withdraws units that no longer physically exist, so they
        leave both counts together and the availability bound keeps holding.
        """
        with database.transaction(conn, self.db_file) as c:
            cursor = c.execute(
                """
                UPDATE resources
                   SET total_quantity = total_quantity + ?,
                       available_quantity = available_quantity + ?
                 WHERE id = ?
                   AND total_quantity + ? >= 0
                   AND available_quantity + ? >= 0
                """,
                (delta, delta, resource_id, delta, delta),
            )
            if cursor.rowcount == 1:
                logger.info(f"Total quantity of resource {resource_id} adjusted by {delta}")
                return
            row = c.execute(
                "SELECT total_quantity, available_quantity FROM resources WHERE id = ?", (resource_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError("resource", resource_id)
        logger.error(
            f"Refusing to adjust resource {resource_id} by {delta}: "
            f"total={row['total_quantity']} available={row['available_quantity']}"
        )
        raise InvariantViolation(f"Adjusting resource {resource_id} by {delta} would make its stock negative.")

    def flag_condition(self, resource_id: str, condition: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Record the condition one copy came back in and mark the resource for review.

        ``state`` is left to the librarian reviewing the record; the other copies
        stay loanable meanwhile.
        """
        with database.transaction(conn, self.db_file) as c:
            updated = c.execute(
                "UPDATE resources SET last_reported_condition = ?, needs_review = 1 WHERE id = ?",
                (condition, resource_id),
            ).rowcount
        if updated == 0:
            raise NotFoundError("resource", resource_id)
        logger.info(f"Resource {resource_id} flagged for review (condition: {condition})")


class PersonDirectory:
    """People and the borrowing figures eligibility depends on."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def add_person(
        self,
        full_name: str,
        person_type: str = "student",
        *,
        active: bool = True,
        person_id: Optional[str] = None,
    ) -> Person:
        full_name = (full_name or "").strip()
        if not full_name:
            raise ValidationError("Full name cannot be empty.")
        person = Person(
            id=person_id or new_id(),
            full_name=full_name,
            person_type=(person_type or "student").strip().lower(),
            active=active,
        )
        with database.transaction(db_file=self.db_file) as conn:
            try:
                conn.execute(
                    "INSERT INTO people (id, full_name, person_type, active) VALUES (?, ?, ?, ?)",
                    (person.id, person.full_name, person.person_type, int(person.active)),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Person {person.id} already exists.") from e
        return person

    def set_active(self, person_id: str, active: bool) -> None:
        with database.transaction(db_file=self.db_file) as conn:
            updated = conn.execute("UPDATE people SET active = ? WHERE id = ?", (int(active), person_id)).rowcount
        if updated == 0:
            raise NotFoundError("person", person_id)

    def get_person(self, person_id: str, conn: Optional[sqlite3.Connection] = None) -> Person:
        with database.connection(conn, self.db_file) as c:
            row = c.execute("SELECT * FROM people WHERE id = ?", (person_id,)).fetchone()
        if row is None:
            raise NotFoundError("person", person_id)
        return Person.from_row(row)

    def count_active_loans(self, person_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        with database.connection(conn, self.db_file) as c:
            row = c.execute(
                "SELECT COUNT(*) FROM loans WHERE person_id = ? AND status = ?",
                (person_id, LoanStatus.ACTIVE.value),
            ).fetchone()
        return int(row[0])

    def count_overdue_loans(
        self, person_id: str, now: Optional[datetime] = None, conn: Optional[sqlite3.Connection] = None
    ) -> int:
        # due day strictly before today, same calendar rule as overdue.is_overdue
        today = format_dt(now or utcnow())[:10]
        with database.connection(conn, self.db_file) as c:
            row = c.execute(
                "SELECT COUNT(*) FROM loans WHERE person_id = ? AND status = ? AND substr(due_date, 1, 10) < ?",
                (person_id, LoanStatus.ACTIVE.value, today),
            ).fetchone()
        return int(row[0])
