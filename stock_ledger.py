import logging
import sqlite3
from typing import Optional

import database
from catalog import ResourceCatalog
from errors import InsufficientStockError, InvariantViolation, NotFoundError
from loan import ResourceStock

logger = logging.getLogger(__name__)


class StockLedger:
    """Sole writer of ``resources.available_quantity`` on the loan path.

    Every mutation is one conditional UPDATE, so the check and the write cannot be
    split by a concurrent request.
    """

    def __init__(self, catalog: ResourceCatalog) -> None:
        self.catalog = catalog

    def get_stock(self, resource_id: str, conn: Optional[sqlite3.Connection] = None) -> ResourceStock:
        return self.catalog.get_resource_stock(resource_id, conn=conn)

    def reserve(self, resource_id: str, quantity: int, conn: Optional[sqlite3.Connection] = None) -> ResourceStock:
        """Take ``quantity`` units off the shelf or raise ``InsufficientStockError``."""
        if quantity < 1:
            raise ValueError("quantity must be positive")
        with database.transaction(conn, self.catalog.db_file) as c:
            updated = c.execute(
                """
                UPDATE resources
                   SET available_quantity = available_quantity - ?
                 WHERE id = ? AND available_quantity >= ?
                """,
                (quantity, resource_id, quantity),
            ).rowcount
            stock = self.get_stock(resource_id, conn=c)
        if updated != 1:
            logger.info(
                f"Reservation of {quantity} unit(s) of {resource_id} refused, {stock.available_quantity} available"
            )
            raise InsufficientStockError(resource_id, quantity, stock.available_quantity)
        logger.debug(f"Reserved {quantity} unit(s) of {resource_id}, {stock.available_quantity} left")
        return stock

    def release(self, resource_id: str, quantity: int, conn: Optional[sqlite3.Connection] = None) -> ResourceStock:
        """Put ``quantity`` units back on the shelf.

        Releasing past ``total_quantity`` means stock was double counted somewhere;
        that is logged and raised, never clamped.
        """
        if quantity < 1:
            raise ValueError("quantity must be positive")
        with database.transaction(conn, self.catalog.db_file) as c:
            updated = c.execute(
                """
                UPDATE resources
                   SET available_quantity = available_quantity + ?
                 WHERE id = ? AND available_quantity + ? <= total_quantity
                """,
                (quantity, resource_id, quantity),
            ).rowcount
            try:
                stock = self.get_stock(resource_id, conn=c)
            except NotFoundError:
                logger.error(f"Release of {quantity} unit(s) for unknown resource {resource_id}")
                raise
            if updated != 1:
                logger.error(
                    f"Stock invariant violated: releasing {quantity} unit(s) of {resource_id} "
                    f"would exceed total (available={stock.available_quantity}, total={stock.total_quantity})"
                )
                raise InvariantViolation(
                    f"Release of {quantity} unit(s) would exceed the total quantity of resource {resource_id}."
                )
        logger.debug(f"Released {quantity} unit(s) of {resource_id}, {stock.available_quantity} available")
        return stock

    def release_for_loan(self, loan_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Restore the units of a closed loan exactly once.

        Returns ``False`` when the loan's units were already restored. The
        ``stock_released`` flag flips in the same transaction as the increment.
        """
        with database.transaction(conn, self.catalog.db_file) as c:
            row = c.execute(
                "SELECT resource_id, quantity, status, stock_released FROM loans WHERE id = ?", (loan_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError("loan", loan_id)
            if row["status"] == "active":
                raise InvariantViolation(f"Loan {loan_id} is still active; its stock cannot be released.")
            if row["stock_released"]:
                return False
            c.execute("UPDATE loans SET stock_released = 1 WHERE id = ? AND stock_released = 0", (loan_id,))
            self.release(row["resource_id"], int(row["quantity"]), conn=c)
        return True
