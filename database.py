import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings

# Make sure .env is loaded before the environment is read below, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)


def resolve_database_file() -> str:
    """Database file in priority order:
    1) LIBRARY_DB_FILE (explicit override, used by tests)
    2) LIBRARY_DATA_FILE / settings.data_file
    """
    return os.environ.get("LIBRARY_DB_FILE") or settings.data_file


DATABASE_FILE = resolve_database_file()


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to ``db_file``, or to ``DATABASE_FILE`` when not given.

    Connections run in autocommit mode; writes go through ``transaction()`` which
    issues ``BEGIN IMMEDIATE`` so concurrent writers are serialized by SQLite.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    # WAL lets readers proceed while a writer holds the lock
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def transaction(
    conn: Optional[sqlite3.Connection] = None, db_file: Optional[str] = None
) -> Iterator[sqlite3.Connection]:
    """Run a block inside a single write transaction.

    When ``conn`` is given the block joins the caller's transaction and nothing is
    committed here. Otherwise a new connection is opened, the write lock is taken
    up front and the transaction is committed on success or rolled back on any error.
    """
    if conn is not None:
        yield conn
        return

    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def connection(
    conn: Optional[sqlite3.Connection] = None, db_file: Optional[str] = None
) -> Iterator[sqlite3.Connection]:
    """Read-only helper: reuse ``conn`` if given, otherwise open and close one."""
    if conn is not None:
        yield conn
        return
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS people (
                id TEXT PRIMARY KEY,
                full_name TEXT NOT NULL,
                person_type TEXT NOT NULL DEFAULT 'student',
                active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS resources (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                total_quantity INTEGER NOT NULL DEFAULT 1 CHECK(total_quantity >= 0),
                available_quantity INTEGER NOT NULL DEFAULT 1
                    CHECK(available_quantity >= 0 AND available_quantity <= total_quantity),
                state TEXT NOT NULL DEFAULT 'good',
                total_loans INTEGER NOT NULL DEFAULT 0,
                needs_review INTEGER NOT NULL DEFAULT 0,
                last_reported_condition TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # status never holds 'overdue', it is derived on read
        conn.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id TEXT PRIMARY KEY,
                person_id TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                quantity INTEGER NOT NULL CHECK(quantity >= 1),
                loan_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                returned_date TEXT,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK(status IN ('active', 'returned', 'lost')),
                observations TEXT,
                resource_condition TEXT,
                stock_released INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK((returned_date IS NULL) = (status = 'active')),
                CHECK(due_date >= loan_date),
                FOREIGN KEY (person_id) REFERENCES people(id),
                FOREIGN KEY (resource_id) REFERENCES resources(id)
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_person_status ON loans(person_id, status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_resource ON loans(resource_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_loan_date ON loans(loan_date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_people_active ON people(active)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    logger.debug(f"Initializing database at {db_file or DATABASE_FILE}")
    create_tables(db_file)
