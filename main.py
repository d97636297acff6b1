import logging
import subprocess
import sys
import webbrowser
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from errors import LoanError
from library import Library
from loan import utcnow
from utils.ui_helpers import print_loan_list, print_loan_stats, print_overdue_stats, set_output_mode

APP_NAME = "Library Loans CLI"

console = Console()
logger = logging.getLogger(__name__)


class LibraryManager:
    """Lazily built Library, rebuilt when the database file changes (e.g. per test)."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        db_file = database.resolve_database_file()
        if cls._instance is None or db_file != cls._db_file_snapshot:
            cls._instance = Library(db_file=db_file)
            cls._db_file_snapshot = db_file
        return cls._instance


def _fail(error: Exception) -> None:
    print(f"Error: {error}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Global CLI options (output mode, logging)."""
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    lib = LibraryManager.get_instance()
    print(f"Database ready at {lib.db_file}")


@app.command("overdue")
def cli_overdue():
    """List overdue loans, most overdue first."""
    lib = LibraryManager.get_instance()
    now = utcnow()
    print_loan_list([lib.describe(loan, now) for loan in lib.list_overdue(now)], "No overdue loans.")


@app.command("overdue-stats")
def cli_overdue_stats():
    """Show overdue counts by days overdue and by person type."""
    print_overdue_stats(LibraryManager.get_instance().overdue_statistics())


@app.command("stats")
def cli_stats():
    """Show loan statistics."""
    print_loan_stats(LibraryManager.get_instance().loan_statistics())


@app.command("can-borrow")
def cli_can_borrow(person_id: str):
    """Check whether a person may take a new loan."""
    lib = LibraryManager.get_instance()
    try:
        result = lib.can_borrow(person_id)
    except LoanError as e:
        _fail(e)
    if result.eligible:
        print(f"Person {person_id} can borrow ({result.active_count}/{result.max_loans_allowed} active loans).")
    else:
        print(f"Person {person_id} cannot borrow: {result.reason}")


@app.command("return")
def cli_return(
    loan_id: str,
    condition: str = typer.Option("good", "--condition", "-c", help="good | deteriorated | damaged | lost"),
    observations: Optional[str] = typer.Option(None, "--observations", "-m"),
    return_date: Optional[datetime] = typer.Option(None, "--date", help="Return date (defaults to now)"),
):
    """Process the return of a loan."""
    lib = LibraryManager.get_instance()
    try:
        result = lib.return_loan(loan_id, return_date, condition, observations)
    except LoanError as e:
        _fail(e)
    print(f"Loan {loan_id} closed as {result.loan.status.value}. {result.message}")


@app.command("lost")
def cli_lost(loan_id: str, observations: Optional[str] = typer.Option(None, "--observations", "-m")):
    """Mark a loan as lost."""
    lib = LibraryManager.get_instance()
    try:
        result = lib.mark_as_lost(loan_id, observations)
    except LoanError as e:
        _fail(e)
    print(f"Loan {loan_id} marked as lost. {result.message}")


@app.command("renew")
def cli_renew(
    loan_id: str,
    due_date: Optional[datetime] = typer.Option(None, "--due-date", help="New due date (defaults to a full loan period)"),
):
    """Renew an active loan that is not overdue."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.renew_loan(loan_id, due_date)
    except LoanError as e:
        _fail(e)
    print(f"Loan {loan_id} renewed until {loan.due_date.date().isoformat()}.")


@app.command("reconcile")
def cli_reconcile():
    """Finish stock releases left pending by failed returns."""
    settled = LibraryManager.get_instance().reconcile_stock()
    if settled:
        print(f"Stock restored for {len(settled)} loan(s).")
    else:
        print("No pending stock releases.")


@app.command("serve")
def cli_serve(open_browser: bool = typer.Option(True, "--open/--no-open", help="Open the API docs in a browser")):
    """Start the API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on http://{host}:{port}/")
    if open_browser:
        try:
            webbrowser.open(url)
        except webbrowser.Error as e:
            logger.warning(f"Could not open a browser: {e}")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if settings.debug:
        args.append("--reload")
    subprocess.run(args)


if __name__ == "__main__":
    app()
