import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_loan_list(loans: List[Dict[str, Any]], empty_message: str = "No loans found.") -> None:
    """Print annotated loans in the current output mode.
    - plain: 'ID - quantity x resource to person (status, due date)' lines
    - json: JSON array
    - rich: Rich table
    """
    mode = get_output_mode()

    if not loans:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps(loans, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Person")
        table.add_column("Resource")
        table.add_column("Qty", justify="right")
        table.add_column("Due")
        table.add_column("Status")
        table.add_column("Days overdue", justify="right")
        for loan in loans:
            status = loan["display_status"]
            style = "red" if status == "overdue" else "white"
            table.add_row(
                loan["id"],
                loan["person_id"],
                loan["resource_id"],
                str(loan["quantity"]),
                loan["due_date"][:10],
                f"[{style}]{status}[/]",
                str(loan["days_overdue"]),
            )
        _console.print(table)
    else:
        for loan in loans:
            line = (
                f"{loan['id']} - {loan['quantity']} x {loan['resource_id']} to {loan['person_id']} "
                f"({loan['display_status']}, due {loan['due_date'][:10]})"
            )
            if loan["is_overdue"]:
                line += f" {loan['days_overdue']} day(s) overdue"
            print(line)


def print_overdue_stats(stats: Dict[str, Any]) -> None:
    """Print overdue statistics in the current output mode."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
        return

    buckets = stats.get("by_days_overdue", {})
    people = stats.get("by_person_type", {})
    if mode == "rich":
        lines = [
            f"[bold]Overdue loans:[/] {stats.get('total_overdue', 0)}",
            f"[bold]Average days overdue:[/] {stats.get('average_days_overdue', 0)}",
        ]
        lines += [f"  {name} days: {count}" for name, count in buckets.items()]
        lines += [f"  {name}: {count}" for name, count in people.items()]
        _console.print(Panel.fit("\n".join(lines), title="Overdue", border_style="red"))
    else:
        print(f"Overdue loans: {stats.get('total_overdue', 0)}")
        print(f"Average days overdue: {stats.get('average_days_overdue', 0)}")
        for name, count in buckets.items():
            print(f"{name} days: {count}")
        for name, count in people.items():
            print(f"{name}: {count}")


def print_loan_stats(stats: Dict[str, Any]) -> None:
    """Print loan statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Loan statistics", header_style="bold cyan")
        table.add_column("Status")
        table.add_column("Count", justify="right")
        table.add_column("%", justify="right")
        for row in stats["status_distribution"]:
            table.add_row(row["status"], str(row["count"]), f"{row['percentage']}")
        _console.print(table)
        _console.print(f"[bold]Average loan duration:[/] {stats['average_loan_duration_days']} day(s)")
    else:
        print(f"Total Loans: {stats['total_loans']}")
        print(f"Active Loans: {stats['active_loans']}")
        print(f"Overdue Loans: {stats['overdue_loans']}")
        print(f"Returned Loans: {stats['returned_loans']}")
        print(f"Lost Loans: {stats['lost_loans']}")
        print(f"Average Loan Duration: {stats['average_loan_duration_days']} day(s)")
