import os
import json
from typing import Any, Dict, List
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_list_result(books: List[Any]) -> None:
    """Print books according to the output mode.
    - plain: '<id> - Title by Author [available/total]' lines, or 'No books in library.'
    - json: JSON array
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.isbn, b.title, b.author, f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.available_copies}/{b.total_copies}]")


def print_loans_result(loans: List[Any], empty_message: str = "No loans found.") -> None:
    mode = get_output_mode()

    if not loans:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([l.to_dict() for l in loans], ensure_ascii=False))
    elif mode == "rich":
        styles = {"BORROWED": "green", "OVERDUE": "bold red", "RETURNED": "dim"}
        table = Table(title="📖 Loans", header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("User", justify="right")
        table.add_column("Book", justify="right")
        table.add_column("Borrowed")
        table.add_column("Due")
        table.add_column("Status")
        for l in loans:
            status = l.status.value
            table.add_row(
                str(l.id), str(l.user_id), str(l.book_id),
                l.borrowed_at.strftime("%Y-%m-%d %H:%M"), l.due_at.strftime("%Y-%m-%d"),
                f"[{styles.get(status, 'white')}]{status}[/]",
            )
        _console.print(table)
    else:
        for l in loans:
            print(f"Loan {l.id}: user {l.user_id}, book {l.book_id}, "
                  f"due {l.due_at.strftime('%Y-%m-%d')} - {l.status.value}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics according to the output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "unique_authors": "Unique Authors",
        "total_copies": "Total Copies",
        "available_copies": "Available Copies",
        "open_loans": "Open Loans",
        "overdue_loans": "Overdue Loans",
        "members": "Members",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")
