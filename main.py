import logging
import subprocess
import sys
from functools import wraps
from typing import Optional

import typer

import database
from book import Book
from circulation import BorrowingManager
from config import settings
from errors import Conflict, IntegrityFault, NotFound, StoreUnavailable
from library import Library
from ui_helpers import print_list_result, print_loans_result, print_stats_result, set_output_mode

logging.basicConfig(level=settings.log_level)

APP_NAME = "Library CLI"


class ServiceRegistry:
    """Shared Library / BorrowingManager instances for the current database file."""

    _library: Optional[Library] = None
    _manager: Optional[BorrowingManager] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def _refresh(cls) -> None:
        current_db = database.DATABASE_FILE
        # Rebuild when the database file changes (e.g. a per-test database)
        if cls._library is None or current_db != cls._db_file_snapshot:
            cls._library = Library(current_db)
            cls._manager = BorrowingManager(current_db)
            cls._db_file_snapshot = current_db

    @classmethod
    def library(cls) -> Library:
        cls._refresh()
        return cls._library

    @classmethod
    def manager(cls) -> BorrowingManager:
        cls._refresh()
        return cls._manager


def handle_errors(func):
    """Turn domain errors into a one-line message and exit code 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except NotFound as e:
            print(f"Not found: {e}")
        except Conflict as e:
            print(f"Conflict: {e.detail}")
        except StoreUnavailable as e:
            print(f"Database unavailable, try again: {e}")
        except IntegrityFault as e:
            print(f"Integrity error: {e}")
        except ValueError as e:
            print(f"Error: {e}")
        raise typer.Exit(code=1)
    return wrapper


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


# --- Catalog ---
@app.command("add-book")
@handle_errors
def cli_add_book(
    isbn: str,
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of physical copies"),
    genre: Optional[str] = typer.Option(None, "--genre"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    year: Optional[int] = typer.Option(None, "--year", help="Publication year"),
):
    """Add a book to the catalog."""
    book = ServiceRegistry.library().add_book(
        Book(title=title, author=author, isbn=isbn, total_copies=copies,
             genre=genre, publisher=publisher, publication_year=year)
    )
    print(f"Successfully added: {book.title} by {book.author} (id {book.id}, {book.total_copies} copies)")


@app.command("list")
def cli_list(
    page: int = typer.Option(1, "--page", "-p", min=1),
    page_size: int = typer.Option(settings.default_page_size, "--page-size", min=1),
):
    """List books sorted by title."""
    result = ServiceRegistry.library().list_books(page=page, page_size=page_size)
    print_list_result(result.items)


@app.command("search")
@handle_errors
def cli_search(
    query: Optional[str] = typer.Argument(None, help="Free text matched against title, author, ISBN, genre, publisher and description"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Filter by title"),
    author: Optional[str] = typer.Option(None, "--author", "-a", help="Filter by author"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g", help="Filter by genre"),
    year_from: Optional[int] = typer.Option(None, "--year-from", help="Published in or after this year"),
    year_to: Optional[int] = typer.Option(None, "--year-to", help="Published in or before this year"),
    available: bool = typer.Option(False, "--available", help="Only books with a copy on the shelf"),
):
    """Search the catalog."""
    result = ServiceRegistry.library().search_books(
        query=query, title=title, author=author, genre=genre,
        year_from=year_from, year_to=year_to, available_only=available,
    )
    print_list_result(result.items)


@app.command("find")
def cli_find(book_id: int):
    """Show a book's details."""
    book = ServiceRegistry.library().find_book(book_id)
    if book:
        print("Book Found")
        print(f"Title: {book.title}")
        print(f"Author: {book.author}")
        print(f"ISBN: {book.isbn}")
        print(f"Copies: {book.available_copies}/{book.total_copies} available")
    else:
        print(f"Book {book_id} not found.")


@app.command("set-copies")
@handle_errors
def cli_set_copies(book_id: int, total: int):
    """Change the number of physical copies of a book."""
    book = ServiceRegistry.library().set_total_copies(book_id, total)
    print(f"Book {book.id} now has {book.available_copies}/{book.total_copies} copies available.")


@app.command("remove")
@handle_errors
def cli_remove(book_id: int):
    """Remove a book from the catalog."""
    if ServiceRegistry.library().remove_book(book_id):
        print(f"Book {book_id} has been removed.")
    else:
        print(f"Book {book_id} not found.")


# --- Members ---
@app.command("add-user")
@handle_errors
def cli_add_user(username: str, email: str, role: str = typer.Option("MEMBER", "--role", "-r")):
    """Register a library member."""
    user = ServiceRegistry.library().register_user(username, email, role)
    print(f"Registered user {user.username} with id {user.id}")


# --- Circulation ---
@app.command("borrow")
@handle_errors
def cli_borrow(user_id: int, book_id: int):
    """Lend a copy of a book to a member for 14 days."""
    loan = ServiceRegistry.manager().borrow(user_id, book_id)
    print(f"Loan {loan.id} created: due {loan.due_at.strftime('%Y-%m-%d')}")


@app.command("return")
@handle_errors
def cli_return(loan_id: int):
    """Check a borrowed copy back in."""
    loan = ServiceRegistry.manager().return_loan(loan_id)
    print(f"Loan {loan.id} returned.")


@app.command("loans")
def cli_loans(
    user_id: int,
    page: int = typer.Option(1, "--page", "-p", min=1),
    page_size: int = typer.Option(settings.default_page_size, "--page-size", min=1),
    open_only: bool = typer.Option(False, "--open", help="Only loans not yet returned"),
):
    """Show a member's loans, newest first."""
    manager = ServiceRegistry.manager()
    if open_only:
        print_loans_result(manager.open_loans_for_user(user_id))
        return
    result = manager.loans_for_user(user_id, page=page, page_size=page_size)
    print_loans_result(result.items)
    if result.total_pages > 1:
        print(f"Page {result.page}/{result.total_pages} ({result.total} loans)")


@app.command("book-loans")
def cli_book_loans(book_id: int):
    """Show every loan of a book."""
    print_loans_result(ServiceRegistry.manager().loans_for_book(book_id))


@app.command("sweep")
@handle_errors
def cli_sweep():
    """Mark open loans past their due date as overdue."""
    count = ServiceRegistry.manager().sweep_overdue()
    print(f"{count} loan(s) marked overdue.")


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(ServiceRegistry.library().get_statistics())


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        print("Server stopped.")


if __name__ == "__main__":
    app()
