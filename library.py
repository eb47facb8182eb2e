import logging
import sqlite3
from typing import Any, Dict, List, Optional

import database
from book import Book, User
from config import settings
from errors import Conflict, ConflictReason, NotFound, StaleWriteError, StoreUnavailable
from loan import LoanStatus, Page
from stores import unit_of_work
from validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("title", "author", "description", "genre", "publisher", "publication_year")
_QUERY_FIELDS = ("title", "author", "isbn", "genre", "publisher", "description")


def _like_pattern(value: str) -> str:
    """Case-folded substring pattern with LIKE wildcards taken literally."""
    escaped = value.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Library:
    """Manages the book catalog and the member list."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        # Make sure the schema is current on every start
        database.initialize_database(db_file)

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Add a new title.  Every copy starts on the shelf.  Duplicate ISBNs are rejected."""
        book.isbn = ISBNValidator.normalize_isbn(book.isbn)
        if not ISBNValidator.is_valid_isbn(book.isbn):
            raise ValueError(f"Invalid ISBN: {book.isbn or '(empty)'}")
        if not TextValidator.validate_title(book.title):
            raise ValueError("Title cannot be empty.")
        if not TextValidator.validate_author(book.author):
            raise ValueError("Author cannot be empty or numeric.")
        if book.total_copies < 0:
            raise ValueError("Total copies cannot be negative.")
        book.available_copies = book.total_copies
        book.description = TextValidator.sanitize_text(book.description) or None

        try:
            with unit_of_work(self.db_file) as uow:
                stored = uow.books.add(book)
        except sqlite3.IntegrityError as e:
            raise Conflict(ConflictReason.DUPLICATE_ISBN,
                           f"Book with ISBN {book.isbn} already exists.") from e
        logger.info(f"Catalogued book {stored.id}: {stored}")
        return stored

    def find_book(self, book_id: int) -> Optional[Book]:
        try:
            return self.get_book(book_id)
        except NotFound:
            return None

    def get_book(self, book_id: int) -> Book:
        with unit_of_work(self.db_file, write=False) as uow:
            return uow.books.get(book_id)

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        with unit_of_work(self.db_file, write=False) as uow:
            row = uow.conn.execute("SELECT id FROM books WHERE isbn = ?", (norm,)).fetchone()
            return uow.books.get(row["id"]) if row else None

    def list_books(self, page: int = 1, page_size: Optional[int] = None) -> Page[Book]:
        """All books sorted by title."""
        return self.search_books(page=page, page_size=page_size)

    def search_books(self, title: Optional[str] = None, author: Optional[str] = None,
                     genre: Optional[str] = None, publisher: Optional[str] = None,
                     publication_year: Optional[int] = None, available_only: bool = False,
                     page: int = 1, page_size: Optional[int] = None, query: Optional[str] = None,
                     year_from: Optional[int] = None, year_to: Optional[int] = None) -> Page[Book]:
        """Catalog search.

        ``query`` is a case-insensitive substring matched against title, author,
        isbn, genre, publisher or description.  Field filters are substrings too,
        ``publication_year`` is exact and ``year_from``/``year_to`` bound the year
        inclusively.  All given filters must match.
        """
        if year_from is not None and year_to is not None and year_from > year_to:
            raise ValueError("year_from cannot be after year_to.")
        clauses: List[str] = []
        params: List[Any] = []
        if query and query.strip():
            pattern = _like_pattern(query)
            clauses.append(
                "(" + " OR ".join(f"LOWER(COALESCE({c}, '')) LIKE ? ESCAPE '\\'" for c in _QUERY_FIELDS) + ")"
            )
            params.extend([pattern] * len(_QUERY_FIELDS))
        for column, value in (("title", title), ("author", author), ("genre", genre), ("publisher", publisher)):
            if value and value.strip():
                clauses.append(f"LOWER({column}) LIKE ? ESCAPE '\\'")
                params.append(_like_pattern(value))
        if publication_year is not None:
            clauses.append("publication_year = ?")
            params.append(publication_year)
        if year_from is not None:
            clauses.append("publication_year >= ?")
            params.append(year_from)
        if year_to is not None:
            clauses.append("publication_year <= ?")
            params.append(year_to)
        if available_only:
            clauses.append("available_copies > 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        page = max(page, 1)
        page_size = settings.default_page_size if page_size is None else page_size
        page_size = min(max(page_size, 1), settings.max_page_size)

        with unit_of_work(self.db_file, write=False) as uow:
            total = uow.conn.execute(f"SELECT COUNT(*) FROM books {where}", params).fetchone()[0]
            rows = uow.conn.execute(
                f"""
                SELECT id, isbn, title, author, description, genre, publisher, publication_year,
                       total_copies, available_copies, version, created_at
                FROM books {where}
                ORDER BY title, id
                LIMIT ? OFFSET ?
                """,
                params + [page_size, (page - 1) * page_size],
            ).fetchall()
        return Page(items=[Book.from_dict(dict(row)) for row in rows], total=total, page=page, page_size=page_size)

    def update_book(self, book_id: int, **fields: Any) -> Book:
        """Update descriptive fields.  Copy counts go through ``set_total_copies``."""
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        update_fields = {k: v for k, v in fields.items() if v is not None}
        for key in ("title", "author"):
            if key in update_fields:
                update_fields[key] = str(update_fields[key]).strip()
                if not update_fields[key]:
                    raise ValueError(f"{key.capitalize()} cannot be empty.")
        if not update_fields:
            raise ValueError("Nothing to update.")

        def apply(book: Book) -> None:
            for key, value in update_fields.items():
                setattr(book, key, value)

        return self._modify_book(book_id, apply)

    def set_total_copies(self, book_id: int, total_copies: int) -> Book:
        """Change how many physical copies exist.

        The shelf count moves by the same delta, so copies on loan are untouched.
        Refused with Conflict(COPIES_ON_LOAN) when more copies are out than the new
        total allows.
        """
        if total_copies < 0:
            raise ValueError("Total copies cannot be negative.")

        def apply(book: Book) -> None:
            if total_copies < book.copies_on_loan:
                raise Conflict(
                    ConflictReason.COPIES_ON_LOAN,
                    f"{book.copies_on_loan} copies of book {book_id} are on loan; cannot reduce to {total_copies}.",
                )
            book.available_copies += total_copies - book.total_copies
            book.total_copies = total_copies

        return self._modify_book(book_id, apply)

    def _modify_book(self, book_id: int, apply) -> Book:
        for attempt in range(max(1, settings.borrow_max_retries)):
            try:
                with unit_of_work(self.db_file) as uow:
                    book = uow.books.get(book_id)
                    apply(book)
                    return uow.books.save(book)
            except StaleWriteError as exc:
                logger.warning(f"Book {book_id} update retry {attempt + 1}: {exc}")
        raise StoreUnavailable(f"Book {book_id} is being modified concurrently; try again.")

    def remove_book(self, book_id: int) -> bool:
        """Delete a title.  Returns False if it does not exist; refuses while copies are on loan."""
        with unit_of_work(self.db_file) as uow:
            if not uow.books.exists(book_id):
                return False
            if uow.loans.count_open_for_book(book_id) > 0:
                raise Conflict(ConflictReason.BOOK_ON_LOAN)
            return uow.books.delete(book_id)

    # ------------------------- Members ------------------------- #
    def register_user(self, username: str, email: str, role: str = "MEMBER") -> User:
        user = User(username=username, email=email, role=role)
        if not user.username:
            raise ValueError("Username cannot be empty.")
        if "@" not in user.email:
            raise ValueError("Invalid email address.")
        if user.role not in User.ROLES:
            raise ValueError(f"Role must be one of {', '.join(User.ROLES)}.")
        try:
            with unit_of_work(self.db_file) as uow:
                stored = uow.users.add(user)
        except sqlite3.IntegrityError as e:
            raise Conflict(ConflictReason.DUPLICATE_USER) from e
        logger.info(f"Registered user {stored.id} ({stored.username})")
        return stored

    def find_user(self, user_id: int) -> Optional[User]:
        with unit_of_work(self.db_file, write=False) as uow:
            try:
                return uow.users.get(user_id)
            except NotFound:
                return None

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        with unit_of_work(self.db_file, write=False) as uow:
            row = uow.conn.execute(
                """
                SELECT COUNT(*) AS titles,
                       COALESCE(SUM(total_copies), 0) AS total_copies,
                       COALESCE(SUM(available_copies), 0) AS available_copies,
                       COUNT(DISTINCT author) AS unique_authors
                FROM books
                """
            ).fetchone()
            loan_counts = uow.loans.count_by_status()
            members = uow.conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        return {
            "total_books": row["titles"],
            "unique_authors": row["unique_authors"],
            "total_copies": row["total_copies"],
            "available_copies": row["available_copies"],
            "open_loans": loan_counts[LoanStatus.BORROWED.value] + loan_counts[LoanStatus.OVERDUE.value],
            "overdue_loans": loan_counts[LoanStatus.OVERDUE.value],
            "members": members,
        }

    def close(self) -> None:
        """Connections are opened per unit of work, so there is nothing to release."""
        return None
