"""Persistence for books, users and loans.

Each store is bound to a single sqlite connection handed out by
``unit_of_work()``, so every read and write a caller makes inside one ``with``
block commits or rolls back together.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from book import Book, User
from database import to_db_timestamp, transaction
from errors import IntegrityFault, NotFound, StaleWriteError
from loan import Loan, LoanStatus

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = """id, isbn, title, author, description, genre, publisher, publication_year,
                   total_copies, available_copies, version, created_at"""
_LOAN_COLUMNS = "id, user_id, book_id, borrowed_at, due_at, returned_at, status"


class InventoryStore:
    """Book rows, with an optimistic version check on every save."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, book_id: int) -> Book:
        row = self.conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound("Book", book_id)
        return Book.from_dict(dict(row))

    def exists(self, book_id: int) -> bool:
        return self.conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is not None

    def add(self, book: Book) -> Book:
        """Insert a new title.  Raises sqlite3.IntegrityError on a duplicate ISBN."""
        self._check_counts(book)
        cursor = self.conn.execute(
            """
            INSERT INTO books (isbn, title, author, description, genre, publisher,
                               publication_year, total_copies, available_copies)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (book.isbn, book.title, book.author, book.description, book.genre, book.publisher,
             book.publication_year, book.total_copies, book.available_copies),
        )
        return self.get(cursor.lastrowid)

    def save(self, book: Book) -> Book:
        """Write ``book`` back if nobody else has saved it since it was read.

        Returns the stored book with its new version; raises StaleWriteError when
        the version no longer matches.
        """
        self._check_counts(book)
        cursor = self.conn.execute(
            """
            UPDATE books
            SET title = ?, author = ?, description = ?, genre = ?, publisher = ?,
                publication_year = ?, total_copies = ?, available_copies = ?,
                version = version + 1
            WHERE id = ? AND version = ?
            """,
            (book.title, book.author, book.description, book.genre, book.publisher,
             book.publication_year, book.total_copies, book.available_copies,
             book.id, book.version),
        )
        if cursor.rowcount == 0:
            if not self.exists(book.id):
                raise NotFound("Book", book.id)
            raise StaleWriteError(f"Book {book.id} changed since version {book.version}")
        return self.get(book.id)

    def delete(self, book_id: int) -> bool:
        return self.conn.execute("DELETE FROM books WHERE id = ?", (book_id,)).rowcount > 0

    @staticmethod
    def _check_counts(book: Book) -> None:
        if not 0 <= book.available_copies <= book.total_copies:
            raise IntegrityFault(
                f"Book {book.id}: available copies {book.available_copies} "
                f"outside 0..{book.total_copies}"
            )


class LoanStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, loan_id: int) -> Loan:
        row = self.conn.execute(f"SELECT {_LOAN_COLUMNS} FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFound("Loan", loan_id)
        return Loan.from_row(row)

    def save(self, loan: Loan) -> Loan:
        """Insert a new loan (``id is None``) or overwrite an existing one.

        A second open loan for the same user and book violates the partial unique
        index and raises sqlite3.IntegrityError.
        """
        if loan.id is None:
            cursor = self.conn.execute(
                """
                INSERT INTO loans (user_id, book_id, borrowed_at, due_at, returned_at, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                loan.to_row(),
            )
            return self.get(cursor.lastrowid)
        cursor = self.conn.execute(
            """
            UPDATE loans
            SET user_id = ?, book_id = ?, borrowed_at = ?, due_at = ?, returned_at = ?, status = ?
            WHERE id = ?
            """,
            loan.to_row() + (loan.id,),
        )
        if cursor.rowcount == 0:
            raise NotFound("Loan", loan.id)
        return self.get(loan.id)

    def exists_open_loan(self, user_id: int, book_id: int) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM loans WHERE user_id = ? AND book_id = ? AND returned_at IS NULL",
            (user_id, book_id),
        ).fetchone()
        return row is not None

    def find_open_overdue(self, now: datetime) -> Iterator[Loan]:
        """Yield open loans due before ``now``.  One-shot: re-call for a new scan."""
        cursor = self.conn.execute(
            f"""
            SELECT {_LOAN_COLUMNS} FROM loans
            WHERE returned_at IS NULL AND due_at < ?
            ORDER BY due_at, id
            """,
            (to_db_timestamp(now),),
        )
        for row in cursor:
            yield Loan.from_row(row)

    def count_for_user(self, user_id: int) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM loans WHERE user_id = ?", (user_id,)).fetchone()[0]

    def for_user(self, user_id: int, limit: int, offset: int) -> List[Loan]:
        rows = self.conn.execute(
            f"""
            SELECT {_LOAN_COLUMNS} FROM loans WHERE user_id = ?
            ORDER BY borrowed_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        ).fetchall()
        return [Loan.from_row(row) for row in rows]

    def open_for_user(self, user_id: int) -> List[Loan]:
        rows = self.conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM loans WHERE user_id = ? AND returned_at IS NULL ORDER BY due_at, id",
            (user_id,),
        ).fetchall()
        return [Loan.from_row(row) for row in rows]

    def for_book(self, book_id: int) -> List[Loan]:
        rows = self.conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM loans WHERE book_id = ? ORDER BY id", (book_id,)
        ).fetchall()
        return [Loan.from_row(row) for row in rows]

    def count_open_for_book(self, book_id: int) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM loans WHERE book_id = ? AND returned_at IS NULL", (book_id,)
        ).fetchone()[0]

    def count_by_status(self) -> dict:
        counts = {status.value: 0 for status in LoanStatus}
        for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM loans GROUP BY status"):
            counts[row["status"]] = row["n"]
        return counts


class UserStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, user_id: int) -> User:
        row = self.conn.execute(
            "SELECT id, username, email, role, created_at FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise NotFound("User", user_id)
        return User.from_dict(dict(row))

    def exists(self, user_id: int) -> bool:
        return self.conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is not None

    def find_by_username(self, username: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT id, username, email, role, created_at FROM users WHERE username = ?", (username,)
        ).fetchone()
        return User.from_dict(dict(row)) if row else None

    def add(self, user: User) -> User:
        """Insert a user.  Raises sqlite3.IntegrityError on a duplicate username or email."""
        cursor = self.conn.execute(
            "INSERT INTO users (username, email, role) VALUES (?, ?, ?)",
            (user.username, user.email, user.role),
        )
        return self.get(cursor.lastrowid)


class UnitOfWork:
    """The stores of one transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.books = InventoryStore(conn)
        self.loans = LoanStore(conn)
        self.users = UserStore(conn)


@contextmanager
def unit_of_work(db_file: Optional[str] = None, write: bool = True) -> Iterator[UnitOfWork]:
    with transaction(db_file, write=write) as conn:
        yield UnitOfWork(conn)
