import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from config import settings
from errors import StoreUnavailable

logger = logging.getLogger(__name__)

# Default database file.  Tests and callers may pass an explicit db_file instead.
DATABASE_FILE = settings.database_file

# Fixed-width so that string comparison in SQL matches chronological order.
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    return as_utc(value).strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(raw: str) -> datetime:
    return as_utc(datetime.fromisoformat(raw))


def get_db_connection(db_file: Optional[str] = None, timeout: Optional[float] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are begun explicitly."""
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.db_timeout if timeout is None else timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None, write: bool = True) -> Iterator[sqlite3.Connection]:
    """All-or-nothing scope over one connection.

    Write transactions start with BEGIN IMMEDIATE, which takes sqlite's reserved
    lock up front: concurrent writers queue on it (up to the busy timeout) instead
    of interleaving their read-check-write sequences.  Commits on normal exit and
    rolls back on any exception.  Database failures (lock timeouts, I/O errors,
    corruption) surface as StoreUnavailable; constraint violations and SQL
    mistakes propagate unchanged.
    """
    try:
        conn = get_db_connection(db_file)
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"Cannot open database: {exc}") from exc
    try:
        conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        yield conn
        conn.commit()
    except (sqlite3.IntegrityError, sqlite3.ProgrammingError):
        conn.rollback()
        raise
    except sqlite3.DatabaseError as exc:
        conn.rollback()
        logger.error(f"Unit of work aborted by store failure: {exc}")
        raise StoreUnavailable(str(exc)) from exc
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT UNIQUE NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL DEFAULT 'MEMBER' CHECK (role IN ('MEMBER', 'ADMIN')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                isbn TEXT UNIQUE NOT NULL,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                description TEXT,
                genre TEXT,
                publisher TEXT,
                publication_year INTEGER,
                total_copies INTEGER NOT NULL CHECK (total_copies >= 0),
                available_copies INTEGER NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK (available_copies >= 0 AND available_copies <= total_copies)
            )
        """)
        # Loans reference users and books by id only: no foreign keys, no cascades.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                borrowed_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                returned_at TEXT,
                status TEXT NOT NULL CHECK (status IN ('BORROWED', 'RETURNED', 'OVERDUE'))
            )
        """)

        # At most one open loan per (user, book)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS ux_loans_open_user_book
            ON loans(user_id, book_id) WHERE returned_at IS NULL
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_user ON loans(user_id, borrowed_at DESC)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_open_due ON loans(due_at) WHERE returned_at IS NULL")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Create the schema and switch the file to WAL so readers do not block the writer."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
    finally:
        conn.close()
    create_tables(db_file)
