"""Error types raised by the circulation core, its stores and the catalog.

Callers branch on the exception class (and ``Conflict.reason``) rather than on
message text: ``NotFound`` and ``Conflict`` are client errors, ``StoreUnavailable``
is a retryable infrastructure failure and ``IntegrityFault`` means stored data
already breaks an invariant.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class CirculationError(Exception):
    """Base class for every error raised by this service."""


class NotFound(CirculationError):
    """A referenced User, Book or Loan does not exist."""

    def __init__(self, entity: str, identifier: Any) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class ConflictReason(str, Enum):
    NO_COPIES_AVAILABLE = "NO_COPIES_AVAILABLE"
    ALREADY_BORROWED = "ALREADY_BORROWED"
    ALREADY_RETURNED = "ALREADY_RETURNED"
    # Catalog-side conflicts
    DUPLICATE_ISBN = "DUPLICATE_ISBN"
    DUPLICATE_USER = "DUPLICATE_USER"
    BOOK_ON_LOAN = "BOOK_ON_LOAN"
    COPIES_ON_LOAN = "COPIES_ON_LOAN"


_CONFLICT_MESSAGES = {
    ConflictReason.NO_COPIES_AVAILABLE: "No copies available for borrowing",
    ConflictReason.ALREADY_BORROWED: "User already has this book on loan",
    ConflictReason.ALREADY_RETURNED: "Book already returned",
    ConflictReason.DUPLICATE_ISBN: "A book with this ISBN already exists",
    ConflictReason.DUPLICATE_USER: "A user with this username or email already exists",
    ConflictReason.BOOK_ON_LOAN: "Book has open loans",
    ConflictReason.COPIES_ON_LOAN: "More copies are on loan than the new total allows",
}


class Conflict(CirculationError):
    """The operation would violate an invariant given the current state.

    Safe to retry after the state changes; the core never retries it itself.
    """

    def __init__(self, reason: ConflictReason, detail: str | None = None) -> None:
        self.reason = reason
        self.detail = detail or _CONFLICT_MESSAGES[reason]
        super().__init__(self.detail)


class IntegrityFault(CirculationError):
    """Stored data was found already violating an invariant."""


class StoreUnavailable(CirculationError):
    """The database could not complete the unit of work (lock timeout, I/O error)."""


class StaleWriteError(CirculationError):
    """A version-checked write found the row changed since it was read."""
