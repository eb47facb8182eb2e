from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from database import from_db_timestamp, to_db_timestamp

# Fixed borrowing policy: two weeks from the moment of borrowing.
LOAN_PERIOD = timedelta(days=14)


class LoanStatus(str, Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


@dataclass(frozen=True)
class Loan:
    """One borrowing of one copy.  References user and book by id only."""

    user_id: int
    book_id: int
    borrowed_at: datetime
    due_at: datetime
    status: LoanStatus = LoanStatus.BORROWED
    returned_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def open(cls, user_id: int, book_id: int, now: datetime) -> "Loan":
        return cls(user_id=user_id, book_id=book_id, borrowed_at=now, due_at=now + LOAN_PERIOD)

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    def is_past_due(self, now: datetime) -> bool:
        return self.is_open and self.due_at < now

    def mark_returned(self, now: datetime) -> "Loan":
        return replace(self, returned_at=now, status=LoanStatus.RETURNED)

    def mark_overdue(self) -> "Loan":
        return replace(self, status=LoanStatus.OVERDUE)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrowed_at": self.borrowed_at.isoformat(),
            "due_at": self.due_at.isoformat(),
            "returned_at": self.returned_at.isoformat() if self.returned_at else None,
            "status": self.status.value,
        }

    def to_row(self) -> tuple:
        """Column values in the order used by ``LoanStore``."""
        return (
            self.user_id,
            self.book_id,
            to_db_timestamp(self.borrowed_at),
            to_db_timestamp(self.due_at),
            to_db_timestamp(self.returned_at) if self.returned_at else None,
            self.status.value,
        )

    @staticmethod
    def from_row(row) -> "Loan":
        return Loan(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrowed_at=from_db_timestamp(row["borrowed_at"]),
            due_at=from_db_timestamp(row["due_at"]),
            returned_at=from_db_timestamp(row["returned_at"]) if row["returned_at"] else None,
            status=LoanStatus(row["status"]),
        )


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 1
