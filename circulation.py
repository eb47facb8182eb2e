"""Borrowing lifecycle: borrow, return and the overdue sweep.

Every state change runs inside one ``unit_of_work``.  Write units take sqlite's
write lock when they begin, and book rows carry a version that ``InventoryStore.save``
checks, so the availability check and the decrement in ``borrow`` can never
interleave with another borrower's.  A version conflict aborts the unit and the
whole read-check-write is replayed, a bounded number of times.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

import database
from config import settings
from errors import Conflict, ConflictReason, IntegrityFault, NotFound, StaleWriteError, StoreUnavailable
from loan import Loan, LoanStatus, Page
from stores import UnitOfWork, unit_of_work

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BorrowingManager:
    """Owns loan records and the copy counts they move."""

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None,
                 max_retries: Optional[int] = None) -> None:
        self.db_file = db_file
        self.clock = clock or database.utc_now
        self.max_retries = settings.borrow_max_retries if max_retries is None else max_retries
        database.initialize_database(db_file)

    def now(self) -> datetime:
        return database.as_utc(self.clock())

    def _run_optimistic(self, operation: str, work: Callable[[UnitOfWork], T],
                        on_exhausted: Callable[[], Exception]) -> T:
        """Run ``work`` in a write unit, replaying it when a versioned save goes stale."""
        attempts = max(1, self.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                with unit_of_work(self.db_file) as uow:
                    return work(uow)
            except StaleWriteError as exc:
                logger.warning(f"{operation}: stale write on attempt {attempt}/{attempts}: {exc}")
        raise on_exhausted()

    # ------------------------- Borrow ------------------------- #
    def borrow(self, user_id: int, book_id: int) -> Loan:
        """Lend one copy of ``book_id`` to ``user_id`` for the fixed loan period.

        Raises NotFound(User), NotFound(Book), Conflict(NO_COPIES_AVAILABLE) or
        Conflict(ALREADY_BORROWED), checked in that order.  Nothing is written
        unless every check passes.
        """
        def work(uow: UnitOfWork) -> Loan:
            if not uow.users.exists(user_id):
                raise NotFound("User", user_id)
            book = uow.books.get(book_id)
            if book.available_copies <= 0:
                raise Conflict(ConflictReason.NO_COPIES_AVAILABLE)
            if uow.loans.exists_open_loan(user_id, book_id):
                raise Conflict(ConflictReason.ALREADY_BORROWED)

            book.available_copies -= 1
            uow.books.save(book)
            try:
                return uow.loans.save(Loan.open(user_id, book_id, self.now()))
            except sqlite3.IntegrityError as exc:
                # Open-loan unique index: another unit inserted first
                raise Conflict(ConflictReason.ALREADY_BORROWED) from exc

        try:
            loan = self._run_optimistic(
                "borrow", work, lambda: Conflict(ConflictReason.NO_COPIES_AVAILABLE)
            )
        except Conflict as exc:
            logger.warning(f"Borrow rejected for user {user_id}, book {book_id}: {exc.reason.value}")
            raise
        logger.info(f"Loan {loan.id}: user {user_id} borrowed book {book_id}, due {loan.due_at.isoformat()}")
        return loan

    # ------------------------- Return ------------------------- #
    def return_loan(self, loan_id: int) -> Loan:
        """Close an open loan and put its copy back on the shelf.

        A second return of the same loan raises Conflict(ALREADY_RETURNED) and
        changes nothing.
        """
        def work(uow: UnitOfWork) -> Loan:
            loan = uow.loans.get(loan_id)
            if not loan.is_open:
                raise Conflict(ConflictReason.ALREADY_RETURNED)
            try:
                book = uow.books.get(loan.book_id)
            except NotFound as exc:
                raise IntegrityFault(f"Loan {loan_id} references missing book {loan.book_id}") from exc
            if book.available_copies + 1 > book.total_copies:
                raise IntegrityFault(
                    f"Returning loan {loan_id} would raise book {book.id} to "
                    f"{book.available_copies + 1}/{book.total_copies} available copies"
                )
            book.available_copies += 1
            uow.books.save(book)
            return uow.loans.save(loan.mark_returned(self.now()))

        try:
            loan = self._run_optimistic(
                "return", work,
                lambda: StoreUnavailable(f"Return of loan {loan_id} kept conflicting on the book row"),
            )
        except IntegrityFault as exc:
            logger.critical(f"Integrity fault while returning loan {loan_id}: {exc}")
            raise
        logger.info(f"Loan {loan.id}: book {loan.book_id} returned by user {loan.user_id}")
        return loan

    # ------------------------- Overdue sweep ------------------------- #
    def sweep_overdue(self, now: Optional[datetime] = None) -> int:
        """Mark open loans due before ``now`` as OVERDUE; return how many changed.

        The scan reads from its own snapshot and each loan is updated in a
        separate short unit, so borrow and return traffic is never held up for
        the length of the scan.  Loans already OVERDUE, or returned since the
        scan started, are left alone.
        """
        now = self.now() if now is None else database.as_utc(now)
        transitioned = 0
        skipped = 0
        with unit_of_work(self.db_file, write=False) as scan:
            for candidate in scan.loans.find_open_overdue(now):
                if candidate.status == LoanStatus.OVERDUE:
                    continue
                try:
                    if self._mark_overdue(candidate.id, now):
                        transitioned += 1
                except StoreUnavailable as exc:
                    # Left BORROWED; the next sweep picks it up again
                    skipped += 1
                    logger.warning(f"Overdue sweep skipped loan {candidate.id}: {exc}")
        logger.info(
            f"Overdue sweep at {now.isoformat()}: {transitioned} loan(s) marked overdue"
            + (f", {skipped} skipped" if skipped else "")
        )
        return transitioned

    def _mark_overdue(self, loan_id: int, now: datetime) -> bool:
        with unit_of_work(self.db_file) as uow:
            loan = uow.loans.get(loan_id)
            if not loan.is_past_due(now) or loan.status == LoanStatus.OVERDUE:
                return False
            uow.loans.save(loan.mark_overdue())
            return True

    # ------------------------- Queries ------------------------- #
    def get_loan(self, loan_id: int) -> Loan:
        with unit_of_work(self.db_file, write=False) as uow:
            return uow.loans.get(loan_id)

    def loans_for_user(self, user_id: int, page: int = 1, page_size: Optional[int] = None) -> Page[Loan]:
        """Loans of one user, newest first, one page at a time."""
        page = max(page, 1)
        page_size = settings.default_page_size if page_size is None else page_size
        page_size = min(max(page_size, 1), settings.max_page_size)
        with unit_of_work(self.db_file, write=False) as uow:
            total = uow.loans.count_for_user(user_id)
            items = uow.loans.for_user(user_id, limit=page_size, offset=(page - 1) * page_size)
        return Page(items=items, total=total, page=page, page_size=page_size)

    def open_loans_for_user(self, user_id: int) -> List[Loan]:
        with unit_of_work(self.db_file, write=False) as uow:
            return uow.loans.open_for_user(user_id)

    def loans_for_book(self, book_id: int) -> List[Loan]:
        with unit_of_work(self.db_file, write=False) as uow:
            return uow.loans.for_book(book_id)
