import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from book import Book
from circulation import BorrowingManager
from errors import Conflict, ConflictReason, StaleWriteError
from stores import InventoryStore, unit_of_work


def _race(calls):
    """Start every call at the same moment; collect results or exceptions."""
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def test_two_borrowers_race_for_the_last_copy(manager, lib):
    single = lib.add_book(Book("Last Copy", "Race Author", "9780306406157", total_copies=1))
    alice = lib.register_user("alice", "alice@example.com")
    bob = lib.register_user("bob", "bob@example.com")

    results = _race([
        lambda: manager.borrow(alice.id, single.id),
        lambda: manager.borrow(bob.id, single.id),
    ])

    conflicts = [r for r in results if isinstance(r, Conflict)]
    loans = [r for r in results if not isinstance(r, Exception)]
    assert len(loans) == 1
    assert len(conflicts) == 1
    assert conflicts[0].reason == ConflictReason.NO_COPIES_AVAILABLE
    assert lib.get_book(single.id).available_copies == 0


def test_many_borrowers_never_overdraw(db_file, lib, clock):
    stock = lib.add_book(Book("Popular", "Many Readers", "9780140449136", total_copies=3))
    users = [lib.register_user(f"reader{i}", f"reader{i}@example.com") for i in range(8)]
    manager = BorrowingManager(db_file=db_file, clock=clock)

    results = _race([lambda u=u: manager.borrow(u.id, stock.id) for u in users])

    loans = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(loans) == 3
    assert all(isinstance(e, Conflict) and e.reason == ConflictReason.NO_COPIES_AVAILABLE for e in errors)
    assert lib.get_book(stock.id).available_copies == 0
    assert len(manager.loans_for_book(stock.id)) == 3


def test_same_user_double_submit_gets_one_loan(manager, lib, member):
    stock = lib.add_book(Book("Twice", "Double Click", "9780262033848", total_copies=5))

    results = _race([lambda: manager.borrow(member.id, stock.id) for _ in range(4)])

    loans = [r for r in results if not isinstance(r, Exception)]
    assert len(loans) == 1
    assert all(isinstance(r, Conflict) and r.reason == ConflictReason.ALREADY_BORROWED
               for r in results if isinstance(r, Exception))
    assert lib.get_book(stock.id).available_copies == 4


def test_concurrent_returns_of_one_loan(manager, lib, member, book):
    loan = manager.borrow(member.id, book.id)

    results = _race([lambda: manager.return_loan(loan.id) for _ in range(3)])

    returned = [r for r in results if not isinstance(r, Exception)]
    assert len(returned) == 1
    assert all(isinstance(r, Conflict) and r.reason == ConflictReason.ALREADY_RETURNED
               for r in results if isinstance(r, Exception))
    assert lib.get_book(book.id).available_copies == book.total_copies


def test_stale_book_version_is_rejected(db_file, lib, book):
    with unit_of_work(db_file, write=False) as uow:
        stale = uow.books.get(book.id)

    with unit_of_work(db_file) as uow:
        fresh = uow.books.get(book.id)
        fresh.available_copies -= 1
        uow.books.save(fresh)

    stale.available_copies -= 1
    with pytest.raises(StaleWriteError):
        with unit_of_work(db_file) as uow:
            uow.books.save(stale)

    assert lib.get_book(book.id).available_copies == book.total_copies - 1


def test_borrow_replays_after_a_stale_write(manager, lib, member, book, monkeypatch):
    real_save = InventoryStore.save
    calls = {"n": 0}

    def flaky_save(self, b):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleWriteError("simulated concurrent update")
        return real_save(self, b)

    monkeypatch.setattr(InventoryStore, "save", flaky_save)
    loan = manager.borrow(member.id, book.id)

    assert calls["n"] == 2
    assert loan.is_open
    assert lib.get_book(book.id).available_copies == book.total_copies - 1


def test_borrow_gives_up_after_max_retries(db_file, lib, member, book, clock, monkeypatch):
    def always_stale(self, b):
        raise StaleWriteError("simulated concurrent update")

    monkeypatch.setattr(InventoryStore, "save", always_stale)
    manager = BorrowingManager(db_file=db_file, clock=clock, max_retries=2)

    with pytest.raises(Conflict) as excinfo:
        manager.borrow(member.id, book.id)
    assert excinfo.value.reason == ConflictReason.NO_COPIES_AVAILABLE
    assert manager.loans_for_book(book.id) == []
