import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import database
from api import create_app
from book import Book
from circulation import BorrowingManager
from library import Library
from ui_helpers import OUTPUT_MODE_ENV


class FakeClock:
    """Settable clock so loan periods can be crossed without waiting."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # CLI --output writes to the environment; keep it from leaking between tests
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def db_file(tmp_path, request, monkeypatch):
    # Unique database per test; code that falls back to the module default sees it too
    path = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    yield path
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.remove(path + suffix)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file)
    yield lib
    lib.close()


@pytest.fixture
def manager(db_file, clock):
    return BorrowingManager(db_file=db_file, clock=clock)


@pytest.fixture
def member(lib):
    return lib.register_user("alice", "alice@example.com")


@pytest.fixture
def book(lib):
    return lib.add_book(Book("Ulysses", "James Joyce", "9780199535675", total_copies=2))


@pytest.fixture
def client(db_file, clock):
    app = create_app(db_file=db_file, clock=clock, sweep_enabled=False)
    with TestClient(app) as test_client:
        yield test_client
