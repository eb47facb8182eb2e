import pytest

from book import Book
from config import settings
from database import get_db_connection

ADMIN = {"X-API-Key": settings.api_key}


@pytest.fixture
def stocked(lib):
    return lib.add_book(Book("Dune", "Frank Herbert", "9780306406157", total_copies=1))


def as_user(user):
    return {"X-User-Id": str(user.id)}


def test_root_and_health(client):
    assert client.get("/").json()["name"] == settings.app_name

    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True
    assert body["sweeper"]["running"] is False


def test_get_books_empty(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json()["books"] == []
    assert response.json()["total"] == 0


def test_add_book_with_valid_api_key(client):
    payload = {"isbn": "9780306406157", "title": "Dune", "author": "Frank Herbert", "total_copies": 2}
    response = client.post("/books", headers=ADMIN, json=payload)
    assert response.status_code == 201
    body = response.json()
    assert body["isbn"] == "9780306406157"
    assert body["available_copies"] == 2
    assert client.get(f"/books/{body['id']}").json()["title"] == "Dune"


def test_add_book_with_invalid_api_key(client):
    payload = {"isbn": "9780306406157", "title": "Dune", "author": "Frank Herbert"}
    assert client.post("/books", headers={"X-API-Key": "invalid-key"}, json=payload).status_code == 403
    assert client.post("/books", json=payload).status_code == 403


def test_add_book_invalid_isbn(client):
    payload = {"isbn": "123", "title": "Dune", "author": "Frank Herbert"}
    response = client.post("/books", headers=ADMIN, json=payload)
    assert response.status_code == 400
    assert "Invalid ISBN" in response.json()["detail"]


def test_add_duplicate_book_conflicts(client, stocked):
    payload = {"isbn": stocked.isbn, "title": "Dune", "author": "Frank Herbert"}
    response = client.post("/books", headers=ADMIN, json=payload)
    assert response.status_code == 409
    assert response.json()["reason"] == "DUPLICATE_ISBN"


def test_get_missing_book(client):
    response = client.get("/books/999")
    assert response.status_code == 404
    assert response.json()["entity"] == "Book"


def test_search_books(client, stocked, lib):
    lib.add_book(Book("Emma", "Jane Austen", "9780140449136"))
    response = client.get("/books", params={"author": "austen"})
    assert [b["title"] for b in response.json()["books"]] == ["Emma"]


def test_update_and_delete_book(client, stocked):
    response = client.put(f"/books/{stocked.id}", headers=ADMIN, json={"title": "Dune Messiah"})
    assert response.status_code == 200
    assert response.json()["title"] == "Dune Messiah"

    response = client.put(f"/books/{stocked.id}/copies", headers=ADMIN, json={"total_copies": 4})
    assert response.json()["available_copies"] == 4

    assert client.delete(f"/books/{stocked.id}", headers=ADMIN).status_code == 200
    assert client.delete(f"/books/{stocked.id}", headers=ADMIN).status_code == 404


def test_register_user(client):
    response = client.post("/users", headers=ADMIN, json={"username": "zoe", "email": "zoe@example.com"})
    assert response.status_code == 201
    assert response.json()["role"] == "MEMBER"

    again = client.post("/users", headers=ADMIN, json={"username": "zoe", "email": "zoe@example.com"})
    assert again.status_code == 409
    assert again.json()["reason"] == "DUPLICATE_USER"


def test_borrow_and_return_flow(client, stocked, member):
    response = client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member))
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "BORROWED"
    assert loan["user_id"] == member.id
    assert client.get(f"/books/{stocked.id}").json()["available_copies"] == 0

    response = client.post(f"/borrowings/return/{loan['id']}", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["status"] == "RETURNED"

    response = client.post(f"/borrowings/return/{loan['id']}", headers=ADMIN)
    assert response.status_code == 409
    assert response.json()["reason"] == "ALREADY_RETURNED"


def test_borrow_requires_a_known_user(client, stocked):
    assert client.post(f"/borrowings/borrow/{stocked.id}").status_code == 401
    assert client.post(f"/borrowings/borrow/{stocked.id}", headers={"X-User-Id": "77"}).status_code == 401
    assert client.post(f"/borrowings/borrow/{stocked.id}", headers={"X-User-Id": "abc"}).status_code == 401


def test_borrow_conflicts(client, stocked, member, lib):
    client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member))

    again = client.post(f"/books/{stocked.id}/borrow", headers=as_user(member))
    assert again.status_code == 409
    assert again.json()["reason"] == "NO_COPIES_AVAILABLE"

    bob = lib.register_user("bob", "bob@example.com")
    response = client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(bob))
    assert response.status_code == 409
    assert response.json()["reason"] == "NO_COPIES_AVAILABLE"


def test_borrow_missing_book(client, member):
    response = client.post("/borrowings/borrow/999", headers=as_user(member))
    assert response.status_code == 404
    assert response.json()["entity"] == "Book"


def test_return_requires_admin(client, stocked, member):
    loan = client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member)).json()
    assert client.post(f"/borrowings/return/{loan['id']}", headers=as_user(member)).status_code == 403
    assert client.post("/borrowings/return/999", headers=ADMIN).status_code == 404


def test_my_borrowings_and_user_borrowings(client, stocked, member):
    client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member))

    response = client.get("/borrowings/my", headers=as_user(member))
    assert response.headers["Cache-Control"] == "no-store"
    mine = response.json()
    assert mine["total"] == 1
    assert mine["loans"][0]["book_id"] == stocked.id

    assert client.get(f"/borrowings/user/{member.id}", headers=as_user(member)).status_code == 403
    theirs = client.get(f"/borrowings/user/{member.id}", headers=ADMIN).json()
    assert theirs["total"] == 1


def test_book_borrowings(client, stocked, member):
    client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member))
    response = client.get(f"/borrowings/book/{stocked.id}", headers=as_user(member))
    assert response.status_code == 200
    assert len(response.json()) == 1


def test_single_borrowing_visibility(client, stocked, member, lib):
    loan = client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member)).json()
    bob = lib.register_user("bob", "bob@example.com")

    assert client.get(f"/borrowings/{loan['id']}", headers=as_user(member)).status_code == 200
    assert client.get(f"/borrowings/{loan['id']}", headers=ADMIN).status_code == 200
    assert client.get(f"/borrowings/{loan['id']}", headers=as_user(bob)).status_code == 403
    assert client.get(f"/borrowings/{loan['id']}").status_code == 401


def test_check_overdue(client, stocked, member, clock):
    loan = client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member)).json()
    clock.advance(days=15)

    assert client.post("/borrowings/check-overdue", headers=as_user(member)).status_code == 403
    response = client.post("/borrowings/check-overdue", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["transitioned"] == 1
    assert client.post("/borrowings/check-overdue", headers=ADMIN).json()["transitioned"] == 0

    status = client.get(f"/borrowings/{loan['id']}", headers=ADMIN).json()["status"]
    assert status == "OVERDUE"
    assert client.get("/health").json()["sweeper"]["last_count"] == 0


def test_stats(client, stocked, member):
    client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member))
    stats = client.get("/stats").json()
    assert stats["total_books"] == 1
    assert stats["open_loans"] == 1
    assert stats["available_copies"] == 0


def test_integrity_fault_maps_to_500(client, stocked, member, db_file):
    loan = client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member)).json()
    conn = get_db_connection(db_file)
    conn.execute("UPDATE books SET available_copies = total_copies WHERE id = ?", (stocked.id,))
    conn.close()

    response = client.post(f"/borrowings/return/{loan['id']}", headers=ADMIN)
    assert response.status_code == 500


def test_store_unavailable_maps_to_503(client, monkeypatch):
    from errors import StoreUnavailable
    from library import Library

    def down(self, *args, **kwargs):
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(Library, "search_books", down)
    response = client.get("/books")
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"


def test_search_books_by_query_and_year_range(client, lib):
    lib.add_book(Book("Dune", "Frank Herbert", "9780306406157", publisher="Chilton", publication_year=1965))
    lib.add_book(Book("Emma", "Jane Austen", "9780140449136", publisher="Penguin", publication_year=1815))

    response = client.get("/books", params={"query": "PENGUIN"})
    assert [b["title"] for b in response.json()["books"]] == ["Emma"]

    response = client.get("/books", params={"query": "9780306"})
    assert [b["title"] for b in response.json()["books"]] == ["Dune"]

    response = client.get("/books", params={"year_from": 1900, "year_to": 2000})
    assert [b["title"] for b in response.json()["books"]] == ["Dune"]

    response = client.get("/books", params={"year_from": 2000, "year_to": 1900})
    assert response.status_code == 400


def test_admin_key_ignores_a_malformed_user_header(client, stocked, member):
    loan = client.post(f"/borrowings/borrow/{stocked.id}", headers=as_user(member)).json()
    headers = dict(ADMIN, **{"X-User-Id": "not-a-number"})
    response = client.get(f"/borrowings/{loan['id']}", headers=headers)
    assert response.status_code == 200
    assert response.json()["id"] == loan["id"]
