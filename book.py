from __future__ import annotations


class Book:
    """A catalog title together with its copy counts."""

    def __init__(self, title: str, author: str, isbn: str, total_copies: int = 1,
                 available_copies: int | None = None, id: int | None = None,
                 description: str | None = None, genre: str | None = None,
                 publisher: str | None = None, publication_year: int | None = None,
                 version: int = 0, created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.description = description
        self.genre = genre
        self.publisher = publisher
        self.publication_year = publication_year
        self.total_copies = total_copies
        # A freshly catalogued title has every copy on the shelf
        self.available_copies = total_copies if available_copies is None else available_copies
        self.version = version
        self.created_at = created_at

    @property
    def copies_on_loan(self) -> int:
        return self.total_copies - self.available_copies

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def __repr__(self) -> str:  # pragma: no cover
        return (f"Book(id={self.id!r}, isbn={self.isbn!r}, "
                f"available={self.available_copies}/{self.total_copies})")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "description": self.description,
            "genre": self.genre,
            "publisher": self.publisher,
            "publication_year": self.publication_year,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            description=data.get("description"),
            genre=data.get("genre"),
            publisher=data.get("publisher"),
            publication_year=data.get("publication_year"),
            total_copies=data["total_copies"],
            available_copies=data["available_copies"],
            version=data.get("version") or 0,
            created_at=data.get("created_at"),
        )


class User:
    """A library member.  Only existence matters to circulation."""

    ROLES = ("MEMBER", "ADMIN")

    def __init__(self, username: str, email: str, role: str = "MEMBER",
                 id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.username = username.strip()
        self.email = email.strip()
        self.role = role.upper()
        self.created_at = created_at

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data.get("id"),
            username=data["username"],
            email=data["email"],
            role=data.get("role") or "MEMBER",
            created_at=data.get("created_at"),
        )
