from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

GENRES = ("fiction", "non-fiction", "science", "history", "biography", "children")
MEMBERSHIP_STATUSES = ("active", "suspended", "expired")

STATUS_ACTIVE = "active"
STATUS_RETURNED = "returned"
STATUS_OVERDUE = "overdue"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Storage form: full-precision UTC ISO-8601, sortable as text."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_wire_time(value: Optional[datetime]) -> Optional[str]:
    iso = to_iso(value)
    return iso.replace("+00:00", "Z") if iso else None


class Entity:
    """Row mapping shared by the three stored entity kinds."""

    KIND = ""
    TIME_FIELDS: tuple = ()

    @classmethod
    def columns(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def to_row(self) -> Dict[str, Any]:
        row = {}
        for name in self.columns():
            value = getattr(self, name)
            row[name] = to_iso(value) if name in self.TIME_FIELDS else value
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        data = {name: row[name] for name in cls.columns() if name in row.keys()}
        for name in cls.TIME_FIELDS:
            if name in data:
                data[name] = from_iso(data[name])
        return cls(**data)


@dataclass
class User(Entity):
    """A library member."""

    KIND = "users"
    TIME_FIELDS = ("created_at", "updated_at")

    id: str
    email: str
    name: str
    password_hash: str
    phone_number: Optional[str] = None
    membership_status: str = "active"
    borrowing_limit: int = 5
    current_borrowed_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        # password_hash never leaves the store
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phoneNumber": self.phone_number,
            "membershipStatus": self.membership_status,
            "borrowingLimit": self.borrowing_limit,
            "currentBorrowedCount": self.current_borrowed_count,
            "createdAt": to_wire_time(self.created_at),
            "updatedAt": to_wire_time(self.updated_at),
        }


@dataclass
class Book(Entity):
    """A title in the inventory, with its copy counters."""

    KIND = "books"
    TIME_FIELDS = ("created_at", "updated_at")

    id: str
    isbn: str
    title: str
    author: str
    genre: str
    publication_year: int
    total_copies: int
    available_copies: int
    publisher: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def available(self) -> bool:
        return self.available_copies > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "genre": self.genre,
            "publicationYear": self.publication_year,
            "publisher": self.publisher,
            "available": self.available,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
        }


@dataclass
class BorrowingRecord(Entity):
    """One lending of one book to one user."""

    KIND = "borrowing_records"
    TIME_FIELDS = ("borrowed_at", "due_date", "returned_at", "created_at", "updated_at")

    id: str
    user_id: str
    book_id: str
    book_title: str
    borrowed_at: datetime
    due_date: datetime
    status: str = STATUS_ACTIVE
    returned_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.status == STATUS_ACTIVE and self.due_date < now

    def display_status(self, now: Optional[datetime] = None) -> str:
        """Stored status, with ``overdue`` derived at read time."""
        return STATUS_OVERDUE if self.is_overdue(now) else self.status

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "bookId": self.book_id,
            "bookTitle": self.book_title,
            "borrowedAt": to_wire_time(self.borrowed_at),
            "dueDate": to_wire_time(self.due_date),
            "status": self.display_status(now),
        }
        if self.returned_at is not None:
            data["returnedAt"] = to_wire_time(self.returned_at)
        return data


ENTITY_TYPES = {cls.KIND: cls for cls in (User, Book, BorrowingRecord)}
