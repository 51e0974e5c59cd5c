import itertools
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from library_lending.config import Settings
from library_lending.database import Condition, EntityStore
from library_lending.library import Library
from library_lending.models import Book, BorrowingRecord, User

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Injected clock; only moves when a test advances it."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class SequentialIds:
    """``usr_000001``, ``bk_000001``, ... one counter per prefix."""

    def __init__(self) -> None:
        self._counters = defaultdict(lambda: itertools.count(1))

    def __call__(self, prefix: str) -> str:
        return f"{prefix}_{next(self._counters[prefix]):06d}"


@pytest.fixture
def settings(tmp_path, request):
    # Her test için benzersiz bir veritabanı dosyası
    name = re.sub(r"\W", "_", request.node.name)[:40]
    return Settings(
        database_file=str(tmp_path / f"test_{name}.db"),
        api_key="test-api-key",
        store_retry_backoff=0.0,
    )


@pytest.fixture
def store(settings):
    store = EntityStore(settings.store_config())
    store.initialize()
    return store


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def ids():
    return SequentialIds()


@pytest.fixture
def lib(store, settings, clock, ids):
    return Library(store, settings=settings, clock=clock, id_factory=ids)


@pytest.fixture
def add_book(store, clock):
    """Insert a book row directly, bypassing the catalog rules."""

    def _add(book_id="bk_000001", total_copies=1, available_copies=None, title="Dune", isbn=None):
        book = Book(
            id=book_id,
            isbn=isbn or f"978-0-{book_id[-4:]}-0000-1",
            title=title,
            author="Frank Herbert",
            genre="fiction",
            publication_year=1965,
            total_copies=total_copies,
            available_copies=total_copies if available_copies is None else available_copies,
            created_at=clock(),
            updated_at=clock(),
        )
        assert store.put(Book.KIND, book).committed
        return book

    return _add


@pytest.fixture
def add_user(store, clock):
    """Insert a user row directly."""

    def _add(user_id="usr_000001", borrowing_limit=5, current_borrowed_count=0, email=None):
        user = User(
            id=user_id,
            email=email or f"{user_id}@example.com",
            name=f"Reader {user_id[-2:]}",
            password_hash="x",
            borrowing_limit=borrowing_limit,
            current_borrowed_count=current_borrowed_count,
            created_at=clock(),
            updated_at=clock(),
        )
        assert store.put(User.KIND, user).committed
        return user

    return _add


@pytest.fixture
def check_invariants(store):
    """Assert the at-rest counters agree with the active borrowing records."""
    def _check():
        books, _ = store.scan(Book.KIND)
        for book in books:
            active = store.count(
                BorrowingRecord.KIND,
                [Condition("book_id", "=", book.id), Condition("status", "=", "active")],
            )
            assert book.available_copies == book.total_copies - active, book.id
        users, _ = store.scan(User.KIND)
        for user in users:
            active = store.count(
                BorrowingRecord.KIND,
                [Condition("user_id", "=", user.id), Condition("status", "=", "active")],
            )
            assert user.current_borrowed_count == active, user.id
            assert user.current_borrowed_count <= user.borrowing_limit, user.id

    return _check
