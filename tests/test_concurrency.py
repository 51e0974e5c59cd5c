"""Concurrent borrow/return against one shared SQLite file.

Each worker goes through its own connections, as separate request handlers
would; the only coordination between them is the store's atomic write.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from library_lending.errors import ConflictError, LibraryError
from library_lending.lending import LendingService
from library_lending.models import Book, BorrowingRecord, User

pytestmark = pytest.mark.integration


def _outcome(func, *args):
    try:
        return func(*args)
    except LibraryError as exc:
        return exc


def _sync_writes(monkeypatch, store, parties):
    """Hold every atomic write until ``parties`` callers have finished their reads."""
    barrier = threading.Barrier(parties, timeout=10)
    real_write = store.atomic_write

    def synced(operations, timeout=None):
        barrier.wait()
        return real_write(operations, timeout=timeout)

    monkeypatch.setattr(store, "atomic_write", synced)


@pytest.fixture
def lending(store, clock, ids):
    return LendingService(store, clock=clock, id_factory=ids)


def test_last_copy_has_exactly_one_winner(lending, store, add_book, add_user, monkeypatch, check_invariants):
    add_book(total_copies=1)
    add_user("usr_000001")
    add_user("usr_000002")
    _sync_writes(monkeypatch, store, 2)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(_outcome, lending.borrow, "bk_000001", uid) for uid in ("usr_000001", "usr_000002")]
        results = [f.result() for f in futures]

    wins = [r for r in results if isinstance(r, BorrowingRecord)]
    losses = [r for r in results if isinstance(r, ConflictError)]
    assert len(wins) == 1
    assert len(losses) == 1
    assert losses[0].message == "concurrent modification, retry"
    assert losses[0].retryable is True

    monkeypatch.undo()
    assert store.get(Book.KIND, "bk_000001").available_copies == 0
    assert store.count(BorrowingRecord.KIND) == 1
    check_invariants()


def test_double_return_has_exactly_one_winner(lending, store, add_book, add_user, monkeypatch, check_invariants):
    add_book(total_copies=2)
    add_user()
    lending.borrow("bk_000001", "usr_000001")
    _sync_writes(monkeypatch, store, 2)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(_outcome, lending.return_book, "bk_000001", "usr_000001") for _ in range(2)]
        results = [f.result() for f in futures]

    wins = [r for r in results if isinstance(r, BorrowingRecord)]
    losses = [r for r in results if isinstance(r, ConflictError)]
    assert len(wins) == 1
    assert len(losses) == 1
    assert losses[0].message == "already returned"

    monkeypatch.undo()
    assert store.get(Book.KIND, "bk_000001").available_copies == 2
    assert store.get(User.KIND, "usr_000001").current_borrowed_count == 0
    check_invariants()


def test_many_borrowers_never_oversubscribe(lending, store, add_book, add_user, check_invariants):
    copies, borrowers = 3, 12
    add_book(total_copies=copies)
    user_ids = [f"usr_{i:06d}" for i in range(1, borrowers + 1)]
    for uid in user_ids:
        add_user(uid)

    start = threading.Event()

    def borrow(uid):
        start.wait(5)
        return _outcome(lending.borrow, "bk_000001", uid)

    with ThreadPoolExecutor(max_workers=borrowers) as pool:
        futures = [pool.submit(borrow, uid) for uid in user_ids]
        start.set()
        results = [f.result() for f in futures]

    wins = [r for r in results if isinstance(r, BorrowingRecord)]
    assert len(wins) == copies
    assert all(isinstance(r, ConflictError) for r in results if not isinstance(r, BorrowingRecord))
    assert store.get(Book.KIND, "bk_000001").available_copies == 0
    check_invariants()


def test_user_limit_holds_under_concurrent_borrows(lending, store, add_book, add_user, check_invariants):
    limit, titles = 2, 6
    for i in range(1, titles + 1):
        add_book(f"bk_{i:06d}", total_copies=1)
    add_user(borrowing_limit=limit)

    start = threading.Event()

    def borrow(book_id):
        start.wait(5)
        return _outcome(lending.borrow, book_id, "usr_000001")

    with ThreadPoolExecutor(max_workers=titles) as pool:
        futures = [pool.submit(borrow, f"bk_{i:06d}") for i in range(1, titles + 1)]
        start.set()
        results = [f.result() for f in futures]

    wins = [r for r in results if isinstance(r, BorrowingRecord)]
    assert len(wins) == limit
    assert store.get(User.KIND, "usr_000001").current_borrowed_count == limit
    check_invariants()


def test_interleaved_borrow_and_return_keep_invariants(lending, store, add_book, add_user, check_invariants):
    add_book(total_copies=2)
    user_ids = [f"usr_{i:06d}" for i in range(1, 5)]
    for uid in user_ids:
        add_user(uid)

    def cycle(uid):
        for _ in range(5):
            _outcome(lending.borrow, "bk_000001", uid)
            _outcome(lending.return_book, "bk_000001", uid)

    with ThreadPoolExecutor(max_workers=len(user_ids)) as pool:
        list(pool.map(cycle, user_ids))

    assert store.get(Book.KIND, "bk_000001").available_copies == 2
    check_invariants()
