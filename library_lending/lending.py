"""Borrow/return transaction core.

Each operation re-reads the book, the user and the borrowing records, checks
the lending rules, and then submits a single three-operation atomic write to
the entity store. Every write re-asserts the storage invariant it depends on,
so a race lost between the read and the write aborts the whole batch instead
of producing a lost update. Nothing is cached between calls and a lost race is
never retried here; retry policy belongs to the caller.
"""

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from library_lending.database import DUPLICATE_KEY, Condition, ConditionalUpdate, EntityStore, Put
from library_lending.errors import ConflictError, NotFoundError
from library_lending.models import STATUS_ACTIVE, STATUS_RETURNED, Book, BorrowingRecord, User, utcnow
from library_lending.validators import BORROWING_PREFIX

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
IdFactory = Callable[[str], str]

DEFAULT_LOAN_DAYS = 14
# fresh ids drawn when a generated id is already taken
ID_ATTEMPTS = 3

_ID_ALPHABET = string.ascii_letters + string.digits

BOOK_UNAVAILABLE = "book unavailable"
LIMIT_REACHED = "borrowing limit reached"
ALREADY_BORROWED = "book already borrowed by user"
CONCURRENT_MODIFICATION = "concurrent modification, retry"
NO_ACTIVE_RECORD = "no active borrowing record"
ALREADY_RETURNED = "already returned"
ID_EXHAUSTED = "could not allocate a unique id, retry"


def generate_id(prefix: str) -> str:
    """``<prefix>_`` followed by 6 random ASCII alphanumerics."""
    return prefix + "_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))


class LendingService:
    """Atomic borrow and return of books against per-user limits."""

    def __init__(
        self,
        store: EntityStore,
        clock: Clock = utcnow,
        id_factory: IdFactory = generate_id,
        default_loan_days: int = DEFAULT_LOAN_DAYS,
    ) -> None:
        self.store = store
        self.clock = clock
        self.id_factory = id_factory
        self.default_loan_days = default_loan_days

    def active_records(self, user_id: str, book_id: str, timeout: Optional[float] = None) -> List[BorrowingRecord]:
        records = self.store.query_by_index(
            BorrowingRecord.KIND, "user_status", (user_id, STATUS_ACTIVE), timeout=timeout
        )
        return [r for r in records if r.book_id == book_id]

    def borrow(
        self,
        book_id: str,
        user_id: str,
        duration_days: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> BorrowingRecord:
        """Lend one copy of ``book_id`` to ``user_id``.

        Raises NotFoundError when the book or user is missing and ConflictError
        when a lending rule fails or the write loses a race (``retryable``).
        On any failure the book, the user and the records are left unchanged.
        """
        if duration_days is None:
            duration_days = self.default_loan_days

        book = self.store.get(Book.KIND, book_id, timeout=timeout)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        if book.available_copies <= 0:
            logger.info(f"Borrow rejected: {book_id} has no available copies")
            raise ConflictError(BOOK_UNAVAILABLE)

        user = self.store.get(User.KIND, user_id, timeout=timeout)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if user.current_borrowed_count >= user.borrowing_limit:
            logger.info(f"Borrow rejected: {user_id} reached limit {user.borrowing_limit}")
            raise ConflictError(LIMIT_REACHED)

        if self.active_records(user_id, book_id, timeout=timeout):
            raise ConflictError(ALREADY_BORROWED)

        now = self.clock()
        for _ in range(ID_ATTEMPTS):
            record = BorrowingRecord(
                id=self.id_factory(BORROWING_PREFIX),
                user_id=user_id,
                book_id=book_id,
                book_title=book.title,
                borrowed_at=now,
                due_date=now + timedelta(days=duration_days),
                status=STATUS_ACTIVE,
                created_at=now,
                updated_at=now,
            )
            result = self.store.atomic_write(
                [
                    Put(record),
                    ConditionalUpdate(
                        Book.KIND,
                        book_id,
                        increments={"available_copies": -1},
                        assignments={"updated_at": now},
                        conditions=[Condition("available_copies", ">", 0)],
                    ),
                    ConditionalUpdate(
                        User.KIND,
                        user_id,
                        increments={"current_borrowed_count": 1},
                        assignments={"updated_at": now},
                        conditions=[Condition("current_borrowed_count", "<", other_field="borrowing_limit")],
                    ),
                ],
                timeout=timeout,
            )
            if result.reason != DUPLICATE_KEY:
                break
            logger.warning(f"Generated id {record.id} already exists, drawing another")
        else:
            raise ConflictError(ID_EXHAUSTED, retryable=True)

        if not result.committed:
            logger.info(
                f"Borrow of {book_id} by {user_id} lost a race "
                f"(operation {result.failed_index}: {result.reason})"
            )
            raise ConflictError(
                CONCURRENT_MODIFICATION,
                retryable=True,
                details={"failedOperation": result.failed_index},
            )

        logger.info(f"{user_id} borrowed {book_id} as {record.id}, due {record.due_date.isoformat()}")
        return record

    def return_book(self, book_id: str, user_id: str, timeout: Optional[float] = None) -> BorrowingRecord:
        """Close the active borrowing of ``book_id`` by ``user_id``."""
        matches = self.active_records(user_id, book_id, timeout=timeout)
        if not matches:
            raise NotFoundError(NO_ACTIVE_RECORD)
        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} active records for user {user_id} and book {book_id}: "
                f"{[r.id for r in matches]}; returning the earliest"
            )
        record = min(matches, key=lambda r: (r.borrowed_at, r.id))

        now = self.clock()
        result = self.store.atomic_write(
            [
                ConditionalUpdate(
                    BorrowingRecord.KIND,
                    record.id,
                    assignments={"status": STATUS_RETURNED, "returned_at": now, "updated_at": now},
                    conditions=[Condition("status", "=", STATUS_ACTIVE)],
                ),
                ConditionalUpdate(
                    Book.KIND,
                    book_id,
                    increments={"available_copies": 1},
                    assignments={"updated_at": now},
                ),
                ConditionalUpdate(
                    User.KIND,
                    user_id,
                    increments={"current_borrowed_count": -1},
                    assignments={"updated_at": now},
                    conditions=[Condition("current_borrowed_count", ">", 0)],
                ),
            ],
            timeout=timeout,
        )
        if not result.committed:
            logger.info(
                f"Return of {record.id} rejected (operation {result.failed_index}: {result.reason})"
            )
            raise ConflictError(ALREADY_RETURNED, details={"failedOperation": result.failed_index})

        record.status = STATUS_RETURNED
        record.returned_at = now
        record.updated_at = now
        logger.info(f"{user_id} returned {book_id} ({record.id})")
        return record
