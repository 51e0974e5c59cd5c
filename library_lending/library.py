import hashlib
import logging
import math
import secrets
from typing import Any, Callable, Dict, List, Optional

from library_lending.config import Settings
from library_lending.database import DUPLICATE_KEY, Condition, EntityStore
from library_lending.errors import ConflictError, NotFoundError
from library_lending.lending import ID_ATTEMPTS, ID_EXHAUSTED, Clock, IdFactory, LendingService, generate_id
from library_lending.models import STATUS_ACTIVE, Book, BorrowingRecord, Entity, User, to_iso, utcnow
from library_lending.validators import (
    BOOK_PREFIX,
    USER_PREFIX,
    EmailValidator,
    IdentifierValidator,
    ISBNValidator,
    TextValidator,
    require,
    validate_genre,
    validate_int_range,
    validate_publication_year,
    validate_total_copies,
)

logger = logging.getLogger(__name__)

_PBKDF2_ITERATIONS = 120_000

# keeps OFFSET inside sqlite's 64-bit integer range
MAX_PAGE = 1_000_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    """Salted PBKDF2-SHA256, stored as ``pbkdf2_sha256$iterations$salt$digest``."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${_PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, iterations, salt, expected = stored.split("$")
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations))
    except (ValueError, OverflowError):
        # malformed hash
        return False
    return secrets.compare_digest(digest.hex(), expected)


class Library:
    """Manages members, the book inventory and lending on top of the entity store."""

    def __init__(
        self,
        store: EntityStore,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        id_factory: IdFactory = generate_id,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock
        self.id_factory = id_factory
        self.lending = LendingService(
            store, clock=clock, id_factory=id_factory, default_loan_days=self.settings.default_loan_days
        )

    # ------------------------- Pagination ------------------------- #
    def _page_window(self, page: Optional[int], limit: Optional[int]) -> tuple:
        page = max(page or 1, 1)
        require(validate_int_range(page, maximum=MAX_PAGE), "page")
        if limit is None:
            limit = self.settings.default_page_size
        limit = max(1, min(self.settings.max_page_size, limit))
        return page, limit, (page - 1) * limit

    @staticmethod
    def _pagination(total: int, page: int, limit: int) -> Dict[str, int]:
        return {
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if total else 0,
            "totalItems": total,
        }

    def _insert_new(self, prefix: str, build: Callable[[str], Entity]) -> Optional[Entity]:
        """Insert ``build(new_id)``, drawing a fresh id when the generated one is taken.

        Returns None when a unique index other than the primary key rejects the row.
        """
        for _ in range(ID_ATTEMPTS):
            entity = build(self.id_factory(prefix))
            result = self.store.put(entity.KIND, entity)
            if result:
                return entity
            if result.reason != DUPLICATE_KEY:
                return None
            logger.warning(f"Generated id {entity.id} already exists, drawing another")
        raise ConflictError(ID_EXHAUSTED, retryable=True)

    # ------------------------- Users ------------------------- #
    def create_user(self, email: str, name: str, password: str, phone_number: Optional[str] = None) -> User:
        require(EmailValidator.validate(email), "email")
        require(TextValidator.name(name), "name")
        require(TextValidator.password(password), "password")

        if self.store.query_by_index(User.KIND, "email", (email,)):
            raise ConflictError("A user with this email already exists", details={"field": "email"})

        password_hash = hash_password(password)
        now = self.clock()
        user = self._insert_new(
            USER_PREFIX,
            lambda new_id: User(
                id=new_id,
                email=email,
                name=name.strip(),
                password_hash=password_hash,
                phone_number=phone_number,
                borrowing_limit=self.settings.default_borrowing_limit,
                created_at=now,
                updated_at=now,
            ),
        )
        if user is None:
            # lost a race against another registration with the same email
            raise ConflictError("A user with this email already exists", details={"field": "email"})
        logger.info(f"Created user {user.id}")
        return user

    def get_user(self, user_id: str) -> User:
        require(IdentifierValidator.user_id(user_id), "userId")
        user = self.store.get(User.KIND, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_user_detail(self, user_id: str) -> Dict[str, Any]:
        """User fields plus the books they currently hold."""
        user = self.get_user(user_id)
        active = self.store.query_by_index(BorrowingRecord.KIND, "user_status", (user_id, STATUS_ACTIVE))
        detail = user.to_dict()
        detail["borrowedBooks"] = [
            {
                "bookId": r.book_id,
                "title": r.book_title,
                "borrowedAt": r.to_dict()["borrowedAt"],
                "dueDate": r.to_dict()["dueDate"],
            }
            for r in active
        ]
        return detail

    def list_users(self, search: Optional[str] = None, page: Optional[int] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        page, limit, offset = self._page_window(page, limit)
        users, total = self.store.scan(
            User.KIND, search=search, search_fields=("name", "email"), offset=offset, limit=limit
        )
        return {"items": users, "pagination": self._pagination(total, page, limit)}

    def list_user_borrowings(self, user_id: str, status: Optional[str] = None) -> List[BorrowingRecord]:
        self.get_user(user_id)
        conditions = [Condition("user_id", "=", user_id)]
        if status in ("active", "returned"):
            conditions.append(Condition("status", "=", status))
        elif status == "overdue":
            conditions.append(Condition("status", "=", STATUS_ACTIVE))
            conditions.append(Condition("due_date", "<", to_iso(self.clock())))
        records, _ = self.store.scan(BorrowingRecord.KIND, conditions=conditions)
        return records

    # ------------------------- Books ------------------------- #
    def create_book(
        self,
        isbn: str,
        title: str,
        author: str,
        genre: str,
        publication_year: int,
        total_copies: int,
        publisher: Optional[str] = None,
    ) -> Book:
        require(ISBNValidator.validate(isbn), "isbn")
        require(TextValidator.title(title), "title")
        require(TextValidator.author(author), "author")
        require(validate_genre(genre), "genre")
        require(validate_publication_year(publication_year), "publicationYear")
        require(validate_total_copies(total_copies), "totalCopies")

        if self.store.query_by_index(Book.KIND, "isbn", (isbn,)):
            raise ConflictError("A book with this ISBN already exists", details={"field": "isbn"})

        now = self.clock()
        book = self._insert_new(
            BOOK_PREFIX,
            lambda new_id: Book(
                id=new_id,
                isbn=isbn,
                title=title.strip(),
                author=author.strip(),
                genre=genre,
                publication_year=publication_year,
                publisher=publisher,
                total_copies=total_copies,
                available_copies=total_copies,
                created_at=now,
                updated_at=now,
            ),
        )
        if book is None:
            raise ConflictError("A book with this ISBN already exists", details={"field": "isbn"})
        logger.info(f"Created book {book.id} ({book.isbn}) with {total_copies} copies")
        return book

    def get_book(self, book_id: str) -> Book:
        require(IdentifierValidator.book_id(book_id), "bookId")
        book = self.store.get(Book.KIND, book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def list_books(
        self,
        search: Optional[str] = None,
        genre: Optional[str] = None,
        available: Optional[bool] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        page, limit, offset = self._page_window(page, limit)
        conditions = []
        if genre:
            conditions.append(Condition("genre", "=", genre))
        if available is True:
            conditions.append(Condition("available_copies", ">", 0))
        elif available is False:
            conditions.append(Condition("available_copies", "=", 0))
        books, total = self.store.scan(
            Book.KIND,
            conditions=conditions,
            search=search,
            search_fields=("title", "author", "isbn"),
            offset=offset,
            limit=limit,
        )
        return {"items": books, "pagination": self._pagination(total, page, limit)}

    # ------------------------- Lending ------------------------- #
    def borrow(self, book_id: str, user_id: str, duration_days: Optional[int] = None) -> BorrowingRecord:
        return self.lending.borrow(book_id, user_id, duration_days)

    def return_book(self, book_id: str, user_id: str) -> BorrowingRecord:
        return self.lending.return_book(book_id, user_id)

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        now = to_iso(self.clock())
        active = [Condition("status", "=", STATUS_ACTIVE)]
        return {
            "totalUsers": self.store.count(User.KIND),
            "totalBooks": self.store.count(Book.KIND),
            "totalCopies": self.store.sum_column(Book.KIND, "total_copies"),
            "availableCopies": self.store.sum_column(Book.KIND, "available_copies"),
            "activeBorrowings": self.store.count(BorrowingRecord.KIND, active),
            "overdueBorrowings": self.store.count(
                BorrowingRecord.KIND, active + [Condition("due_date", "<", now)]
            ),
        }
