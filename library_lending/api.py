"""HTTP API for the lending library.

Handlers are thin: they validate path and body fields, call the Library facade
or the lending core, and translate errors into JSON error bodies. The app is
built by ``create_app`` so every process (and every test) passes its own
settings and store; run it with ``uvicorn library_lending.api:create_app --factory``.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from library_lending.config import Settings, settings as default_settings
from library_lending.database import EntityStore
from library_lending.errors import LibraryError, StoreUnavailableError, UnauthorizedError
from library_lending.lending import Clock, IdFactory, generate_id
from library_lending.library import Library
from library_lending.models import to_wire_time, utcnow
from library_lending.validators import IdentifierValidator, require, validate_duration_days

logger = logging.getLogger(__name__)

T = TypeVar("T")


# --- Request models ---
class CreateUserRequest(BaseModel):
    email: str
    name: str
    password: str
    phoneNumber: Optional[str] = None


class CreateBookRequest(BaseModel):
    isbn: str
    title: str
    author: str
    genre: str
    publicationYear: int
    totalCopies: int
    publisher: Optional[str] = None


class BorrowBookRequest(BaseModel):
    userId: str
    durationDays: Optional[int] = Field(None, description="Loan duration in days (1-30, default 14)")


class ReturnBookRequest(BaseModel):
    userId: str


def _error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = {"error": code, "message": message, "timestamp": to_wire_time(utcnow())}
    if details:
        body["details"] = details
    return body


def call_with_store_retry(func: Callable[..., T], *args: Any, attempts: int = 3, backoff: float = 0.1, **kwargs: Any) -> T:
    """Call ``func``, retrying only transient store failures with exponential backoff."""
    for attempt in range(attempts):
        try:
            return func(*args, **kwargs)
        except StoreUnavailableError:
            if attempt >= attempts - 1:
                raise
            wait_time = backoff * (2 ** attempt)
            logger.warning(f"Store unavailable, retrying in {wait_time:.2f}s (attempt {attempt + 1}/{attempts})")
            time.sleep(wait_time)
    raise StoreUnavailableError("Store unavailable")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[EntityStore] = None,
    clock: Clock = utcnow,
    id_factory: IdFactory = generate_id,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level)

    if store is None:
        store = EntityStore(settings.store_config())
        store.initialize()
    library = Library(store, settings=settings, clock=clock, id_factory=id_factory)

    app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)
    app.state.library = library
    app.state.settings = settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key", "Authorization"],
    )

    # --- Errors ---
    @app.exception_handler(LibraryError)
    async def _library_error(request: Request, exc: LibraryError):
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message, exc.details))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        missing = [str(e["loc"][-1]) for e in errors if e.get("type") == "missing"]
        if missing:
            details = {"missing_fields": missing}
        else:
            details = {"errors": [{"field": str(e["loc"][-1]), "reason": e.get("type")} for e in errors]}
        return JSONResponse(status_code=400, content=_error_body("BAD_REQUEST", "Invalid request parameters", details))

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500, content=_error_body("INTERNAL_SERVER_ERROR", "An unexpected error occurred")
        )

    # --- Security ---
    api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

    def get_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
        """Static shared-secret check."""
        if not api_key or api_key != settings.api_key:
            raise UnauthorizedError("Missing or invalid API key")
        return api_key

    def retrying(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return call_with_store_retry(
            func,
            *args,
            attempts=settings.store_retry_attempts,
            backoff=settings.store_retry_backoff,
            **kwargs,
        )

    def now() -> datetime:
        return library.clock()

    # --- Health ---
    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "timestamp": to_wire_time(utcnow()),
            "db": library.store.ping(),
            "version": settings.app_version,
        }

    # --- Users ---
    @app.get("/users", dependencies=[Depends(get_api_key)])
    def list_users(
        search: Optional[str] = Query(None, description="Search users by name or email"),
        page: int = Query(1, description="Page number"),
        limit: int = Query(settings.default_page_size, description="Items per page"),
    ):
        result = retrying(library.list_users, search=search, page=page, limit=limit)
        return {"users": [u.to_dict() for u in result["items"]], "pagination": result["pagination"]}

    @app.post("/users", status_code=201, dependencies=[Depends(get_api_key)])
    def create_user(payload: CreateUserRequest):
        user = retrying(
            library.create_user,
            email=payload.email,
            name=payload.name,
            password=payload.password,
            phone_number=payload.phoneNumber,
        )
        return user.to_dict()

    @app.get("/users/{user_id}", dependencies=[Depends(get_api_key)])
    def get_user(user_id: str):
        return retrying(library.get_user_detail, user_id)

    @app.get("/users/{user_id}/borrowings", dependencies=[Depends(get_api_key)])
    def list_user_borrowings(user_id: str, status: Optional[str] = Query(None)):
        records = retrying(library.list_user_borrowings, user_id, status=status)
        current = now()
        return {"borrowings": [r.to_dict(current) for r in records]}

    # --- Books ---
    @app.get("/books", dependencies=[Depends(get_api_key)])
    def list_books(
        search: Optional[str] = Query(None, description="Search in title, author or ISBN"),
        genre: Optional[str] = Query(None),
        available: Optional[bool] = Query(None),
        page: int = Query(1),
        limit: int = Query(settings.default_page_size),
    ):
        result = retrying(library.list_books, search=search, genre=genre, available=available, page=page, limit=limit)
        return {"books": [b.to_dict() for b in result["items"]], "pagination": result["pagination"]}

    @app.post("/books", status_code=201, dependencies=[Depends(get_api_key)])
    def create_book(payload: CreateBookRequest):
        book = retrying(
            library.create_book,
            isbn=payload.isbn,
            title=payload.title,
            author=payload.author,
            genre=payload.genre,
            publication_year=payload.publicationYear,
            total_copies=payload.totalCopies,
            publisher=payload.publisher,
        )
        return book.to_dict()

    @app.get("/books/{book_id}", dependencies=[Depends(get_api_key)])
    def get_book(book_id: str):
        return retrying(library.get_book, book_id).to_dict()

    # --- Borrowing ---
    @app.post("/books/{book_id}/borrow", dependencies=[Depends(get_api_key)])
    def borrow_book(book_id: str, payload: BorrowBookRequest):
        require(IdentifierValidator.book_id(book_id), "bookId")
        require(IdentifierValidator.user_id(payload.userId), "userId")
        duration = payload.durationDays if payload.durationDays is not None else settings.default_loan_days
        require(validate_duration_days(duration, settings.max_loan_days), "durationDays")

        record = retrying(library.lending.borrow, book_id, payload.userId, duration, timeout=settings.store_timeout)
        return record.to_dict(now())

    @app.post("/books/{book_id}/return", dependencies=[Depends(get_api_key)])
    def return_book(book_id: str, payload: ReturnBookRequest):
        require(IdentifierValidator.book_id(book_id), "bookId")
        require(IdentifierValidator.user_id(payload.userId), "userId")

        record = retrying(library.lending.return_book, book_id, payload.userId, timeout=settings.store_timeout)
        return record.to_dict(now())

    # --- Statistics ---
    @app.get("/stats", dependencies=[Depends(get_api_key)])
    def stats():
        return retrying(library.get_statistics)

    return app
