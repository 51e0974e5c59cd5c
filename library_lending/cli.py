import os
import subprocess
import sys
from typing import NoReturn, Optional

import typer

from library_lending import ui_helpers
from library_lending.config import Settings
from library_lending.database import EntityStore
from library_lending.errors import ConflictError, LibraryError
from library_lending.library import Library
from library_lending.validators import IdentifierValidator, require, validate_duration_days

app = typer.Typer(help="Library lending administration")

_state = {"db_file": None}


def _settings() -> Settings:
    settings = Settings()
    if _state["db_file"]:
        settings.database_file = _state["db_file"]
    return settings


def _library(settings: Optional[Settings] = None) -> Library:
    settings = settings or _settings()
    store = EntityStore(settings.store_config())
    store.initialize()
    return Library(store, settings=settings)


def _fail(exc: LibraryError) -> NoReturn:
    print(f"Error: {exc.message}")
    if isinstance(exc, ConflictError) and exc.retryable:
        print("The operation lost a race with another request; it is safe to retry.")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)"
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (overrides LIBRARY_DB_FILE)"),
):
    """Global options (output mode, database file)."""
    if output:
        ui_helpers.set_output_mode(output)
    _state["db_file"] = db


@app.command("init-db")
def cli_init_db():
    """Create tables and indexes."""
    _library()
    print(f"Database ready: {_settings().database_file}")


@app.command("add-user")
def cli_add_user(
    email: str,
    name: str,
    password: str = typer.Option(..., "--password", "-p", help="At least 8 characters"),
    phone: Optional[str] = typer.Option(None, "--phone"),
):
    """Register a new user."""
    try:
        user = _library().create_user(email, name, password, phone_number=phone)
    except LibraryError as exc:
        _fail(exc)
    print(f"Created user {user.id}: {user.name} <{user.email}>")


@app.command("add-book")
def cli_add_book(
    isbn: str,
    title: str,
    author: str,
    genre: str = typer.Option(..., "--genre", "-g"),
    year: int = typer.Option(..., "--year", "-y", help="Publication year"),
    copies: int = typer.Option(1, "--copies", "-c"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
):
    """Add a book to the inventory."""
    try:
        book = _library().create_book(isbn, title, author, genre, year, copies, publisher=publisher)
    except LibraryError as exc:
        _fail(exc)
    print(f"Created book {book.id}: {book.title} by {book.author} ({book.total_copies} copies)")


@app.command("books")
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    page: int = typer.Option(1, "--page"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """List books."""
    result = _library().list_books(search=search, genre=genre, page=page, limit=limit)
    ui_helpers.print_books(result["items"])


@app.command("users")
def cli_users(
    search: Optional[str] = typer.Option(None, "--search", "-s"),
    page: int = typer.Option(1, "--page"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """List users."""
    result = _library().list_users(search=search, page=page, limit=limit)
    ui_helpers.print_users(result["items"])


@app.command("borrow")
def cli_borrow(
    book_id: str,
    user_id: str,
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Loan duration in days"),
):
    """Lend a book to a user."""
    settings = _settings()
    if days is None:
        days = settings.default_loan_days
    try:
        require(IdentifierValidator.book_id(book_id), "bookId")
        require(IdentifierValidator.user_id(user_id), "userId")
        require(validate_duration_days(days, settings.max_loan_days), "durationDays")
        record = _library(settings).borrow(book_id, user_id, days)
    except LibraryError as exc:
        _fail(exc)
    ui_helpers.print_record(record)


@app.command("return")
def cli_return(book_id: str, user_id: str):
    """Return a borrowed book."""
    try:
        require(IdentifierValidator.book_id(book_id), "bookId")
        require(IdentifierValidator.user_id(user_id), "userId")
        record = _library().return_book(book_id, user_id)
    except LibraryError as exc:
        _fail(exc)
    ui_helpers.print_record(record)


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    ui_helpers.print_stats(_library().get_statistics())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Run the HTTP API with uvicorn."""
    settings = _settings()
    host = host or settings.api_host
    port = port or settings.api_port
    print(f"Starting API on http://{host}:{port}/")
    env = dict(os.environ, LIBRARY_DB_FILE=settings.database_file)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_lending.api:create_app",
        "--factory",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, env=env, check=False)
    except FileNotFoundError:
        print("Error: uvicorn is not installed.")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        print("Stopped.")


if __name__ == "__main__":
    app()
