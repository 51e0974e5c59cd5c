import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from library_lending.models import Book, BorrowingRecord, User

# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBRARY_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Book]) -> None:
    """Print books in the current output mode.
    - plain: 'ID  ISBN - Title by Author (available/total)' lines
    - json: JSON array of wire dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("ISBN", no_wrap=True)
        table.add_column("Title")
        table.add_column("Author")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(b.id, b.isbn, b.title, b.author, f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id}  {b.isbn} - {b.title} by {b.author} ({b.available_copies}/{b.total_copies})")


def print_users(users: List[User]) -> None:
    mode = get_output_mode()

    if not users:
        print("No users registered.")
        return

    if mode == "json":
        print(json.dumps([u.to_dict() for u in users], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Users", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name")
        table.add_column("Email")
        table.add_column("Borrowed", justify="right")
        for u in users:
            table.add_row(u.id, u.name, u.email, f"{u.current_borrowed_count}/{u.borrowing_limit}")
        _console.print(table)
    else:
        for u in users:
            print(f"{u.id}  {u.name} <{u.email}> ({u.current_borrowed_count}/{u.borrowing_limit})")


def print_record(record: BorrowingRecord) -> None:
    mode = get_output_mode()
    data = record.to_dict()

    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
    elif mode == "rich":
        lines = [f"[bold]{key}:[/] {value}" for key, value in data.items()]
        _console.print(Panel.fit("\n".join(lines), title=record.id, border_style="green"))
    else:
        print(f"{record.id} {data['status']}: {record.book_title} ({record.book_id}) for {record.user_id}")
        print(f"Due: {data['dueDate']}")
        if record.returned_at is not None:
            print(f"Returned: {data['returnedAt']}")


def print_stats(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {value}" for key, value in stats.items())
        _console.print(Panel.fit(content, title="Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{key}: {value}")
