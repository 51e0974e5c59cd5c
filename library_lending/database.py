"""SQLite entity store.

Holds the three entity kinds (users, books, borrowing records) with their
secondary indexes and offers point reads, index queries, filtered scans and a
multi-record atomic conditional write. Configuration is passed in explicitly;
there is no module-level connection.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from library_lending.config import StoreConfig
from library_lending.errors import StoreUnavailableError
from library_lending.models import ENTITY_TYPES, MEMBERSHIP_STATUSES, STATUS_ACTIVE, STATUS_RETURNED, Entity, to_iso

logger = logging.getLogger(__name__)

# WriteResult reasons
CONDITION_FAILED = "condition_failed"
CONSTRAINT_VIOLATION = "constraint_violation"
DUPLICATE_KEY = "duplicate_key"


def _sql_list(values: Sequence[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


SCHEMA = [
    f"""
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        phone_number TEXT,
        membership_status TEXT NOT NULL DEFAULT 'active'
            CHECK (membership_status IN ({_sql_list(MEMBERSHIP_STATUSES)})),
        borrowing_limit INTEGER NOT NULL DEFAULT 5 CHECK (borrowing_limit >= 0),
        current_borrowed_count INTEGER NOT NULL DEFAULT 0 CHECK (current_borrowed_count >= 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id TEXT PRIMARY KEY,
        isbn TEXT NOT NULL,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        genre TEXT NOT NULL,
        publication_year INTEGER NOT NULL,
        publisher TEXT,
        total_copies INTEGER NOT NULL CHECK (total_copies >= 1),
        available_copies INTEGER NOT NULL CHECK (available_copies >= 0 AND available_copies <= total_copies),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS borrowing_records (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        book_id TEXT NOT NULL,
        book_title TEXT NOT NULL,
        borrowed_at TEXT NOT NULL,
        due_date TEXT NOT NULL,
        returned_at TEXT,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ({_sql_list((STATUS_ACTIVE, STATUS_RETURNED))})),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email ON users(email)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn)",
    "CREATE INDEX IF NOT EXISTS idx_borrowing_user_status ON borrowing_records(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_borrowing_book_status ON borrowing_records(book_id, status)",
    # One active record per (user, book), enforced at write time
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_borrowing_active_pair
    ON borrowing_records(user_id, book_id) WHERE status = 'active'
    """,
]

INDEXES: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "users": {"email": ("email",)},
    "books": {"isbn": ("isbn",)},
    "borrowing_records": {
        "user_status": ("user_id", "status"),
        "book_status": ("book_id", "status"),
    },
}

_OPERATORS = {"=", "!=", "<", "<=", ">", ">="}


@dataclass(frozen=True)
class Condition:
    """``field <op> value`` or, when ``other_field`` is set, ``field <op> other_field``."""

    field: str
    op: str
    value: Any = None
    other_field: Optional[str] = None


@dataclass
class Put:
    """Insert a new entity; fails on any primary-key or unique-index clash."""

    entity: Entity

    @property
    def kind(self) -> str:
        return self.entity.KIND


@dataclass
class ConditionalUpdate:
    """Update one record by id, guarded by every condition in ``conditions``."""

    kind: str
    key: str
    increments: Dict[str, int] = field(default_factory=dict)
    assignments: Dict[str, Any] = field(default_factory=dict)
    conditions: List[Condition] = field(default_factory=list)


Operation = Union[Put, ConditionalUpdate]


@dataclass(frozen=True)
class WriteResult:
    committed: bool
    failed_index: Optional[int] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.committed


def _columns(kind: str) -> List[str]:
    try:
        return ENTITY_TYPES[kind].columns()
    except KeyError:
        raise ValueError(f"Unknown entity kind: {kind}") from None


def _check_column(kind: str, name: str) -> str:
    if name not in _columns(kind):
        raise ValueError(f"Unknown field {name!r} for {kind}")
    return name


def _escape_like(term: str) -> str:
    """Make ``%``, ``_`` and the escape character match literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _is_key_clash(exc: sqlite3.IntegrityError, kind: str) -> bool:
    # sqlite reports "UNIQUE constraint failed: <table>.id" for a primary-key clash
    return str(exc).endswith(f": {kind}.id")


def _where(kind: str, conditions: Sequence[Condition]) -> Tuple[List[str], List[Any]]:
    clauses, params = [], []
    for cond in conditions:
        if cond.op not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {cond.op}")
        left = _check_column(kind, cond.field)
        if cond.other_field is not None:
            clauses.append(f"{left} {cond.op} {_check_column(kind, cond.other_field)}")
        else:
            clauses.append(f"{left} {cond.op} ?")
            params.append(cond.value)
    return clauses, params


class EntityStore:
    """Durable key-value storage for users, books and borrowing records."""

    def __init__(self, config: StoreConfig) -> None:
        self.config = config

    @contextmanager
    def _connection(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        try:
            # isolation_level=None: transactions are opened explicitly
            conn = sqlite3.connect(
                self.config.database_file,
                timeout=timeout if timeout is not None else self.config.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open database: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            logger.warning(f"Store operation failed: {exc}")
            raise StoreUnavailableError(f"Store unavailable: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create tables and indexes if they are missing."""
        with self._connection() as conn:
            if self.config.wal:
                conn.execute("PRAGMA journal_mode=WAL;")
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info(f"Entity store ready at {self.config.database_file}")

    def ping(self) -> bool:
        try:
            with self._connection() as conn:
                conn.execute("SELECT 1")
            return True
        except StoreUnavailableError:
            return False

    # ------------------------- Reads ------------------------- #
    def get(self, kind: str, key: str, timeout: Optional[float] = None) -> Optional[Entity]:
        """Point read by primary key; None when the record does not exist."""
        entity_type = ENTITY_TYPES[kind]
        with self._connection(timeout) as conn:
            row = conn.execute(f"SELECT * FROM {kind} WHERE id = ?", (key,)).fetchone()
        return entity_type.from_row(row) if row else None

    def query_by_index(
        self, kind: str, index_name: str, key_values: Sequence[Any], timeout: Optional[float] = None
    ) -> List[Entity]:
        try:
            index_columns = INDEXES[kind][index_name]
        except KeyError:
            raise ValueError(f"Unknown index {index_name!r} for {kind}") from None
        if len(key_values) != len(index_columns):
            raise ValueError(f"Index {index_name} expects {len(index_columns)} key values")
        conditions = [Condition(col, "=", value) for col, value in zip(index_columns, key_values)]
        items, _ = self.scan(kind, conditions=conditions, timeout=timeout)
        return items

    def scan(
        self,
        kind: str,
        conditions: Sequence[Condition] = (),
        search: Optional[str] = None,
        search_fields: Sequence[str] = (),
        offset: int = 0,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[List[Entity], int]:
        """Filtered listing ordered by creation time. Returns (page, total matches)."""
        entity_type = ENTITY_TYPES[kind]
        clauses, params = _where(kind, conditions)
        if search and search_fields:
            like = f"%{_escape_like(search.lower())}%"
            ors = [f"LOWER({_check_column(kind, name)}) LIKE ? ESCAPE '\\'" for name in search_fields]
            clauses.append("(" + " OR ".join(ors) + ")")
            params.extend([like] * len(ors))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connection(timeout) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {kind}{where}", params).fetchone()[0]
            sql = f"SELECT * FROM {kind}{where} ORDER BY created_at, id"
            page_params = list(params)
            if limit is not None:
                sql += " LIMIT ? OFFSET ?"
                page_params.extend([limit, max(offset, 0)])
            rows = conn.execute(sql, page_params).fetchall()
        return [entity_type.from_row(row) for row in rows], total

    def count(self, kind: str, conditions: Sequence[Condition] = (), timeout: Optional[float] = None) -> int:
        clauses, params = _where(kind, conditions)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection(timeout) as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {kind}{where}", params).fetchone()[0]

    def sum_column(self, kind: str, column: str, conditions: Sequence[Condition] = (), timeout: Optional[float] = None) -> int:
        column = _check_column(kind, column)
        clauses, params = _where(kind, conditions)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection(timeout) as conn:
            return conn.execute(f"SELECT COALESCE(SUM({column}), 0) FROM {kind}{where}", params).fetchone()[0]

    # ------------------------- Writes ------------------------- #
    def put(self, kind: str, entity: Entity, timeout: Optional[float] = None) -> WriteResult:
        """Insert a single entity. A key or unique-index clash is a failed condition."""
        if entity.KIND != kind:
            raise ValueError(f"Entity of kind {entity.KIND} cannot be put into {kind}")
        return self.atomic_write([Put(entity)], timeout=timeout)

    def atomic_write(self, operations: Sequence[Operation], timeout: Optional[float] = None) -> WriteResult:
        """Apply every operation or none of them.

        A conditional update that matches no row, or an insert that violates a
        constraint, rolls back the whole batch and is reported through the
        returned ``WriteResult`` rather than raised.
        """
        with self._connection(timeout) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for index, op in enumerate(operations):
                    if isinstance(op, Put):
                        try:
                            self._insert(conn, op.entity)
                        except sqlite3.IntegrityError as exc:
                            conn.execute("ROLLBACK")
                            logger.info(f"Atomic write aborted at operation {index} ({op.kind}): {exc}")
                            reason = DUPLICATE_KEY if _is_key_clash(exc, op.kind) else CONSTRAINT_VIOLATION
                            return WriteResult(False, index, reason)
                    else:
                        try:
                            cursor = self._update(conn, op)
                        except sqlite3.IntegrityError as exc:
                            conn.execute("ROLLBACK")
                            logger.info(f"Atomic write aborted at operation {index} ({op.kind}): {exc}")
                            return WriteResult(False, index, CONSTRAINT_VIOLATION)
                        if cursor.rowcount != 1:
                            conn.execute("ROLLBACK")
                            logger.info(
                                f"Atomic write aborted at operation {index}: condition failed on {op.kind}/{op.key}"
                            )
                            return WriteResult(False, index, CONDITION_FAILED)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        return WriteResult(True)

    def _insert(self, conn: sqlite3.Connection, entity: Entity) -> None:
        row = entity.to_row()
        names = list(row.keys())
        placeholders = ", ".join("?" for _ in names)
        conn.execute(
            f"INSERT INTO {entity.KIND} ({', '.join(names)}) VALUES ({placeholders})",
            [row[name] for name in names],
        )

    def _update(self, conn: sqlite3.Connection, op: ConditionalUpdate) -> sqlite3.Cursor:
        if not op.increments and not op.assignments:
            raise ValueError("ConditionalUpdate needs at least one change")
        set_parts, params = [], []
        for name, delta in op.increments.items():
            column = _check_column(op.kind, name)
            set_parts.append(f"{column} = {column} + ?")
            params.append(delta)
        for name, value in op.assignments.items():
            set_parts.append(f"{_check_column(op.kind, name)} = ?")
            params.append(to_iso(value) if isinstance(value, datetime) else value)
        clauses, where_params = _where(op.kind, op.conditions)
        where = " AND ".join(["id = ?"] + clauses)
        return conn.execute(
            f"UPDATE {op.kind} SET {', '.join(set_parts)} WHERE {where}",
            params + [op.key] + where_params,
        )
