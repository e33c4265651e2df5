"""
Local SQLite Record Store.

Provides the transactional-record interface the sync engines work through:
- Schema creation for Book/Asset records and the sync cursor
- Transaction scopes (foreground edits vs. background merges)
- Save hooks run before every write (used by the dirty tracker)
- Post-commit change notifications
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Generator, Iterator, TypeVar

from cms_sync.config import Settings
from cms_sync.core.records import (
    RECORD_TYPES,
    SCHEMA_VERSION,
    Record,
    SyncCursor,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


class LocalStoreError(Exception):
    """Raised when the local database cannot be read or written."""


class Scope(str, Enum):
    """Origin of a transaction.

    Foreground transactions carry user edits and run the save hooks'
    dirty-marking logic; background transactions carry pull merges and
    mark-clean writes.
    """

    FOREGROUND = "foreground"
    BACKGROUND = "background"


@dataclass
class ChangeSet:
    """What a committed transaction changed."""

    scope: Scope
    upserted: list[tuple[str, str]] = field(default_factory=list)
    deleted: list[tuple[str, str]] = field(default_factory=list)
    cursor_changed: bool = False
    wiped: bool = False

    def __bool__(self) -> bool:
        return bool(self.upserted or self.deleted or self.cursor_changed or self.wiped)


SaveHook = Callable[[Record | None, Record, Scope], Record | None]
ChangeListener = Callable[[ChangeSet], None]


# =============================================================================
# Column mapping
# =============================================================================


def _column_kind(annotation: Any) -> str:
    text = str(annotation)
    if "datetime" in text:
        return "datetime"
    if "bool" in text:
        return "bool"
    if "dict" in text:
        return "json"
    if "int" in text:
        return "int"
    return "text"


_SQL_TYPES = {
    "datetime": "TEXT",
    "bool": "INTEGER NOT NULL DEFAULT 0",
    "json": "TEXT",
    "int": "INTEGER",
    "text": "TEXT",
}


def _column_kinds(kind: type[Record]) -> dict[str, str]:
    return {f.name: _column_kind(f.type) for f in fields(kind)}


def _to_db(value: Any, column_kind: str) -> Any:
    if value is None:
        return None
    if column_kind == "datetime":
        return format_datetime(value)
    if column_kind == "bool":
        return 1 if value else 0
    if column_kind == "json":
        return json.dumps(value, sort_keys=True)
    return value


def _from_db(value: Any, column_kind: str) -> Any:
    if column_kind == "bool":
        return bool(value)
    if value is None:
        return None
    if column_kind == "datetime":
        return parse_datetime(value)
    if column_kind == "json":
        return json.loads(value)
    return value


def _column_sql(name: str, column_kind: str) -> str:
    if name == "id":
        return '"id" TEXT PRIMARY KEY'
    if name == "contentful_version":
        return '"contentful_version" INTEGER NOT NULL DEFAULT 0'
    return f'"{name}" {_SQL_TYPES[column_kind]}'


def _create_table_sql(kind: type[Record]) -> str:
    columns = [_column_sql(name, column_kind) for name, column_kind in _column_kinds(kind).items()]
    return f'CREATE TABLE IF NOT EXISTS "{kind.TABLE}" ({", ".join(columns)})'


# =============================================================================
# Transaction
# =============================================================================


class Transaction:
    """
    A single unit of work against the store.

    Obtained from ``LocalStore.transaction()``; every read and write inside
    the ``with`` block commits or rolls back together.
    """

    def __init__(self, store: "LocalStore", conn: sqlite3.Connection, scope: Scope) -> None:
        self.store = store
        self.scope = scope
        self._conn = conn
        self.changes = ChangeSet(scope=scope)

    def _row_to_record(self, kind: type[R], row: sqlite3.Row) -> R:
        kinds = _column_kinds(kind)
        values = {name: _from_db(row[name], kinds[name]) for name in kinds}
        return kind(**values)

    def get(self, kind: type[R], record_id: str) -> R | None:
        """Fetch a single record by id."""
        row = self._conn.execute(
            f'SELECT * FROM "{kind.TABLE}" WHERE "id" = ?', (record_id,)
        ).fetchone()
        return self._row_to_record(kind, row) if row else None

    def fetch(self, kind: type[R], **filters: Any) -> list[R]:
        """
        Fetch records matching equality filters.

        Example:
            dirty_books = tx.fetch(Book, is_dirty=True)
        """
        kinds = _column_kinds(kind)
        unknown = set(filters) - set(kinds)
        if unknown:
            raise ValueError(f"Unknown {kind.__name__} fields: {sorted(unknown)}")

        query = f'SELECT * FROM "{kind.TABLE}"'
        params: list[Any] = []
        if filters:
            clauses = []
            for name, value in filters.items():
                if value is None:
                    clauses.append(f'"{name}" IS NULL')
                else:
                    clauses.append(f'"{name}" = ?')
                    params.append(_to_db(value, kinds[name]))
            query += " WHERE " + " AND ".join(clauses)
        query += ' ORDER BY "id"'

        return [self._row_to_record(kind, row) for row in self._conn.execute(query, params)]

    def ids(self, kind: type[Record]) -> set[str]:
        """All record ids of a kind."""
        cursor = self._conn.execute(f'SELECT "id" FROM "{kind.TABLE}"')
        return {row["id"] for row in cursor}

    def count(self, kind: type[Record], **filters: Any) -> int:
        return len(self.fetch(kind, **filters))

    def upsert(self, record: R) -> R:
        """
        Insert or update a record.

        Save hooks run first and may return an adjusted record. The physical
        write is skipped when nothing differs from the stored row.

        Returns:
            The record as stored
        """
        kind = type(record)
        before = self.get(kind, record.id)
        after = self.store._run_save_hooks(before, record, self.scope)

        if before is not None and before == after:
            return after

        kinds = _column_kinds(kind)
        columns = list(kinds)
        col_str = ", ".join(f'"{c}"' for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f'"{c}" = excluded."{c}"' for c in columns if c != "id")
        sql = (
            f'INSERT INTO "{kind.TABLE}" ({col_str}) VALUES ({placeholders}) '
            f'ON CONFLICT("id") DO UPDATE SET {updates}'
        )
        self._conn.execute(sql, [_to_db(getattr(after, c), kinds[c]) for c in columns])
        self.store.write_count += 1
        self.changes.upserted.append((kind.KIND, after.id))
        return after

    def delete(self, kind: type[Record], record_id: str) -> bool:
        """Physically delete a record. Returns True if a row was removed."""
        cursor = self._conn.execute(
            f'DELETE FROM "{kind.TABLE}" WHERE "id" = ?', (record_id,)
        )
        if cursor.rowcount:
            self.store.write_count += 1
            self.changes.deleted.append((kind.KIND, record_id))
            return True
        return False

    def mark_deleted(self, kind: type[Record], record_id: str) -> bool:
        """
        Delete a record as a user action.

        Records the server has never seen are removed outright; others keep
        a tombstone (``is_deleted``) until the push engine deletes them
        remotely.
        """
        record = self.get(kind, record_id)
        if record is None:
            return False
        if record.is_new_remotely:
            return self.delete(kind, record_id)
        self.upsert(record.copy(is_deleted=True))
        return True

    def get_cursor(self) -> SyncCursor:
        row = self._conn.execute(
            'SELECT "sync_token", "db_version" FROM "sync_space" WHERE "id" = 1'
        ).fetchone()
        if row is None:
            return SyncCursor(sync_token=None)
        return SyncCursor(sync_token=row["sync_token"], db_version=row["db_version"])

    def set_cursor(self, cursor: SyncCursor) -> None:
        self._conn.execute(
            'INSERT INTO "sync_space" ("id", "sync_token", "db_version") VALUES (1, ?, ?) '
            'ON CONFLICT("id") DO UPDATE SET "sync_token" = excluded."sync_token", '
            '"db_version" = excluded."db_version"',
            (cursor.sync_token, cursor.db_version),
        )
        self.store.write_count += 1
        self.changes.cursor_changed = True

    def wipe(self) -> None:
        """Delete every record and the cursor."""
        for kind in RECORD_TYPES:
            self._conn.execute(f'DELETE FROM "{kind.TABLE}"')
        self._conn.execute('DELETE FROM "sync_space"')
        self.store.write_count += 1
        self.changes.wiped = True


# =============================================================================
# Store
# =============================================================================


class LocalStore:
    """
    SQLite-backed store for synced records.

    All access goes through ``transaction()``; a single connection is shared
    and serialized with a lock so concurrent writers cannot interleave.

    Example:
        store = LocalStore(Path("books.db"))

        with store.transaction() as tx:
            book = tx.get(Book, "book-1")
            tx.upsert(book.copy(rating=5))

        with store.transaction(Scope.BACKGROUND) as tx:
            tx.set_cursor(SyncCursor("token"))
    """

    def __init__(
        self,
        path: Path | str = ":memory:",
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            path: Database file, or ":memory:" for an ephemeral store
            settings: Optional settings object
        """
        self.path = path if path == ":memory:" else Path(path)
        self.settings = settings
        self.write_count = 0
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._save_hooks: list[SaveHook] = []
        self._listeners: list[ChangeListener] = []

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get the database connection, creating the schema on first use."""
        if self._connection is None:
            self._connection = self._create_connection()
            self._ensure_schema(self._connection)
        yield self._connection

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        if isinstance(self.path, Path):
            self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.path),
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise LocalStoreError(f"Cannot open store {self.path}: {e}") from e

        conn.row_factory = sqlite3.Row
        if isinstance(self.path, Path):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=MEMORY")
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for kind in RECORD_TYPES:
            conn.execute(_create_table_sql(kind))
            existing = {row["name"] for row in conn.execute(f'PRAGMA table_info("{kind.TABLE}")')}
            for name, column_kind in _column_kinds(kind).items():
                if name not in existing:
                    logger.info("Adding column %s.%s", kind.TABLE, name)
                    conn.execute(
                        f'ALTER TABLE "{kind.TABLE}" ADD COLUMN {_column_sql(name, column_kind)}'
                    )
            conn.execute(
                f'CREATE INDEX IF NOT EXISTS "idx_{kind.TABLE}_dirty" '
                f'ON "{kind.TABLE}" ("is_dirty")'
            )
        conn.execute(
            'CREATE TABLE IF NOT EXISTS "sync_space" ('
            '"id" INTEGER PRIMARY KEY CHECK ("id" = 1), '
            '"sync_token" TEXT, '
            f'"db_version" INTEGER NOT NULL DEFAULT {SCHEMA_VERSION})'
        )

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "LocalStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Hooks and notifications
    # -------------------------------------------------------------------------

    def add_save_hook(self, hook: SaveHook) -> None:
        """Register a hook run before every upsert."""
        self._save_hooks.append(hook)

    def _run_save_hooks(self, before: Record | None, after: Record, scope: Scope) -> Record:
        for hook in self._save_hooks:
            adjusted = hook(before, after, scope)
            if adjusted is not None:
                after = adjusted
        return after

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a listener called after each commit that changed something.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, changes: ChangeSet) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception:
                logger.exception("Store change listener failed")

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(
        self, scope: Scope = Scope.FOREGROUND
    ) -> Iterator[Transaction]:
        """
        Run a block of reads and writes atomically.

        Any exception, including task cancellation, rolls the whole block
        back. Listeners are notified only after a successful commit.
        """
        with self._lock:
            if self._in_transaction:
                raise LocalStoreError("Nested transactions are not supported")
            with self.connection() as conn:
                self._in_transaction = True
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    tx = Transaction(self, conn, scope)
                    yield tx
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise LocalStoreError(str(e)) from e
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                finally:
                    self._in_transaction = False

        if tx.changes:
            self._notify(tx.changes)

    # -------------------------------------------------------------------------
    # Convenience accessors
    # -------------------------------------------------------------------------

    def get(self, kind: type[R], record_id: str) -> R | None:
        with self.transaction(Scope.BACKGROUND) as tx:
            return tx.get(kind, record_id)

    def fetch(self, kind: type[R], **filters: Any) -> list[R]:
        with self.transaction(Scope.BACKGROUND) as tx:
            return tx.fetch(kind, **filters)

    def save(self, record: R) -> R:
        """Save a user edit in its own foreground transaction."""
        with self.transaction(Scope.FOREGROUND) as tx:
            return tx.upsert(record)

    def delete(self, kind: type[Record], record_id: str) -> bool:
        """Delete a record as a user action (see ``Transaction.mark_deleted``)."""
        with self.transaction(Scope.FOREGROUND) as tx:
            return tx.mark_deleted(kind, record_id)

    def get_cursor(self) -> SyncCursor:
        with self.transaction(Scope.BACKGROUND) as tx:
            return tx.get_cursor()

    def count_dirty(self) -> int:
        """Number of records waiting to be pushed."""
        with self.transaction(Scope.BACKGROUND) as tx:
            return sum(tx.count(kind, is_dirty=True) for kind in RECORD_TYPES)

    def get_summary(self) -> dict[str, Any]:
        """Record counts and cursor state for display."""
        with self.transaction(Scope.BACKGROUND) as tx:
            cursor = tx.get_cursor()
            summary: dict[str, Any] = {
                "database": str(self.path),
                "sync_token": cursor.sync_token,
                "cursor_valid": not cursor.is_empty,
                "tables": {},
            }
            for kind in RECORD_TYPES:
                summary["tables"][kind.TABLE] = {
                    "total": tx.count(kind),
                    "dirty": tx.count(kind, is_dirty=True),
                    "deleted": tx.count(kind, is_deleted=True),
                }
            return summary
