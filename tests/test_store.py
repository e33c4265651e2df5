"""Tests for the local SQLite store."""

import sqlite3
from pathlib import Path
from typing import Iterator

import pytest

from cms_sync.connectors.store import ChangeSet, LocalStore, LocalStoreError, Scope
from cms_sync.core.records import SCHEMA_VERSION, Asset, Book, SyncCursor

from conftest import ts


@pytest.fixture
def plain_store(tmp_path: Path) -> Iterator[LocalStore]:
    """A store without save hooks."""
    store = LocalStore(tmp_path / "test.db")
    yield store
    store.close()


def _book(book_id: str = "book-1", **values) -> Book:
    defaults = {
        "title": "Dune",
        "author": "Frank Herbert",
        "isbn": 9780441013593,
        "rating": 5,
        "read_date_started": ts(10),
        "review_description": {"nodeType": "document", "content": []},
        "contentful_version": 3,
        "updated_at": ts(20),
    }
    defaults.update(values)
    return Book(id=book_id, **defaults)


class TestLocalStore:
    """Tests for LocalStore class."""

    def test_connection(self, tmp_path: Path) -> None:
        """Test database file creation."""
        path = tmp_path / "nested" / "store.db"
        with LocalStore(path) as store:
            assert store.count_dirty() == 0
        assert path.exists()

    def test_schema(self, plain_store: LocalStore) -> None:
        """Test tables for both record types and the cursor."""
        with plain_store.connection() as conn:
            tables = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert {"books", "assets", "sync_space"} <= tables

    def test_round_trip_types(self, plain_store: LocalStore) -> None:
        """Datetimes, JSON and booleans survive storage."""
        book = _book(is_dirty=True)
        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.upsert(book)

        loaded = plain_store.get(Book, "book-1")
        assert loaded == book
        assert loaded.read_date_started == ts(10)
        assert loaded.review_description == {"nodeType": "document", "content": []}
        assert loaded.is_dirty is True

    def test_fetch_filters(self, plain_store: LocalStore) -> None:
        """Test equality filters and ordering."""
        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.upsert(_book("b", is_dirty=True))
            tx.upsert(_book("a", is_dirty=True))
            tx.upsert(_book("c"))

        assert [b.id for b in plain_store.fetch(Book, is_dirty=True)] == ["a", "b"]
        assert [b.id for b in plain_store.fetch(Book, cover_image_id=None)] == ["a", "b", "c"]

    def test_fetch_unknown_field(self, plain_store: LocalStore) -> None:
        """Unknown filter names are rejected."""
        with pytest.raises(ValueError):
            plain_store.fetch(Book, colour="red")

    def test_identical_upsert_skips_write(self, plain_store: LocalStore) -> None:
        """Writing an unchanged record does not touch the database."""
        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.upsert(_book())
        writes = plain_store.write_count

        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.upsert(_book())
        assert plain_store.write_count == writes

    def test_rollback_on_error(self, plain_store: LocalStore) -> None:
        """An exception inside a transaction discards all its writes."""
        with pytest.raises(RuntimeError):
            with plain_store.transaction(Scope.BACKGROUND) as tx:
                tx.upsert(_book())
                tx.set_cursor(SyncCursor("token-1"))
                raise RuntimeError("crash")

        assert plain_store.get(Book, "book-1") is None
        assert plain_store.get_cursor().sync_token is None

    def test_nested_transaction_rejected(self, plain_store: LocalStore) -> None:
        """Transactions do not nest."""
        with plain_store.transaction() as tx:
            with pytest.raises(LocalStoreError):
                with plain_store.transaction():
                    pass
            tx.upsert(_book())
        assert plain_store.get(Book, "book-1") is not None

    def test_sqlite_errors_are_wrapped(self, plain_store: LocalStore) -> None:
        """Database errors surface as LocalStoreError."""
        with pytest.raises(LocalStoreError):
            with plain_store.transaction(Scope.BACKGROUND) as tx:
                tx._conn.execute("INSERT INTO missing_table VALUES (1)")

    def test_cursor(self, plain_store: LocalStore) -> None:
        """Test cursor storage and schema-version check."""
        assert plain_store.get_cursor().is_empty

        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.set_cursor(SyncCursor("token-1"))
        cursor = plain_store.get_cursor()
        assert cursor.sync_token == "token-1"
        assert cursor.db_version == SCHEMA_VERSION
        assert not cursor.is_empty

        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.set_cursor(SyncCursor("token-2", db_version=SCHEMA_VERSION - 1))
        assert plain_store.get_cursor().is_empty

    def test_wipe(self, plain_store: LocalStore) -> None:
        """Wipe removes records and the cursor."""
        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.upsert(_book())
            tx.upsert(Asset(id="asset-1", title="Cover"))
            tx.set_cursor(SyncCursor("token-1"))
            tx.wipe()

        summary = plain_store.get_summary()
        assert summary["tables"]["books"]["total"] == 0
        assert summary["tables"]["assets"]["total"] == 0
        assert summary["sync_token"] is None

    def test_mark_deleted(self, plain_store: LocalStore) -> None:
        """Known records keep a tombstone; unknown ones disappear."""
        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.upsert(_book("known", contentful_version=2))
            tx.upsert(_book("local-only", contentful_version=0))

        assert plain_store.delete(Book, "known") is True
        assert plain_store.delete(Book, "local-only") is True
        assert plain_store.delete(Book, "missing") is False

        assert plain_store.get(Book, "known").is_deleted is True
        assert plain_store.get(Book, "local-only") is None

    def test_change_notifications(self, plain_store: LocalStore) -> None:
        """Listeners run after commit, once per transaction."""
        seen: list[ChangeSet] = []
        unsubscribe = plain_store.subscribe(seen.append)

        plain_store.save(_book())
        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.get(Book, "book-1")

        assert len(seen) == 1
        assert seen[0].scope == Scope.FOREGROUND
        assert seen[0].upserted == [("Entry", "book-1")]

        unsubscribe()
        plain_store.save(_book(rating=1))
        assert len(seen) == 1

    def test_failing_listener_does_not_break_save(self, plain_store: LocalStore) -> None:
        """A broken listener is logged, the commit stands."""

        def broken(changes: ChangeSet) -> None:
            raise RuntimeError("listener bug")

        plain_store.subscribe(broken)
        plain_store.save(_book())
        assert plain_store.get(Book, "book-1") is not None

    def test_wal_mode(self, plain_store: LocalStore) -> None:
        """File stores use WAL journaling."""
        with plain_store.connection() as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_summary_counts(self, plain_store: LocalStore) -> None:
        """Summary reports totals and dirty counts per table."""
        with plain_store.transaction(Scope.BACKGROUND) as tx:
            tx.upsert(_book("a", is_dirty=True))
            tx.upsert(_book("b"))
            tx.upsert(Asset(id="asset-1", is_dirty=True))

        summary = plain_store.get_summary()
        assert summary["tables"]["books"] == {"total": 2, "dirty": 1, "deleted": 0}
        assert summary["tables"]["assets"]["dirty"] == 1
        assert plain_store.count_dirty() == 2

    def test_existing_database_is_reused(self, tmp_path: Path) -> None:
        """Reopening a store sees previously committed data."""
        path = tmp_path / "reopen.db"
        with LocalStore(path) as store:
            store.save(_book())
        with LocalStore(path) as store:
            assert store.get(Book, "book-1") is not None
        assert sqlite3.connect(path).execute("SELECT COUNT(*) FROM books").fetchone()[0] == 1
