"""
ChoreCore — Document Store.

SQLite-backed multi-tenant document store. Documents are JSON blobs keyed
by slash paths and carry a version number. Writes go through optimistic
transactions: reads record the version they saw, and the commit re-checks
those versions under SQLite's write lock. A mismatch rolls back and re-runs
the transaction function, up to a bounded number of attempts.

Every committed document mutation is appended to the ``change_feed`` table
inside the same SQLite transaction, so the feed is an exact outbox of what
was committed.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from chorecore.ports.store_port import (
    DocumentNotFound,
    StoreUnavailable,
    TransactionConflict,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ABSENT = 0  # version recorded for a document that did not exist when read


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Field transforms (resolved against the current value at write time)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Increment:
    """Add ``amount`` to the current numeric value (missing counts as 0).

    With ``floor`` set, the result is clamped so it never drops below it.
    """

    amount: int
    floor: int | None = None

    def resolve(self, current: Any) -> int:
        value = int(current or 0) + self.amount
        if self.floor is not None:
            value = max(self.floor, value)
        return value


class _ServerTimestamp:
    def resolve(self, current: Any) -> str:
        return utcnow_iso()

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def apply_fields(doc: dict, fields: dict[str, Any]) -> dict:
    """Return a copy of ``doc`` with dotted-path ``fields`` applied."""
    result = copy.deepcopy(doc)
    for dotted, value in fields.items():
        parts = dotted.split(".")
        target = result
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        leaf = parts[-1]
        if isinstance(value, (Increment, _ServerTimestamp)):
            value = value.resolve(target.get(leaf))
        target[leaf] = copy.deepcopy(value)
    return result


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Change:
    """One committed document mutation, as seen by change-feed consumers."""

    seq: int
    path: str
    before: dict | None
    after: dict | None
    committed_at: str


@dataclass
class Blob:
    path: str
    content_type: str
    size: int
    data: bytes
    uploaded_by: str | None = None
    uploaded_at: str = ""


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


class Transaction:
    """Read-modify-write unit. Created by ``DocumentStore.run_transaction``.

    The transaction function may run more than once; it must only touch
    the store through this object.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._read_versions: dict[str, int] = {}
        self._read_data: dict[str, dict | None] = {}
        self._writes: dict[str, dict | None] = {}

    def _load(self, path: str) -> dict | None:
        if path in self._writes:
            return copy.deepcopy(self._writes[path])
        if path not in self._read_versions:
            row = self._conn.execute(
                "SELECT data, version FROM documents WHERE path = ?", (path,),
            ).fetchone()
            if row is None:
                self._read_versions[path] = _ABSENT
                self._read_data[path] = None
            else:
                self._read_versions[path] = row["version"]
                self._read_data[path] = json.loads(row["data"])
        return copy.deepcopy(self._read_data[path])

    def get(self, path: str) -> dict | None:
        """Read a document (or this transaction's pending write to it)."""
        return self._load(path)

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        """Create or overwrite a document. With ``merge``, fields are applied
        on top of the current document instead of replacing it."""
        base = (self._load(path) or {}) if merge else {}
        self._writes[path] = apply_fields(base, data)

    def update(self, path: str, fields: dict[str, Any]) -> None:
        """Apply dotted-path ``fields`` to an existing document."""
        current = self._load(path)
        if current is None:
            raise DocumentNotFound(f"No document at {path}")
        self._writes[path] = apply_fields(current, fields)

    def delete(self, path: str) -> None:
        self._load(path)
        self._writes[path] = None

    @property
    def has_writes(self) -> bool:
        return bool(self._writes)

    def _commit(self) -> list[tuple[str, dict | None, dict | None]]:
        """Validate read versions and apply writes. Caller holds the write lock."""
        for path, seen in self._read_versions.items():
            row = self._conn.execute(
                "SELECT version FROM documents WHERE path = ?", (path,),
            ).fetchone()
            current = row["version"] if row is not None else _ABSENT
            if current != seen:
                raise TransactionConflict(
                    f"{path} changed (version {seen} -> {current})"
                )

        now = utcnow_iso()
        applied: list[tuple[str, dict | None, dict | None]] = []
        for path, after in self._writes.items():
            row = self._conn.execute(
                "SELECT data, version FROM documents WHERE path = ?", (path,),
            ).fetchone()
            before = json.loads(row["data"]) if row is not None else None
            version = row["version"] if row is not None else _ABSENT
            if after is None:
                if row is None:
                    continue
                self._conn.execute("DELETE FROM documents WHERE path = ?", (path,))
            else:
                self._conn.execute(
                    """
                    INSERT INTO documents (path, data, version, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        data = excluded.data,
                        version = excluded.version,
                        updated_at = excluded.updated_at
                    """,
                    (path, json.dumps(after, sort_keys=True), version + 1, now),
                )
            self._conn.execute(
                """
                INSERT INTO change_feed (path, before, after, committed_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    path,
                    json.dumps(before, sort_keys=True) if before is not None else None,
                    json.dumps(after, sort_keys=True) if after is not None else None,
                    now,
                ),
            )
            applied.append((path, before, after))
        return applied


# ---------------------------------------------------------------------------
# DocumentStore
# ---------------------------------------------------------------------------


class DocumentStore:
    """SQLite implementation of DocumentStorePort, plus a blob table."""

    def __init__(
        self,
        db_path: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        from chorecore.config import settings

        if db_path is None:
            db_path = settings.DATABASE_PATH
        self._db_path = db_path
        self._timeout = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self._max_attempts = (
            max_attempts if max_attempts is not None else settings.TRANSACTION_MAX_ATTEMPTS
        )
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self._db_path, timeout=self._timeout, isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot open store at {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    path        TEXT    PRIMARY KEY,
                    data        TEXT    NOT NULL,
                    version     INTEGER NOT NULL,
                    updated_at  TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS change_feed (
                    seq          INTEGER PRIMARY KEY AUTOINCREMENT,
                    path         TEXT    NOT NULL,
                    before       TEXT,
                    after        TEXT,
                    committed_at TEXT    NOT NULL,
                    processed    INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS blobs (
                    path         TEXT    PRIMARY KEY,
                    content_type TEXT    NOT NULL,
                    size         INTEGER NOT NULL,
                    data         BLOB    NOT NULL,
                    uploaded_by  TEXT,
                    uploaded_at  TEXT    NOT NULL
                )
            """)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot initialize store: {exc}") from exc
        finally:
            conn.close()
        logger.debug("Document store initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def run_transaction(
        self, fn: Callable[[Transaction], T], max_attempts: int | None = None,
    ) -> T:
        """Run ``fn`` in an optimistic transaction, retrying on conflict.

        Raises TransactionConflict once ``max_attempts`` are exhausted and
        StoreUnavailable if SQLite cannot be reached or stays locked past
        the configured timeout. Exceptions raised by ``fn`` propagate and
        nothing is written.
        """
        attempts = max_attempts or self._max_attempts
        for attempt in range(1, attempts + 1):
            conn = self._connect()
            try:
                txn = Transaction(conn)
                result = fn(txn)
                if not txn.has_writes:
                    return result
                conn.execute("BEGIN IMMEDIATE")
                try:
                    txn._commit()
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
                return result
            except TransactionConflict as exc:
                if attempt == attempts:
                    logger.error(
                        "Transaction gave up after %d attempts: %s", attempts, exc,
                    )
                    raise
                logger.warning(
                    "Transaction conflict (attempt %d/%d): %s", attempt, attempts, exc,
                )
            except sqlite3.Error as exc:
                raise StoreUnavailable(str(exc)) from exc
            finally:
                conn.close()
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Single-document helpers (each is its own transaction)
    # ------------------------------------------------------------------

    def get_data(self, path: str) -> dict | None:
        """Read a document outside any transaction."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT data FROM documents WHERE path = ?", (path,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()
        if row is None:
            return None
        return json.loads(row["data"])

    def get_version(self, path: str) -> int:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT version FROM documents WHERE path = ?", (path,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()
        return row["version"] if row is not None else _ABSENT

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        self.run_transaction(lambda txn: txn.set(path, data, merge=merge))

    def update(self, path: str, fields: dict[str, Any]) -> None:
        self.run_transaction(lambda txn: txn.update(path, fields))

    def delete(self, path: str) -> None:
        self.run_transaction(lambda txn: txn.delete(path))

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_change(row: sqlite3.Row) -> Change:
        return Change(
            seq=row["seq"],
            path=row["path"],
            before=json.loads(row["before"]) if row["before"] is not None else None,
            after=json.loads(row["after"]) if row["after"] is not None else None,
            committed_at=row["committed_at"],
        )

    def pending_changes(self, limit: int = 50) -> list[Change]:
        """Return unprocessed changes in commit order."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM change_feed WHERE processed = 0 ORDER BY seq LIMIT ?",
                (limit,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()
        return [self._row_to_change(r) for r in rows]

    def mark_processed(self, seq: int) -> None:
        conn = self._connect()
        try:
            conn.execute("UPDATE change_feed SET processed = 1 WHERE seq = ?", (seq,))
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def put_blob(
        self,
        path: str,
        data: bytes,
        content_type: str,
        uploaded_by: str | None = None,
    ) -> Blob:
        blob = Blob(
            path=path,
            content_type=content_type,
            size=len(data),
            data=data,
            uploaded_by=uploaded_by,
            uploaded_at=utcnow_iso(),
        )
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO blobs (path, content_type, size, data, uploaded_by, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    content_type = excluded.content_type,
                    size = excluded.size,
                    data = excluded.data,
                    uploaded_by = excluded.uploaded_by,
                    uploaded_at = excluded.uploaded_at
                """,
                (path, content_type, blob.size, data, uploaded_by, blob.uploaded_at),
            )
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()
        logger.info("Blob stored at %s (%d bytes)", path, blob.size)
        return blob

    def get_blob(self, path: str) -> Blob | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM blobs WHERE path = ?", (path,)).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()
        if row is None:
            return None
        return Blob(
            path=row["path"],
            content_type=row["content_type"],
            size=row["size"],
            data=bytes(row["data"]),
            uploaded_by=row["uploaded_by"],
            uploaded_at=row["uploaded_at"],
        )

    def delete_blob(self, path: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM blobs WHERE path = ?", (path,))
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()
        return cursor.rowcount > 0
