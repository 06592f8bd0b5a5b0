"""Document store contract plus a SQLite-backed adapter.

Documents are JSON objects addressed by slash paths with an even number of
segments (videos/{id}, videos/{id}/comments/{cid}). A collection path has an
odd number of segments. The adapter supports ordered range scans with
start_after cursors, `in` filters, live query listeners, write batches and
transactions, which is the whole surface the feed, comments and upload
engines need from a remote document database."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from ..errors import DocumentNotFoundError, StoreError, TransientIOError
from ..models import utcnow
from .connection import init_database

logger = logging.getLogger(__name__)

FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Increment:
    """Atomic numeric add applied to a field at commit time."""

    amount: int | float = 1


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class DocumentSnapshot:
    path: str
    data: dict = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def collection(self) -> str:
        return self.path.rsplit("/", 1)[0]

    def get(self, key: str, default=None):
        return self.data.get(key, default)


@dataclass(frozen=True)
class Query:
    """Immutable query description. Builder methods return new queries."""

    collection: str
    order_by: Optional[str] = None
    descending: bool = False
    filters: tuple = ()  # ((field, (values...)), ...), ANDed together
    limit: Optional[int] = None
    start_after: Optional[DocumentSnapshot] = None

    def ordered_by(self, field_name: str, descending: bool = False) -> "Query":
        return replace(self, order_by=field_name, descending=descending)

    def where_field_in(self, field_name: str, values) -> "Query":
        return replace(self, filters=self.filters + ((field_name, tuple(values)),))

    def limited_to(self, n: int) -> "Query":
        return replace(self, limit=n)

    def starting_after(self, snapshot: Optional[DocumentSnapshot]) -> "Query":
        return replace(self, start_after=snapshot)


def split_path(path: str) -> tuple[str, str]:
    """Split a document path into (collection, doc_id)."""
    parts = path.strip("/").split("/")
    if len(parts) < 2 or len(parts) % 2 != 0 or any(not p for p in parts):
        raise StoreError(f"Not a document path: {path!r}")
    return "/".join(parts[:-1]), parts[-1]


def _resolve_value(value, current=None):
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if value is SERVER_TIMESTAMP:
        return utcnow().isoformat()
    return value


def resolve_fields(fields: dict, existing: Optional[dict] = None) -> dict:
    """Apply sentinels in `fields` on top of `existing` (or an empty document)."""
    result = dict(existing or {})
    for key, value in fields.items():
        result[key] = _resolve_value(value, result.get(key))
    return result


class ListenerRegistration:
    def __init__(self, store: "DocumentStore", token: int):
        self._store = store
        self._token = token
        self._removed = False

    def remove(self):
        if not self._removed:
            self._store._remove_listener(self._token)
            self._removed = True

    @property
    def active(self) -> bool:
        return not self._removed


class WriteBatch:
    """Collects writes and applies them atomically on commit()."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._writes: list[tuple] = []

    def set(self, path: str, data: dict) -> "WriteBatch":
        self._writes.append(("set", path, data))
        return self

    def update(self, path: str, fields: dict) -> "WriteBatch":
        self._writes.append(("update", path, fields))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self._writes.append(("delete", path, None))
        return self

    def commit(self):
        self._store._commit(self._writes)
        self._writes = []


class Transaction(WriteBatch):
    """Reads see committed state; writes are buffered until the function returns."""

    def get(self, path: str) -> Optional[DocumentSnapshot]:
        return self._store.get(path)


class DocumentStore(ABC):
    """Contract of the remote document database used by the engines."""

    @abstractmethod
    def get(self, path: str) -> Optional[DocumentSnapshot]: ...

    @abstractmethod
    def query(self, query: Query) -> list[DocumentSnapshot]: ...

    @abstractmethod
    def listen(self, query: Query, callback: Callable) -> ListenerRegistration: ...

    @abstractmethod
    def run_transaction(self, fn: Callable[[Transaction], Any]) -> Any: ...

    @abstractmethod
    def _commit(self, writes: list[tuple]): ...

    @abstractmethod
    def _remove_listener(self, token: int): ...

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def set(self, path: str, data: dict):
        self._commit([("set", path, data)])

    def update(self, path: str, fields: dict):
        self._commit([("update", path, fields)])

    def delete(self, path: str):
        self._commit([("delete", path, None)])


class SQLiteDocumentStore(DocumentStore):
    """Document store persisted in a single SQLite table.

    One lock serializes every read and write, so transactions are atomic with
    respect to other threads. Listeners are re-evaluated after each commit
    that touches their collection and receive the full result set.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._listeners: dict[int, tuple[Query, Callable]] = {}
        self._next_token = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = init_database(self.db_path)
        return self._conn

    def close(self):
        with self._lock:
            self._listeners.clear()
            if self._conn:
                self._conn.close()
                self._conn = None

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, path: str) -> Optional[DocumentSnapshot]:
        split_path(path)
        with self._lock:
            row = self.conn.execute(
                "SELECT path, data FROM documents WHERE path = ?", (path.strip("/"),)
            ).fetchone()
        return self._to_snapshot(row) if row else None

    def query(self, query: Query) -> list[DocumentSnapshot]:
        sql, params = self._build_sql(query)
        if sql is None:
            return []
        with self._lock:
            try:
                rows = self.conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as e:
                raise TransientIOError(f"Query on {query.collection} failed: {e}", e) from e
        return [self._to_snapshot(r) for r in rows]

    def _to_snapshot(self, row) -> DocumentSnapshot:
        try:
            data = json.loads(row["data"])
        except ValueError:
            # Keep the row in the result; record decoders reject it per item
            logger.warning(f"Stored document {row['path']} is not valid JSON")
            data = {"__corrupt__": row["data"]}
        return DocumentSnapshot(path=row["path"], data=data)

    def _build_sql(self, query: Query) -> tuple[Optional[str], list]:
        sql = "SELECT path, data FROM documents WHERE collection = ?"
        params: list = [query.collection.strip("/")]

        for field_name, values in query.filters:
            if not values:
                return None, []
            sql += f" AND {self._field_expr(field_name)} IN ({', '.join('?' for _ in values)})"
            params.extend(values)

        if query.order_by:
            key = self._field_expr(query.order_by)
            direction = "DESC" if query.descending else "ASC"

            if query.start_after is not None:
                cursor_value = query.start_after.get(query.order_by)
                cursor_id = query.start_after.id
                if cursor_value is None:
                    # NULLs sort lowest: last in DESC order, first in ASC order
                    if query.descending:
                        sql += f" AND ({key} IS NULL AND doc_id > ?)"
                        params.append(cursor_id)
                    else:
                        sql += f" AND ({key} IS NOT NULL OR doc_id > ?)"
                        params.append(cursor_id)
                else:
                    op = "<" if query.descending else ">"
                    null_tail = f" OR {key} IS NULL" if query.descending else ""
                    sql += f" AND ({key} {op} ?{null_tail} OR ({key} = ? AND doc_id > ?))"
                    params.extend([cursor_value, cursor_value, cursor_id])

            sql += f" ORDER BY {key} {direction}, doc_id ASC"
        else:
            if query.start_after is not None:
                sql += " AND doc_id > ?"
                params.append(query.start_after.id)
            sql += " ORDER BY doc_id ASC"

        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(int(query.limit))
        return sql, params

    @staticmethod
    def _field_expr(field_name: str) -> str:
        if not FIELD_NAME_RE.match(field_name):
            raise StoreError(f"Invalid field name: {field_name!r}")
        # Rows that are not valid JSON read as NULL here instead of failing the
        # whole statement; _to_snapshot hands them to the decoders.
        return f"CASE WHEN json_valid(data) THEN json_extract(data, '$.{field_name}') END"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def run_transaction(self, fn: Callable[[Transaction], Any]) -> Any:
        """Run fn with a Transaction; its buffered writes commit atomically.

        If fn raises, nothing is written and the exception propagates.
        """
        with self._lock:
            txn = Transaction(self)
            result = fn(txn)
            collections = self._apply(txn._writes)
        self._notify(collections)
        return result

    def _commit(self, writes: list[tuple]):
        with self._lock:
            collections = self._apply(writes)
        self._notify(collections)

    def _apply(self, writes: list[tuple]) -> set[str]:
        touched: set[str] = set()
        if not writes:
            return touched
        try:
            with self.conn:
                for op, path, payload in writes:
                    collection, doc_id = split_path(path)
                    path = path.strip("/")
                    if op == "set":
                        self.conn.execute(
                            """INSERT INTO documents (path, collection, doc_id, data)
                               VALUES (?, ?, ?, ?)
                               ON CONFLICT(path) DO UPDATE SET
                                   data = excluded.data,
                                   updated_at = datetime('now')""",
                            (path, collection, doc_id, json.dumps(resolve_fields(payload))),
                        )
                    elif op == "update":
                        row = self.conn.execute(
                            "SELECT data FROM documents WHERE path = ?", (path,)
                        ).fetchone()
                        if row is None:
                            raise DocumentNotFoundError(path)
                        merged = resolve_fields(payload, json.loads(row["data"]))
                        self.conn.execute(
                            """UPDATE documents SET data = ?, updated_at = datetime('now')
                               WHERE path = ?""",
                            (json.dumps(merged), path),
                        )
                    elif op == "delete":
                        self.conn.execute("DELETE FROM documents WHERE path = ?", (path,))
                    else:
                        raise StoreError(f"Unknown write op: {op}")
                    touched.add(collection)
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Document store write failed: {e}", e) from e
        return touched

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def listen(self, query: Query, callback: Callable) -> ListenerRegistration:
        """Watch a query. callback(docs, error) fires now and after each relevant commit."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = (query, callback)
        logger.debug(f"Listener {token} registered on {query.collection}")
        self._deliver(token, query, callback)
        return ListenerRegistration(self, token)

    def _remove_listener(self, token: int):
        with self._lock:
            self._listeners.pop(token, None)
        logger.debug(f"Listener {token} removed")

    def _notify(self, collections: set[str]):
        if not collections:
            return
        with self._lock:
            targets = [
                (token, q, cb)
                for token, (q, cb) in self._listeners.items()
                if q.collection.strip("/") in collections
            ]
        for token, q, cb in targets:
            self._deliver(token, q, cb)

    def _deliver(self, token: int, query: Query, callback: Callable):
        with self._lock:
            if token not in self._listeners:
                return
        try:
            docs = self.query(query)
        except TransientIOError as e:
            callback(None, e)
            return
        try:
            callback(docs, None)
        except Exception:
            logger.exception(f"Listener {token} callback raised")
