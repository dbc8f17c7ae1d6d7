"""
HOA Dues Engine -- Document Store Adapter

Typed access to the partitioned document collections the engine reads and
writes.  Every document lives in exactly one collection and one partition;
the partition key is the parcel id (``Parcel_ID``) for everything except
``hoa_config``, which uses the fixed partition ``"hoa_config"``.

Contract (``DocumentStore``):

    get(collection, key, partition_key)            -> dict | NotFoundError
    query(collection, partition_key=, where=,
          order_by=, descending=, limit=)          -> lazy iterator of dicts
    patch(collection, key, partition_key, ops)     -> updated dict
    create(collection, document)                   -> dict
    replace(collection, document)                  -> dict

Patch operations (``PatchOperation``) are applied atomically to a single
document:

    replace   field must already exist      (StoreConflictError otherwise)
    add       create or overwrite the field
    set       create or overwrite the field
    remove    field must already exist      (StoreConflictError otherwise)

Two implementations:
    InMemoryDocumentStore   dict-backed, documents deep-copied in and out
    SqliteDocumentStore     one row per document, JSON body, connection per call

Usage:
    from hoa_dues.store import SqliteDocumentStore, PatchOperation, COMMUNICATIONS

    store = SqliteDocumentStore("hoa.db")
    store.patch(COMMUNICATIONS, comm_id, parcel_id, [
        PatchOperation.set("SentStatus", "Y"),
    ])
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Protocol, runtime_checkable

from .errors import NotFoundError, StoreConflictError, ThrottledError, ValidationFailure

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

PROPERTIES = "hoa_properties"
OWNERS = "hoa_owners"
ASSESSMENTS = "hoa_assessments"
COMMUNICATIONS = "hoa_communications"
PAYMENTS = "hoa_payments"
SALES = "hoa_sales"
CONFIG = "hoa_config"

COLLECTIONS = (PROPERTIES, OWNERS, ASSESSMENTS, COMMUNICATIONS, PAYMENTS, SALES, CONFIG)

CONFIG_PARTITION = "hoa_config"
PARTITION_FIELD = "Parcel_ID"

# Fields a patch may never touch
_KEY_FIELDS = {"id", PARTITION_FIELD}

Predicate = Callable[[dict[str, Any]], bool]


def now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def partition_key_for(collection: str, document: dict[str, Any]) -> str:
    """Partition a document belongs to."""
    if collection == CONFIG:
        return CONFIG_PARTITION
    value = document.get(PARTITION_FIELD)
    if value is None or str(value).strip() == "":
        raise ValidationFailure(f"{collection} document has no {PARTITION_FIELD}", PARTITION_FIELD)
    return str(value)


def _document_id(collection: str, document: dict[str, Any]) -> str:
    value = document.get("id")
    if value is None or str(value).strip() == "":
        raise ValidationFailure(f"{collection} document has no id", "id")
    return str(value)


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection!r}")


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# ---------------------------------------------------------------------------
# Patch operations
# ---------------------------------------------------------------------------

class PatchOp(Enum):
    REPLACE = "replace"
    ADD = "add"
    SET = "set"
    REMOVE = "remove"


@dataclass(frozen=True)
class PatchOperation:
    """A single field operation.  ``path`` is a top-level field name,
    with or without the leading slash (``"/SentStatus"`` == ``"SentStatus"``)."""

    op: PatchOp
    path: str
    value: Any = None

    @property
    def field_name(self) -> str:
        name = self.path.lstrip("/")
        if not name or "/" in name:
            raise ValueError(f"Only top-level patch paths are supported: {self.path!r}")
        return name

    @classmethod
    def replace(cls, path: str, value: Any) -> PatchOperation:
        return cls(PatchOp.REPLACE, path, value)

    @classmethod
    def add(cls, path: str, value: Any) -> PatchOperation:
        return cls(PatchOp.ADD, path, value)

    @classmethod
    def set(cls, path: str, value: Any) -> PatchOperation:
        return cls(PatchOp.SET, path, value)

    @classmethod
    def remove(cls, path: str) -> PatchOperation:
        return cls(PatchOp.REMOVE, path)


def apply_patch(document: dict[str, Any], operations: list[PatchOperation]) -> dict[str, Any]:
    """Return a patched copy of ``document``.  All-or-nothing: the input is
    never modified, so a failing operation leaves no partial change."""
    patched = copy.deepcopy(document)
    for operation in operations:
        name = operation.field_name
        if name in _KEY_FIELDS:
            raise StoreConflictError(f"Key field {name!r} cannot be patched")
        if operation.op in (PatchOp.REPLACE, PatchOp.REMOVE) and name not in patched:
            raise StoreConflictError(
                f"{operation.op.value} on missing field {name!r} of document {patched.get('id')!r}"
            )
        if operation.op is PatchOp.REMOVE:
            del patched[name]
        else:
            patched[name] = copy.deepcopy(operation.value)
    return patched


def _sort_key(order_by: str) -> Callable[[dict[str, Any]], tuple]:
    # Missing values sort first, matching SQLite's NULL ordering
    def key(doc: dict[str, Any]) -> tuple:
        value = doc.get(order_by)
        return (value is not None, value if value is not None else 0)
    return key


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class DocumentStore(Protocol):
    """Document store boundary injected into every component."""

    def get(self, collection: str, key: str, partition_key: str) -> dict[str, Any]: ...

    def query(
        self,
        collection: str,
        *,
        partition_key: Optional[str] = None,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Iterator[dict[str, Any]]: ...

    def patch(
        self,
        collection: str,
        key: str,
        partition_key: str,
        operations: list[PatchOperation],
    ) -> dict[str, Any]: ...

    def create(self, collection: str, document: dict[str, Any]) -> dict[str, Any]: ...

    def replace(self, collection: str, document: dict[str, Any]) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryDocumentStore:
    """Dict-backed store.  Used by tests and for dry runs."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[tuple[str, str], dict[str, Any]]] = {
            name: {} for name in COLLECTIONS
        }

    def get(self, collection: str, key: str, partition_key: str) -> dict[str, Any]:
        _check_collection(collection)
        doc = self._collections[collection].get((str(partition_key), str(key)))
        if doc is None:
            raise NotFoundError(collection, key, partition_key)
        return copy.deepcopy(doc)

    def query(
        self,
        collection: str,
        *,
        partition_key: Optional[str] = None,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Iterator[dict[str, Any]]:
        _check_collection(collection)
        docs = [
            doc for (part, _), doc in self._collections[collection].items()
            if partition_key is None or part == str(partition_key)
        ]
        if order_by:
            docs.sort(key=_sort_key(order_by), reverse=descending)
        return self._iter_matches(docs, where, limit)

    @staticmethod
    def _iter_matches(
        docs: list[dict[str, Any]],
        where: Optional[Predicate],
        limit: Optional[int],
    ) -> Iterator[dict[str, Any]]:
        yielded = 0
        for doc in docs:
            if limit is not None and yielded >= limit:
                return
            candidate = copy.deepcopy(doc)
            if where is not None and not where(candidate):
                continue
            yielded += 1
            yield candidate

    def patch(
        self,
        collection: str,
        key: str,
        partition_key: str,
        operations: list[PatchOperation],
    ) -> dict[str, Any]:
        _check_collection(collection)
        slot = (str(partition_key), str(key))
        current = self._collections[collection].get(slot)
        if current is None:
            raise NotFoundError(collection, key, partition_key)
        patched = apply_patch(current, operations)
        self._collections[collection][slot] = patched
        return copy.deepcopy(patched)

    def create(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        _check_collection(collection)
        slot = (partition_key_for(collection, document), _document_id(collection, document))
        if slot in self._collections[collection]:
            raise StoreConflictError(f"{collection}: document {slot[1]!r} already exists")
        self._collections[collection][slot] = copy.deepcopy(document)
        return copy.deepcopy(document)

    def replace(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        _check_collection(collection)
        slot = (partition_key_for(collection, document), _document_id(collection, document))
        if slot not in self._collections[collection]:
            raise NotFoundError(collection, slot[1], slot[0])
        self._collections[collection][slot] = copy.deepcopy(document)
        return copy.deepcopy(document)

    def count(self, collection: str) -> int:
        _check_collection(collection)
        return len(self._collections[collection])


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection      TEXT NOT NULL,
    partition_key   TEXT NOT NULL,
    id              TEXT NOT NULL,
    body            TEXT NOT NULL,              -- JSON object
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (collection, partition_key, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);
"""


def _raise_store_error(exc: sqlite3.OperationalError) -> None:
    """Re-raise lock contention as retryable; anything else unchanged."""
    message = str(exc).lower()
    if "locked" in message or "busy" in message:
        raise ThrottledError(str(exc)) from exc
    raise exc


class SqliteDocumentStore:
    """Document store backed by a single SQLite table.

    Each method opens and closes its own connection, so instances hold no
    connection state and can be shared freely.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _load(row: sqlite3.Row) -> dict[str, Any]:
        return json.loads(row["body"])

    @staticmethod
    def _dump(document: dict[str, Any]) -> str:
        return json.dumps(document, default=_json_default)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, collection: str, key: str, partition_key: str) -> dict[str, Any]:
        _check_collection(collection)
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND partition_key = ? AND id = ?",
                (collection, str(partition_key), str(key)),
            ).fetchone()
        except sqlite3.OperationalError as exc:
            _raise_store_error(exc)
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(collection, key, partition_key)
        return self._load(row)

    def query(
        self,
        collection: str,
        *,
        partition_key: Optional[str] = None,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Iterator[dict[str, Any]]:
        _check_collection(collection)
        sql = "SELECT body FROM documents WHERE collection = ?"
        params: list[Any] = [collection]
        if partition_key is not None:
            sql += " AND partition_key = ?"
            params.append(str(partition_key))
        if order_by:
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY json_extract(body, ?) {direction}, rowid"
            params.append(f"$.{order_by}")
        else:
            sql += " ORDER BY rowid"
        return self._iter_rows(sql, params, where, limit)

    def _iter_rows(
        self,
        sql: str,
        params: list[Any],
        where: Optional[Predicate],
        limit: Optional[int],
    ) -> Iterator[dict[str, Any]]:
        conn = self._get_conn()
        try:
            try:
                cursor = conn.execute(sql, params)
            except sqlite3.OperationalError as exc:
                _raise_store_error(exc)
            yielded = 0
            for row in cursor:
                if limit is not None and yielded >= limit:
                    return
                doc = self._load(row)
                if where is not None and not where(doc):
                    continue
                yielded += 1
                yield doc
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def patch(
        self,
        collection: str,
        key: str,
        partition_key: str,
        operations: list[PatchOperation],
    ) -> dict[str, Any]:
        _check_collection(collection)
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND partition_key = ? AND id = ?",
                (collection, str(partition_key), str(key)),
            ).fetchone()
            if row is None:
                conn.rollback()
                raise NotFoundError(collection, key, partition_key)
            patched = apply_patch(self._load(row), operations)
            conn.execute(
                """UPDATE documents SET body = ?, updated_at = ?
                   WHERE collection = ? AND partition_key = ? AND id = ?""",
                (self._dump(patched), now_iso(), collection, str(partition_key), str(key)),
            )
            conn.commit()
            return patched
        except sqlite3.OperationalError as exc:
            conn.rollback()
            _raise_store_error(exc)
        except StoreConflictError:
            conn.rollback()
            raise
        finally:
            conn.close()

    def create(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        _check_collection(collection)
        partition = partition_key_for(collection, document)
        doc_id = _document_id(collection, document)
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO documents (collection, partition_key, id, body, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (collection, partition, doc_id, self._dump(document), now_iso()),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise StoreConflictError(f"{collection}: document {doc_id!r} already exists") from exc
        except sqlite3.OperationalError as exc:
            _raise_store_error(exc)
        finally:
            conn.close()
        return copy.deepcopy(document)

    def replace(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        _check_collection(collection)
        partition = partition_key_for(collection, document)
        doc_id = _document_id(collection, document)
        conn = self._get_conn()
        try:
            result = conn.execute(
                """UPDATE documents SET body = ?, updated_at = ?
                   WHERE collection = ? AND partition_key = ? AND id = ?""",
                (self._dump(document), now_iso(), collection, partition, doc_id),
            )
            if result.rowcount == 0:
                raise NotFoundError(collection, doc_id, partition)
            conn.commit()
        except sqlite3.OperationalError as exc:
            _raise_store_error(exc)
        finally:
            conn.close()
        return copy.deepcopy(document)

    def count(self, collection: str) -> int:
        _check_collection(collection)
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
            ).fetchone()
            return row[0]
        finally:
            conn.close()
