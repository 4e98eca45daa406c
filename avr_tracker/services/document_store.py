"""Document store backed by one SQLAlchemy table.

Documents are JSON objects addressed by a collection path and an id.
Queries are a collection plus filters and an optional ordering. ``listen``
registers a standing query: the full current result set is delivered once
straight away and again after every committed write to that collection,
until the registration is removed.

Listener callbacks run on the thread that performed the write (or called
``listen``). Consumers that own state on an event loop have to marshal the
delivery themselves.
"""
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from avr_tracker.core.database import dump_json
from avr_tracker.core.errors import NotFound, PreconditionFailed, ProviderError, WriteFailure
from avr_tracker.models.document import Document

logger = logging.getLogger(__name__)


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


# use as a value in update_document to remove that field
DELETE_FIELD = _DeleteField()

_MISSING = object()


def server_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def collection_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts)


def _plain(value):
    """Bring a value into the form it has once stored (JSON types only)."""
    if isinstance(value, Enum):
        value = value.value
    return json.loads(dump_json(value))


def _lookup(data: dict, path: str):
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any

    OPS = ("==", "!=", "<", "<=", ">", ">=", "in", "array_contains")

    def __post_init__(self):
        if self.op not in self.OPS:
            raise ValueError(f"Unsupported operator {self.op!r}")

    def matches(self, data: dict) -> bool:
        actual = _lookup(data, self.field)
        if actual is _MISSING:
            return False
        expected = _plain(self.value)
        try:
            if self.op == "==":
                return actual == expected
            if self.op == "!=":
                return actual != expected
            if self.op == "in":
                return actual in expected
            if self.op == "array_contains":
                return isinstance(actual, list) and expected in actual
            if self.op == "<":
                return actual < expected
            if self.op == "<=":
                return actual <= expected
            if self.op == ">":
                return actual > expected
            return actual >= expected
        except TypeError:
            # mixed types never match, same as the hosted stores
            return False


@dataclass(frozen=True)
class Or:
    filters: Tuple[Any, ...]

    def __init__(self, *filters):
        object.__setattr__(self, "filters", tuple(filters))

    def matches(self, data: dict) -> bool:
        return any(f.matches(data) for f in self.filters)


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[Any, ...] = ()
    order_by: Optional[OrderBy] = None
    limit: Optional[int] = None

    def where(self, field_path: str, op: str, value) -> "Query":
        return self.where_filter(FieldFilter(field_path, op, value))

    def where_filter(self, condition) -> "Query":
        return Query(self.collection, self.filters + (condition,), self.order_by, self.limit)

    def order(self, field_path: str, descending: bool = False) -> "Query":
        return Query(self.collection, self.filters, OrderBy(field_path, descending), self.limit)

    def limit_to(self, count: int) -> "Query":
        return Query(self.collection, self.filters, self.order_by, count)

    def matches(self, data: dict) -> bool:
        return all(f.matches(data) for f in self.filters)


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    collection: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"


ListenerCallback = Callable[[Optional[List[DocumentSnapshot]], Optional[Exception]], None]


class ListenerRegistration:
    def __init__(self, store: "DocumentStore", query: Query, callback: ListenerCallback):
        self.query = query
        self._store = store
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def remove(self):
        """Stop deliveries. Safe to call more than once."""
        if self._active:
            self._active = False
            self._store._unregister(self)

    def _deliver(self, documents, error):
        if not self._active:
            return
        try:
            self._callback(documents, error)
        except Exception:
            logger.exception("Listener on %s raised", self.query.collection)


class DocumentStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._lock = threading.RLock()
        self._listeners: List[ListenerRegistration] = []

    # reads

    @contextmanager
    def _session(self, write: bool):
        with self._lock:
            db = self._session_factory()
            try:
                yield db
                if write:
                    db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Document store %s failed: %s", "write" if write else "read", e)
                if write:
                    raise WriteFailure(f"Could not save changes: {e}") from e
                raise ProviderError(f"Could not load data: {e}") from e
            finally:
                db.close()

    def _row(self, db, collection: str, doc_id: str) -> Optional[Document]:
        return db.query(Document).filter(
            Document.collection == collection, Document.doc_id == doc_id
        ).first()

    def get_document(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        with self._session(write=False) as db:
            row = self._row(db, collection, doc_id)
            if row is None:
                return None
            return DocumentSnapshot(row.doc_id, row.collection, dict(row.data or {}))

    def query(self, query: Query) -> List[DocumentSnapshot]:
        with self._session(write=False) as db:
            rows = db.query(Document).filter(Document.collection == query.collection).all()
            documents = [
                DocumentSnapshot(r.doc_id, r.collection, dict(r.data or {}))
                for r in rows
                if query.matches(r.data or {})
            ]

        if query.order_by is not None:
            key = query.order_by.field
            documents = [d for d in documents if _lookup(d.data, key) is not _MISSING]
            documents.sort(key=lambda d: _lookup(d.data, key), reverse=query.order_by.descending)
        if query.limit is not None:
            documents = documents[:query.limit]
        return documents

    # writes

    def set_document(self, collection: str, doc_id: str, data: dict, merge: bool = False):
        payload = _plain(data)
        with self._session(write=True) as db:
            row = self._row(db, collection, doc_id)
            if row is None:
                db.add(Document(collection=collection, doc_id=doc_id, data=payload))
            elif merge:
                merged = dict(row.data or {})
                merged.update(payload)
                row.data = merged
            else:
                row.data = payload
        self._notify(collection)

    def update_document(self, collection: str, doc_id: str, data: dict, precondition: Optional[dict] = None):
        """Merge ``data`` into an existing document. DELETE_FIELD values remove keys.

        With ``precondition`` the write only happens if every listed field
        still holds the given value; the check and the write share one locked
        session, so of two racing conditional writes at most one lands.
        """
        removed = [k for k, v in data.items() if v is DELETE_FIELD]
        payload = _plain({k: v for k, v in data.items() if v is not DELETE_FIELD})
        expected = _plain(precondition or {})
        with self._session(write=True) as db:
            row = self._row(db, collection, doc_id)
            if row is None:
                raise NotFound(f"No document {collection}/{doc_id}")
            for key, value in expected.items():
                actual = _lookup(row.data or {}, key)
                if actual is _MISSING or actual != value:
                    raise PreconditionFailed(f"{collection}/{doc_id}: {key} is no longer {value!r}")
            merged = dict(row.data or {})
            merged.update(payload)
            for key in removed:
                merged.pop(key, None)
            row.data = merged
        self._notify(collection)

    def delete_field(self, collection: str, doc_id: str, field_name: str):
        self.update_document(collection, doc_id, {field_name: DELETE_FIELD})

    def add_document(self, collection: str, data: dict) -> str:
        doc_id = uuid.uuid4().hex[:20]
        self.set_document(collection, doc_id, data)
        return doc_id

    # live queries

    def listen(self, query: Query, callback: ListenerCallback) -> ListenerRegistration:
        registration = ListenerRegistration(self, query, callback)
        with self._lock:
            self._listeners.append(registration)
        logger.debug("Listener added on %s (%d active)", query.collection, self.listener_count())
        self._push(registration)
        return registration

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _unregister(self, registration: ListenerRegistration):
        with self._lock:
            if registration in self._listeners:
                self._listeners.remove(registration)
        logger.debug("Listener removed from %s", registration.query.collection)

    def _push(self, registration: ListenerRegistration):
        try:
            documents = self.query(registration.query)
        except ProviderError as e:
            registration._deliver(None, e)
            return
        registration._deliver(documents, None)

    def _notify(self, collection: str):
        with self._lock:
            interested = [r for r in self._listeners if r.query.collection == collection]
        for registration in interested:
            self._push(registration)
