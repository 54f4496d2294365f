"""
Document store for the project management API

Collections are addressed by name ("project", "project_member", "notification", ...)
and documents are plain dicts keyed by a string ``_id``. Queries are equality
filters; a value of ``{"$in": [...]}`` matches any of the listed values.

Two backends share the same contract:

* ``MongoStore`` talks to MongoDB through pymongo and relies on unique compound
  indexes for (entity, user) membership keys.
* ``MemoryStore`` keeps everything in process behind a re-entrant lock. It is used
  by the test-suite and for local runs without a database.
"""
from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

Document = Dict[str, Any]
Query = Dict[str, Any]
Sort = Sequence[Tuple[str, int]]
InsertListener = Callable[[Document], None]

# Fields that must be unique together within a collection.
UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    "user": ("email",),
    "session": ("token",),
    "project_member": ("project_id", "user_id"),
    "team_member": ("team_id", "user_id"),
}


class StoreError(Exception):
    """Any failure raised by the underlying store."""


class UniqueViolation(StoreError):
    """An insert or update collided with a unique key."""

    def __init__(self, collection: str, detail: str = "") -> None:
        super().__init__(f"unique key violated on {collection}: {detail}".rstrip(": "))
        self.collection = collection


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize(doc: Optional[Document]) -> Optional[Document]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            if v.tzinfo is None:
                v = v.replace(tzinfo=timezone.utc)
            d[k] = v.astimezone(timezone.utc).isoformat()
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


class Store(ABC):
    """Contract every backend implements."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[InsertListener]] = defaultdict(list)

    def on_insert(self, collection: str, listener: InsertListener) -> None:
        """Call ``listener`` with every document inserted into ``collection``."""
        self._listeners[collection].append(listener)

    def _emit(self, collection: str, doc: Document) -> None:
        for listener in list(self._listeners.get(collection, ())):
            try:
                listener(copy.deepcopy(doc))
            except Exception:
                logger.exception("Insert listener failed for %s", collection)

    @abstractmethod
    def insert_one(self, collection: str, doc: Document) -> Document:
        ...

    @abstractmethod
    def find_one(self, collection: str, query: Query) -> Optional[Document]:
        ...

    @abstractmethod
    def find(
        self, collection: str, query: Query, sort: Optional[Sort] = None, limit: int = 0
    ) -> List[Document]:
        ...

    @abstractmethod
    def update_one(self, collection: str, query: Query, values: Document) -> int:
        ...

    @abstractmethod
    def update_many(self, collection: str, query: Query, values: Document) -> int:
        ...

    @abstractmethod
    def delete_one(self, collection: str, query: Query) -> int:
        ...

    @abstractmethod
    def delete_many(self, collection: str, query: Query) -> int:
        ...

    @abstractmethod
    def transaction(self) -> Iterator[None]:
        """Context manager grouping reads and writes into one unit."""

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` inside a transaction and return its result.

        Backends that can lose a transaction to a concurrent writer call ``fn`` again,
        so ``fn`` must not keep state between attempts.
        """
        with self.transaction():
            return fn()


# -----------------------------
# In-process backend
# -----------------------------

def _matches(doc: Document, query: Query) -> bool:
    for key, expected in query.items():
        value = doc.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if value not in expected["$in"]:
                return False
        elif value != expected:
            return False
    return True


class MemoryStore(Store):
    def __init__(self, unique_keys: Optional[Dict[str, Tuple[str, ...]]] = None) -> None:
        super().__init__()
        self._unique_keys = dict(UNIQUE_KEYS if unique_keys is None else unique_keys)
        self._collections: Dict[str, Dict[str, Document]] = defaultdict(dict)
        self._lock = threading.RLock()
        # One entry per open transaction: collection name -> contents before its first write.
        self._undo: List[Dict[str, Dict[str, Document]]] = []

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            saved: Dict[str, Dict[str, Document]] = {}
            self._undo.append(saved)
            try:
                yield
            except BaseException:
                for collection, docs in saved.items():
                    self._collections[collection] = docs
                raise
            finally:
                self._undo.pop()

    def _touch(self, collection: str) -> None:
        """Save ``collection`` for rollback before an open transaction first writes to it."""
        for saved in self._undo:
            if collection not in saved:
                saved[collection] = copy.deepcopy(self._collections[collection])

    def _check_unique(self, collection: str, doc: Document, replacing: bool = False) -> None:
        docs = self._collections[collection]
        if not replacing and doc["_id"] in docs:
            raise UniqueViolation(collection, "_id")
        fields = self._unique_keys.get(collection)
        if not fields:
            return
        key = tuple(doc.get(f) for f in fields)
        for other in docs.values():
            if other["_id"] != doc["_id"] and tuple(other.get(f) for f in fields) == key:
                raise UniqueViolation(collection, ", ".join(fields))

    def insert_one(self, collection: str, doc: Document) -> Document:
        with self._lock:
            stored = copy.deepcopy(doc)
            stored.setdefault("_id", new_id())
            self._check_unique(collection, stored)
            self._touch(collection)
            self._collections[collection][stored["_id"]] = stored
            inserted = copy.deepcopy(stored)
        self._emit(collection, inserted)
        return inserted

    def find_one(self, collection: str, query: Query) -> Optional[Document]:
        with self._lock:
            for doc in self._collections[collection].values():
                if _matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(
        self, collection: str, query: Query, sort: Optional[Sort] = None, limit: int = 0
    ) -> List[Document]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._collections[collection].values() if _matches(d, query)]
        for key, direction in reversed(list(sort or ())):
            docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        if limit:
            docs = docs[:limit]
        return docs

    def _update(self, collection: str, query: Query, values: Document, many: bool) -> int:
        with self._lock:
            count = 0
            for doc in self._collections[collection].values():
                if not _matches(doc, query):
                    continue
                updated = {**doc, **copy.deepcopy(values)}
                self._check_unique(collection, updated, replacing=True)
                self._touch(collection)
                doc.update(updated)
                count += 1
                if not many:
                    break
            return count

    def update_one(self, collection: str, query: Query, values: Document) -> int:
        return self._update(collection, query, values, many=False)

    def update_many(self, collection: str, query: Query, values: Document) -> int:
        return self._update(collection, query, values, many=True)

    def _delete(self, collection: str, query: Query, many: bool) -> int:
        with self._lock:
            docs = self._collections[collection]
            doomed = [key for key, doc in docs.items() if _matches(doc, query)]
            if not many:
                doomed = doomed[:1]
            if doomed:
                self._touch(collection)
            for key in doomed:
                del docs[key]
            return len(doomed)

    def delete_one(self, collection: str, query: Query) -> int:
        return self._delete(collection, query, many=False)

    def delete_many(self, collection: str, query: Query) -> int:
        return self._delete(collection, query, many=True)


# -----------------------------
# MongoDB backend
# -----------------------------

class MongoStore(Store):
    def __init__(
        self,
        database_url: str,
        database_name: str,
        use_transactions: bool = False,
        client: Optional[MongoClient] = None,
    ) -> None:
        super().__init__()
        self.client = client or MongoClient(database_url, tz_aware=True)
        self.db = self.client[database_name]
        self.use_transactions = use_transactions
        self._local = threading.local()

    def ensure_indexes(self) -> None:
        with self._errors("indexes"):
            for collection, fields in UNIQUE_KEYS.items():
                self.db[collection].create_index([(f, ASCENDING) for f in fields], unique=True)
            self.db["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
            self.db["activity"].create_index([("project_id", ASCENDING), ("created_at", DESCENDING)])

    def _session(self):
        return getattr(self._local, "session", None)

    @contextmanager
    def _errors(self, collection: str) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as exc:
            raise UniqueViolation(collection, str(exc)) from exc
        except PyMongoError as exc:
            # Left intact so ``with_transaction`` can see the label and retry.
            if self._session() is not None and exc.has_error_label("TransientTransactionError"):
                raise
            raise StoreError(str(exc)) from exc

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if not self.use_transactions or self._session() is not None:
            yield
            return
        with self._errors("transaction"):
            with self.client.start_session() as session:
                with session.start_transaction():
                    self._local.session = session
                    try:
                        yield
                    finally:
                        self._local.session = None

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` through ``ClientSession.with_transaction``.

        Concurrent writers to the same key abort each other with a transient write
        conflict; the losing attempt is rerun, and the rerun sees the winner's row
        through the unique index (``UniqueViolation``).
        """
        if not self.use_transactions or self._session() is not None:
            return fn()

        def callback(session):
            self._local.session = session
            try:
                return fn()
            finally:
                self._local.session = None

        with self._errors("transaction"):
            with self.client.start_session() as session:
                return session.with_transaction(callback)

    def insert_one(self, collection: str, doc: Document) -> Document:
        stored = {**doc}
        stored.setdefault("_id", new_id())
        with self._errors(collection):
            self.db[collection].insert_one(stored, session=self._session())
        self._emit(collection, stored)
        return stored

    def find_one(self, collection: str, query: Query) -> Optional[Document]:
        with self._errors(collection):
            return self.db[collection].find_one(query, session=self._session())

    def find(
        self, collection: str, query: Query, sort: Optional[Sort] = None, limit: int = 0
    ) -> List[Document]:
        with self._errors(collection):
            cursor = self.db[collection].find(query, sort=list(sort) if sort else None, session=self._session())
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

    def update_one(self, collection: str, query: Query, values: Document) -> int:
        with self._errors(collection):
            res = self.db[collection].update_one(query, {"$set": values}, session=self._session())
        return res.matched_count

    def update_many(self, collection: str, query: Query, values: Document) -> int:
        with self._errors(collection):
            res = self.db[collection].update_many(query, {"$set": values}, session=self._session())
        return res.matched_count

    def delete_one(self, collection: str, query: Query) -> int:
        with self._errors(collection):
            res = self.db[collection].delete_one(query, session=self._session())
        return res.deleted_count

    def delete_many(self, collection: str, query: Query) -> int:
        with self._errors(collection):
            res = self.db[collection].delete_many(query, session=self._session())
        return res.deleted_count


def create_store(settings: Settings) -> Store:
    if settings.store_backend == "memory":
        return MemoryStore()
    if settings.store_backend == "mongo":
        if not settings.database_url:
            raise ValueError("DATABASE_URL is required for the mongo store backend")
        store = MongoStore(
            settings.database_url,
            settings.database_name,
            use_transactions=settings.mongo_transactions,
        )
        store.ensure_indexes()
        return store
    raise ValueError(f"Unknown store backend: {settings.store_backend}")
