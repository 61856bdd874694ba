"""
In-memory document store for running FSM workloads.

Workloads talk to a :class:`Database` handle and index it by collection name,
the same way they would talk to a real document database::

    db = Database()
    db["update_inc"].insert({"_id": "update_inc", "t0": 0})
    res = db["update_inc"].update({"_id": "update_inc"}, {"$inc": {"t0": 1}})
    assert (res.n_matched, res.n_modified) == (1, 1)

Two concurrency granularities are provided:

* :class:`InMemoryCollection` gives document-level concurrency control.  Each
  update runs under the target document's own lock, so a well-formed query
  always finds the live document and concurrent writers never lose an
  increment.

* :class:`YieldingCollection` models coarser, collection-level locking where
  an update yields the lock between locating the document and writing it.
  If another writer changed the document during the yield, the query is
  invalidated and the update matches nothing, exactly like a storage engine
  that drops a plan whose position was invalidated.

Either can be created ``capped=True``, in which case any write that changes
the shape of a document (adds a field or changes a value's type) is rejected
with :class:`CappedSizeChangeError`.

Only the operations workloads need are supported: ``_id``/field equality
queries and the ``$inc`` update operator.
"""

from __future__ import annotations

import copy
import itertools
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

_MISSING = object()


class StoreError(Exception):
    """Base class for errors raised by a store operation."""


class DuplicateKeyError(StoreError):
    """An insert used an ``_id`` that already exists in the collection."""


class CappedSizeChangeError(StoreError):
    """A write would change the size of a document in a capped collection."""


class UnsupportedUpdateError(StoreError):
    """The update document uses an operator this store does not implement."""


class UnsupportedQueryError(StoreError):
    """The query uses a predicate this store does not implement."""


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a conditional write.

    Attributes:
        n_matched: Number of documents that satisfied the query.
        n_modified: Number of documents the update actually changed.
        n_upserted: Number of documents inserted because nothing matched.
        upserted_id: ``_id`` of the upserted document, if any.
    """

    n_matched: int = 0
    n_modified: int = 0
    n_upserted: int = 0
    upserted_id: Any = None


def matches(doc: dict[str, Any], query: dict[str, Any] | None) -> bool:
    """Return True if *doc* satisfies the equality *query*."""
    if not query:
        return True
    return all(doc.get(key, _MISSING) == value for key, value in query.items())


def apply_update(doc: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *doc* with *update* applied.

    Raises:
        UnsupportedUpdateError: If *update* uses anything other than ``$inc``
            or increments by a non-numeric amount.
    """
    unsupported = sorted(op for op in update if op != "$inc")
    if unsupported:
        raise UnsupportedUpdateError(f"Unsupported update operator(s): {', '.join(unsupported)}")
    new_doc = dict(doc)
    for field_name, amount in update.get("$inc", {}).items():
        if field_name == "_id":
            raise UnsupportedUpdateError("Cannot modify the immutable field '_id'")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise UnsupportedUpdateError(f"Cannot increment {field_name!r} by non-numeric {amount!r}")
        current = new_doc.get(field_name, 0)
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            raise UnsupportedUpdateError(f"Cannot apply $inc to non-numeric field {field_name!r}")
        new_doc[field_name] = current + amount
    return new_doc


def document_shape(doc: dict[str, Any]) -> tuple[tuple[str, str], ...]:
    """Field names and value types of *doc*; a stand-in for its stored size."""
    return tuple(sorted((key, type(value).__name__) for key, value in doc.items()))


def _upsert_document(query: dict[str, Any] | None, update: dict[str, Any]) -> dict[str, Any]:
    base = dict(query or {})
    return apply_update(base, update)


class Collection:
    """A named set of documents keyed by ``_id``.

    Subclasses decide how :meth:`update` serializes against concurrent
    writers and advertise it through ``document_level_concurrency``.
    """

    document_level_concurrency = True

    def __init__(self, name: str, *, capped: bool = False):
        self.name = name
        self.capped = capped
        self._docs: dict[Any, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def insert(self, doc: dict[str, Any]) -> Any:
        """Insert a copy of *doc* and return its ``_id``.

        A missing ``_id`` is filled in with a generated ``<collection>-<n>`` id.
        """
        stored = copy.deepcopy(doc)
        with self._lock:
            if "_id" not in stored:
                stored["_id"] = f"{self.name}-{next(self._ids)}"
            doc_id = stored["_id"]
            if doc_id in self._docs:
                raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} _id: {doc_id!r}")
            self._store_new(doc_id, stored)
        return doc_id

    def find(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Return copies of the documents matching *query*, in insertion order."""
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs.values() if matches(doc, query)]

    def find_one(self, query: dict[str, Any] | None = None) -> dict[str, Any] | None:
        docs = self.find(query)
        return docs[0] if docs else None

    def count(self, query: dict[str, Any] | None = None) -> int:
        with self._lock:
            return sum(1 for doc in self._docs.values() if matches(doc, query))

    def drop(self) -> None:
        with self._lock:
            self._docs.clear()

    def update(self, query: dict[str, Any], update: dict[str, Any], *, upsert: bool = False) -> WriteResult:
        """Apply *update* to the first document matching *query*."""
        raise NotImplementedError

    def _store_new(self, doc_id: Any, doc: dict[str, Any]) -> None:
        self._docs[doc_id] = doc

    def _check_capped(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        if self.capped and document_shape(old) != document_shape(new):
            added = sorted(set(new) - set(old))
            detail = f"new field(s) {', '.join(added)}" if added else "a value type change"
            raise CappedSizeChangeError(
                f"Cannot change the size of a document in capped collection {self.name!r} ({detail})"
            )

    def _upsert(self, query: dict[str, Any], update: dict[str, Any]) -> WriteResult:
        doc = _upsert_document(query, update)
        doc_id = self.insert(doc)
        return WriteResult(n_matched=0, n_modified=0, n_upserted=1, upserted_id=doc_id)

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r}, capped={self.capped})"


class InMemoryCollection(Collection):
    """Collection with document-level concurrency control.

    Writers to different documents proceed in parallel; writers to the same
    document are serialized on that document's lock.  The document is
    mutated in place so a concurrent :meth:`find` sees either the old or the
    new value, never a partial update.
    """

    document_level_concurrency = True

    def __init__(self, name: str, *, capped: bool = False):
        super().__init__(name, capped=capped)
        self._doc_locks: dict[Any, threading.Lock] = {}

    def _store_new(self, doc_id: Any, doc: dict[str, Any]) -> None:
        super()._store_new(doc_id, doc)
        self._doc_locks[doc_id] = threading.Lock()

    def drop(self) -> None:
        with self._lock:
            self._docs.clear()
            self._doc_locks.clear()

    def update(self, query: dict[str, Any], update: dict[str, Any], *, upsert: bool = False) -> WriteResult:
        with self._lock:
            doc_id = next((key for key, doc in self._docs.items() if matches(doc, query)), _MISSING)
            doc_lock = self._doc_locks.get(doc_id)
        if doc_id is _MISSING or doc_lock is None:
            if upsert:
                return self._upsert(query, update)
            return WriteResult()

        with doc_lock:
            with self._lock:
                doc = self._docs.get(doc_id)
                current_lock = self._doc_locks.get(doc_id)
            if doc is None or current_lock is not doc_lock or not matches(doc, query):
                # The document was dropped or replaced before we got its lock.
                return WriteResult()
            new_doc = apply_update(doc, update)
            self._check_capped(doc, new_doc)
            if new_doc == doc:
                return WriteResult(n_matched=1, n_modified=0)
            with self._lock:
                doc.update(new_doc)
            return WriteResult(n_matched=1, n_modified=1)


class YieldingCollection(Collection):
    """Collection-level locking that yields between query and write.

    Args:
        name: Collection name.
        capped: Reject writes that change a document's shape.
        yield_probability: Chance that an update sleeps for ``yield_delay``
            seconds while the lock is released.  The lock is always released
            between the scan and the write, so other threads may run even
            when no sleep happens.
        yield_delay: Length of the sleep when it happens.
        rng: Random source for the yield decision.
    """

    document_level_concurrency = False

    def __init__(
        self,
        name: str,
        *,
        capped: bool = False,
        yield_probability: float = 0.5,
        yield_delay: float = 0.0005,
        rng: random.Random | None = None,
    ):
        super().__init__(name, capped=capped)
        if not 0.0 <= yield_probability <= 1.0:
            raise ValueError(f"yield_probability must be between 0 and 1, got {yield_probability}")
        self.yield_probability = yield_probability
        self.yield_delay = yield_delay
        self._rng = rng or random.Random()
        self._versions: dict[Any, int] = {}
        self.invalidations = 0

    def _store_new(self, doc_id: Any, doc: dict[str, Any]) -> None:
        super()._store_new(doc_id, doc)
        self._versions[doc_id] = 0

    def drop(self) -> None:
        with self._lock:
            self._docs.clear()
            self._versions.clear()

    def _yield(self) -> None:
        if self._rng.random() < self.yield_probability:
            time.sleep(self.yield_delay)
        else:
            time.sleep(0)

    def update(self, query: dict[str, Any], update: dict[str, Any], *, upsert: bool = False) -> WriteResult:
        with self._lock:
            doc_id = next((key for key, doc in self._docs.items() if matches(doc, query)), _MISSING)
            version = self._versions.get(doc_id)
        if doc_id is _MISSING:
            if upsert:
                return self._upsert(query, update)
            return WriteResult()

        self._yield()

        with self._lock:
            doc = self._docs.get(doc_id)
            if doc is None or self._versions.get(doc_id) != version:
                # Another writer moved the document while we yielded; the
                # query position is gone and the document is not revisited.
                self.invalidations += 1
                return WriteResult()
            new_doc = apply_update(doc, update)
            self._check_capped(doc, new_doc)
            if new_doc == doc:
                return WriteResult(n_matched=1, n_modified=0)
            doc.update(new_doc)
            self._versions[doc_id] = version + 1
            return WriteResult(n_matched=1, n_modified=1)


class Database:
    """A named group of collections, created on first access.

    Args:
        name: Database name.
        collection_factory: Callable building a collection from its name and
            ``collection_options``.  Defaults to :class:`InMemoryCollection`.
        collection_options: Extra keyword arguments for every new collection
            (e.g. ``capped=True``).
    """

    def __init__(
        self,
        name: str = "test",
        *,
        collection_factory: Callable[..., Collection] = InMemoryCollection,
        **collection_options: Any,
    ):
        self.name = name
        self._factory = collection_factory
        self._options = collection_options
        self._collections: dict[str, Collection] = {}
        self._lock = threading.Lock()

    def __getitem__(self, coll_name: str) -> Collection:
        with self._lock:
            coll = self._collections.get(coll_name)
            if coll is None:
                coll = self._factory(coll_name, **self._options)
                self._collections[coll_name] = coll
            return coll

    def __contains__(self, coll_name: str) -> bool:
        with self._lock:
            return coll_name in self._collections

    def collection_names(self) -> list[str]:
        with self._lock:
            return sorted(self._collections)

    def drop_collection(self, coll_name: str) -> None:
        with self._lock:
            coll = self._collections.pop(coll_name, None)
        if coll is not None:
            coll.drop()

    def __repr__(self):
        return f"Database({self.name!r}, collections={self.collection_names()!r})"
