"""
SQLAlchemy-backed document store.

Documents are stored as JSON in a single ``fsmcheck_documents`` table, one
row per document, keyed by ``(collection, doc_id)``.  ``$inc`` is executed as
one ``UPDATE ... SET body = json_set(body, ...)`` statement, so the database
applies it atomically to the row: the number of matched rows equals the
number of modified rows, and concurrent increments cannot be lost.  The
store therefore advertises document-level concurrency control.

``json_set``/``json_extract`` are the SQLite (JSON1) spellings; the store is
meant for SQLite databases::

    db = SqlDatabase("sqlite:////tmp/fsmcheck.db")
    run_workload(get_workload("update_inc"), db)

An in-memory SQLite URL shares one connection between all threads and
serializes statements on it.
"""

from __future__ import annotations

import contextlib
import json
import threading
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from fsmcheck.store import (
    CappedSizeChangeError,
    DuplicateKeyError,
    UnsupportedQueryError,
    WriteResult,
    apply_update,
    document_shape,
    matches,
)

metadata = MetaData()

documents = Table(
    "fsmcheck_documents",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("collection", String(255), nullable=False),
    Column("doc_id", String(255), nullable=False),
    Column("body", JSON, nullable=False),
    UniqueConstraint("collection", "doc_id", name="uq_fsmcheck_collection_doc_id"),
)


def _encode_id(doc_id: Any) -> str:
    return json.dumps(doc_id, sort_keys=True)


def _json_path(field_name: str) -> str:
    return '$."' + field_name.replace('"', '\\"') + '"'


class SqlCollection:
    """One collection of a :class:`SqlDatabase`.

    Queries must be ``_id`` equality (for updates) or any equality filter
    (for reads, evaluated client-side).
    """

    document_level_concurrency = True

    def __init__(self, database: SqlDatabase, name: str, *, capped: bool = False):
        self._db = database
        self.name = name
        self.capped = capped

    def _where(self, doc_key: str | None = None):
        clauses = [documents.c.collection == self.name]
        if doc_key is not None:
            clauses.append(documents.c.doc_id == doc_key)
        return clauses

    def insert(self, doc: dict[str, Any]) -> Any:
        if "_id" not in doc:
            raise UnsupportedQueryError("SqlCollection.insert requires an explicit _id")
        doc_id = doc["_id"]
        stmt = insert(documents).values(collection=self.name, doc_id=_encode_id(doc_id), body=dict(doc))
        try:
            with self._db.begin() as conn:
                conn.execute(stmt)
        except IntegrityError as e:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} _id: {doc_id!r}") from e
        return doc_id

    def update(self, query: dict[str, Any], update_doc: dict[str, Any], *, upsert: bool = False) -> WriteResult:
        if set(query) != {"_id"}:
            raise UnsupportedQueryError(f"SqlCollection.update only supports _id equality, got {query!r}")
        # Validates the operator and amounts before touching the database.
        apply_update({}, update_doc)
        increments = update_doc.get("$inc", {})
        doc_key = _encode_id(query["_id"])

        if not increments:
            return WriteResult(n_matched=self.count(query), n_modified=0)

        set_args: list[Any] = []
        for field_name, amount in increments.items():
            path = _json_path(field_name)
            set_args.extend([path, func.coalesce(func.json_extract(documents.c.body, path), 0) + amount])
        stmt = update(documents).where(*self._where(doc_key)).values(body=func.json_set(documents.c.body, *set_args))

        with self._db.begin() as conn:
            if self.capped:
                row = conn.execute(select(documents.c.body).where(*self._where(doc_key))).first()
                if row is not None:
                    before = row.body
                    after = apply_update(before, update_doc)
                    if document_shape(before) != document_shape(after):
                        added = sorted(set(after) - set(before))
                        raise CappedSizeChangeError(
                            f"Cannot change the size of a document in capped collection {self.name!r} "
                            f"(new field(s) {', '.join(added)})"
                        )
            matched = conn.execute(stmt).rowcount

        if matched == 0 and upsert:
            doc_id = self.insert(apply_update(dict(query), update_doc))
            return WriteResult(n_upserted=1, upserted_id=doc_id)
        return WriteResult(n_matched=matched, n_modified=matched)

    def find(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        stmt = select(documents.c.body).where(*self._where()).order_by(documents.c.seq)
        with self._db.begin() as conn:
            bodies = [row.body for row in conn.execute(stmt)]
        return [body for body in bodies if matches(body, query)]

    def find_one(self, query: dict[str, Any] | None = None) -> dict[str, Any] | None:
        docs = self.find(query)
        return docs[0] if docs else None

    def count(self, query: dict[str, Any] | None = None) -> int:
        return len(self.find(query))

    def drop(self) -> None:
        with self._db.begin() as conn:
            conn.execute(delete(documents).where(*self._where()))

    def __repr__(self):
        return f"SqlCollection({self.name!r}, capped={self.capped})"


class SqlDatabase:
    """Database handle over a SQLAlchemy engine.

    Args:
        url: SQLAlchemy database URL (SQLite).
        capped: Create every collection capped.
        **engine_kwargs: Passed to :func:`sqlalchemy.create_engine`.
    """

    def __init__(self, url: str, *, capped: bool = False, **engine_kwargs: Any):
        parsed = make_url(url)
        self._in_memory = parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")
        if self._in_memory:
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        self.url = url
        self.engine = create_engine(url, **engine_kwargs)
        self.capped = capped
        self._serial = threading.Lock() if self._in_memory else None
        self._collections: dict[str, SqlCollection] = {}
        self._lock = threading.Lock()
        metadata.create_all(self.engine)

    @contextlib.contextmanager
    def begin(self):
        """Open a transaction, serialized when all threads share one connection."""
        guard = self._serial if self._serial is not None else contextlib.nullcontext()
        with guard:
            with self.engine.begin() as conn:
                yield conn

    def __getitem__(self, coll_name: str) -> SqlCollection:
        with self._lock:
            coll = self._collections.get(coll_name)
            if coll is None:
                coll = SqlCollection(self, coll_name, capped=self.capped)
                self._collections[coll_name] = coll
            return coll

    def collection_names(self) -> list[str]:
        stmt = select(documents.c.collection).distinct().order_by(documents.c.collection)
        with self.begin() as conn:
            return [row.collection for row in conn.execute(stmt)]

    def drop_collection(self, coll_name: str) -> None:
        self[coll_name].drop()

    def dispose(self) -> None:
        self.engine.dispose()

    def __repr__(self):
        return f"SqlDatabase({self.url!r})"
