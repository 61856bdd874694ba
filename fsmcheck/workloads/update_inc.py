"""
update_inc: concurrent ``$inc`` on one shared document.

Setup inserts a single document.  Each worker repeatedly increments its
own field of that document and reads the document back, checking that the
field equals the number of increments the worker saw land.  Lost or
duplicated increments show up as a mismatch in ``find``.

On stores without document-level concurrency control, an update can fail
to find the document because a concurrent writer invalidated its query
while it yielded.  Those updates match nothing and are simply not counted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fsmcheck.workload import SetupContext, WorkerContext, WorkloadConfig

# The workload name doubles as the shared document's _id; it is assumed unique.
WORKLOAD_ID = "update_inc"


def field_name(tid: int) -> str:
    """Field of the shared document owned by worker *tid*."""
    return f"t{tid}"


@dataclass
class UpdateIncData:
    """Worker-local ledger of increments that landed on the shared document.

    Attributes:
        id: ``_id`` of the shared document.
        field_name: This worker's field; fixed once ``init`` has run.
        count: Increments this worker saw match the shared document.
        misses: Increments that matched nothing (weak concurrency only).
    """

    id: str = WORKLOAD_ID
    field_name: str = ""
    count: int = 0
    misses: int = 0

    def update_argument(self) -> dict[str, dict[str, int]]:
        return {"$inc": {self.field_name: 1}}


def init(ctx: WorkerContext, db: Any, coll_name: str) -> None:
    ctx.data.field_name = field_name(ctx.tid)
    ctx.data.count = 0
    ctx.data.misses = 0


def update(ctx: WorkerContext, db: Any, coll_name: str) -> None:
    data: UpdateIncData = ctx.data
    asserts = ctx.asserts

    res = db[coll_name].update({"_id": data.id}, data.update_argument(), upsert=False)
    asserts.always.eq(0, res.n_upserted, repr(res))

    if ctx.cluster.document_level_concurrency:
        # Conflicting writers are retried by the store, so the document is
        # always found.
        asserts.when_own_coll.eq(1, res.n_matched, repr(res))
        asserts.when_own_coll.eq(1, res.n_modified, repr(res))
    else:
        # A concurrent update during a yield can invalidate the query, in
        # which case the document is not matched at all.
        asserts.when_own_coll.contains(res.n_matched, (0, 1), repr(res))
        asserts.when_own_coll.contains(res.n_modified, (0, 1), repr(res))

    # $inc always modifies what it matches.
    asserts.always.eq(res.n_matched, res.n_modified, repr(res))

    if res.n_matched >= 1:
        data.count += 1
    else:
        data.misses += 1


def find(ctx: WorkerContext, db: Any, coll_name: str) -> None:
    data: UpdateIncData = ctx.data
    asserts = ctx.asserts

    docs = db[coll_name].find()
    asserts.when_own_coll.eq(1, len(docs), repr(docs))

    def check_own_field() -> None:
        doc = docs[0]
        if data.field_name in doc:
            asserts.when_own_coll.eq(data.count, doc[data.field_name], f"{data.field_name} in {doc!r}")
        else:
            # Never updated yet, so the field does not exist.
            asserts.when_own_coll.eq(0, data.count, f"{data.field_name} missing from {doc!r}")

    asserts.when_own_coll(check_own_field)


def setup(ctx: SetupContext, db: Any, coll_name: str) -> None:
    doc: dict[str, Any] = {"_id": ctx.data.id}
    # Declare every field up front so the document never grows; capped
    # collections reject size-changing writes.
    for tid in range(ctx.thread_count):
        doc[field_name(tid)] = 0
    db[coll_name].insert(doc)


STATES = {"init": init, "update": update, "find": find}

TRANSITIONS = {
    "init": {"update": 1},
    "update": {"find": 1},
    "find": {"update": 1},
}


def make_config(thread_count: int = 10, iterations: int = 20) -> WorkloadConfig:
    return WorkloadConfig(
        name=WORKLOAD_ID,
        states=dict(STATES),
        transitions={state: dict(targets) for state, targets in TRANSITIONS.items()},
        data=UpdateIncData,
        thread_count=thread_count,
        iterations=iterations,
        start_state="init",
        setup=setup,
    )


config = make_config()
