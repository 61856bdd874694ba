"""
update_inc across store topologies
==================================

Every worker owns one field of a single shared document and repeatedly
``$inc``-s it, then reads the document back and checks that the field
equals the number of increments it saw land.

Scenario
--------
A document ``{_id: "update_inc", t0: 0, t1: 0, ...}`` and one worker per
field.  Each worker loops::

    db.update_inc.update({_id: "update_inc"}, {$inc: {t<tid>: 1}})
    db.update_inc.find()          # t<tid> == number of matched updates

With document-level concurrency control the store serializes and
retries conflicting writers, so every update matches.  With coarse
collection-level locking a concurrent write can invalidate an update's
query while it yields, and the update matches nothing::

    Worker A:  scan -> found doc (version 3), yield
    Worker B:  scan -> found doc (version 3), write  -> version 4
    Worker A:  resume, version changed -> n_matched = 0

The workload tolerates that only when told the topology is weak.

This example shows:

1. **Deterministic schedule** against the in-memory store
2. **Topology mismatch** caught, with a readable trace
3. **SQLite store** via SQLAlchemy

Running::

    pip install -e '.[sql]'
    python examples/update_inc_topologies.py
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from fsmcheck._trace_format import TraceRecorder
from fsmcheck.asserts import WorkloadAssertionError
from fsmcheck.common import Schedule, Step
from fsmcheck.runner import WorkloadRunner, run_workload
from fsmcheck.store import Database, YieldingCollection
from fsmcheck.workload import ClusterInfo
from fsmcheck.workloads import get_workload

_SEP = "=" * 70


# ============================================================================
# Demo 1: Exact interleaving with a Schedule
# ============================================================================
#
# Each worker runs exactly the states the schedule names for it, one step
# at a time, in schedule order.


def demo_schedule() -> None:
    """Run a hand-written interleaving and show each worker's count."""
    print(_SEP)
    print("Demo 1: update_inc  (Schedule, deterministic)")
    print(_SEP)
    print()

    schedule = Schedule(
        [
            Step("worker-0", "init"),
            Step("worker-1", "init"),
            Step("worker-0", "update"),
            Step("worker-1", "update"),
            Step("worker-1", "find"),
            Step("worker-0", "find"),
            Step("worker-0", "update"),
            Step("worker-0", "find"),
        ]
    )
    db = Database()
    result = run_workload(get_workload("update_inc", thread_count=2), db, schedule=schedule)

    for w in result.workers:
        print(f"  {w.name}: count={w.data.count}")
    print(f"  document: {db['update_inc'].find_one()}")
    print()


# ============================================================================
# Demo 2: The workload must be told the truth about the topology
# ============================================================================
#
# YieldingCollection always yields between scan and write, so concurrent
# updates regularly invalidate each other.  Run honestly, the workload
# counts the misses.  Claim document-level concurrency instead, and the
# first unmatched update is reported as an invariant violation.


def demo_topology_mismatch() -> None:
    """Show misses tolerated on a weak topology, then caught when misdeclared."""
    print(_SEP)
    print("Demo 2: update_inc on collection-level locking")
    print(_SEP)
    print()

    config = get_workload("update_inc", thread_count=8, iterations=41)

    db = Database(collection_factory=YieldingCollection, yield_probability=1.0)
    result = run_workload(config, db, seed=1)
    misses = sum(w.data.misses for w in result.workers)
    print(f"  honest run    : {result.num_steps} state executions, {misses} unmatched update(s) tolerated")

    db = Database(collection_factory=YieldingCollection, yield_probability=1.0)
    runner = WorkloadRunner(
        config,
        db,
        cluster=ClusterInfo(document_level_concurrency=True, topology="misdeclared"),
        seed=1,
        recorder=TraceRecorder(),
    )
    try:
        runner.run()
    except WorkloadAssertionError as e:
        print(f"  misdeclared   : FAILED ({e})")
        print()
        for line in (runner.explanation or "").splitlines():
            print("  " + line)
    else:
        print("  misdeclared   : no update was invalidated this time")
    print()


# ============================================================================
# Demo 3: SQLite through SQLAlchemy
# ============================================================================
#
# The SQL store executes $inc as a single UPDATE ... SET body = json_set(...),
# so the database applies it atomically per row.


def demo_sql_store() -> None:
    """Run update_inc against a SQLite file."""
    from fsmcheck.sql_store import SqlDatabase

    print(_SEP)
    print("Demo 3: update_inc on SQLite")
    print(_SEP)
    print()

    with tempfile.TemporaryDirectory() as tmp:
        db = SqlDatabase(f"sqlite:///{Path(tmp) / 'fsmcheck.db'}")
        try:
            result = run_workload(get_workload("update_inc", thread_count=4, iterations=21), db, seed=3)
            print(f"  {result.num_steps} state executions in {result.elapsed:.3f}s")
            print(f"  document: {db['update_inc'].find_one()}")
        finally:
            db.dispose()
    print()


# ============================================================================
# Entry point
# ============================================================================

if __name__ == "__main__":
    demo_schedule()
    demo_topology_mismatch()
    demo_sql_store()
