"""Tests for the update_inc workload's states, setup, and assertion policy."""

import pytest

from fsmcheck.asserts import AssertionPolicy, AssertLevel, WorkloadAssertionError
from fsmcheck.store import CappedSizeChangeError, Database, DuplicateKeyError, WriteResult
from fsmcheck.workload import ClusterInfo, SetupContext, WorkerContext
from fsmcheck.workloads import update_inc
from fsmcheck.workloads.update_inc import UpdateIncData, field_name
from tests.fake_stores import ScriptedDatabase

COLL = "update_inc"


def make_ctx(tid=0, thread_count=2, *, document_level=True, level=AssertLevel.OWN_COLL):
    return WorkerContext(
        tid=tid,
        thread_count=thread_count,
        iterations=20,
        data=UpdateIncData(),
        cluster=ClusterInfo(document_level_concurrency=document_level),
        asserts=AssertionPolicy(level),
    )


def run_setup(db, thread_count=2):
    ctx = SetupContext(data=UpdateIncData(), thread_count=thread_count, iterations=20)
    update_inc.setup(ctx, db, COLL)


# ---------------------------------------------------------------------------
# Setup and init
# ---------------------------------------------------------------------------


def test_setup_predeclares_one_zero_field_per_worker():
    db = Database()
    run_setup(db, thread_count=4)

    docs = db[COLL].find()
    assert docs == [{"_id": "update_inc", "t0": 0, "t1": 0, "t2": 0, "t3": 0}]


def test_setup_failure_is_not_retried():
    db = Database()
    run_setup(db)
    with pytest.raises(DuplicateKeyError):
        run_setup(db)
    assert db[COLL].count() == 1


def test_field_name_mapping():
    assert [field_name(tid) for tid in range(3)] == ["t0", "t1", "t2"]


def test_init_assigns_field_and_resets_count():
    db = Database()
    ctx = make_ctx(tid=7, thread_count=8)
    ctx.data.count = 5
    ctx.data.misses = 2

    update_inc.init(ctx, db, COLL)

    assert ctx.data.field_name == "t7"
    assert ctx.data.count == 0
    assert ctx.data.misses == 0
    assert db.collection_names() == []


# ---------------------------------------------------------------------------
# update / find against a healthy store
# ---------------------------------------------------------------------------


def test_update_find_cycle_count_trace():
    """Worker 0 runs update→find three times; its count and t0 agree after every step."""
    db = Database()
    run_setup(db, thread_count=2)
    ctx = make_ctx(tid=0, thread_count=2)
    update_inc.init(ctx, db, COLL)

    trace = [ctx.data.count]
    for _ in range(3):
        update_inc.update(ctx, db, COLL)
        trace.append(ctx.data.count)
        update_inc.find(ctx, db, COLL)
        trace.append(ctx.data.count)

    assert trace == [0, 1, 1, 2, 2, 3, 3]
    assert db[COLL].find_one({"_id": "update_inc"}) == {"_id": "update_inc", "t0": 3, "t1": 0}


def test_update_only_touches_own_field():
    db = Database()
    run_setup(db, thread_count=3)
    workers = [make_ctx(tid=tid, thread_count=3) for tid in range(3)]
    for ctx in workers:
        update_inc.init(ctx, db, COLL)

    update_inc.update(workers[1], db, COLL)
    update_inc.update(workers[1], db, COLL)
    update_inc.update(workers[2], db, COLL)

    for ctx in workers:
        update_inc.find(ctx, db, COLL)
    assert [ctx.data.count for ctx in workers] == [0, 2, 1]


def test_find_missing_field_requires_zero_count():
    db = Database()
    db[COLL].insert({"_id": "update_inc"})
    ctx = make_ctx()
    update_inc.init(ctx, db, COLL)

    update_inc.find(ctx, db, COLL)

    ctx.data.count = 1
    with pytest.raises(WorkloadAssertionError, match="missing"):
        update_inc.find(ctx, db, COLL)


def test_find_detects_lost_increment():
    db = Database()
    run_setup(db)
    ctx = make_ctx()
    update_inc.init(ctx, db, COLL)
    update_inc.update(ctx, db, COLL)
    ctx.data.count += 1  # believes two increments landed, only one did

    with pytest.raises(WorkloadAssertionError, match=r"\[2\] != \[1\]"):
        update_inc.find(ctx, db, COLL)


def test_find_requires_single_document_when_owning_collection():
    db = Database()
    run_setup(db)
    db[COLL].insert({"_id": "intruder"})
    ctx = make_ctx()
    update_inc.init(ctx, db, COLL)

    with pytest.raises(WorkloadAssertionError):
        update_inc.find(ctx, db, COLL)


def test_find_skips_checks_on_shared_collection():
    db = Database()
    run_setup(db)
    db[COLL].insert({"_id": "other-workload", "t0": 99})
    ctx = make_ctx(level=AssertLevel.ALWAYS)
    update_inc.init(ctx, db, COLL)
    ctx.data.count = 42

    update_inc.find(ctx, db, COLL)


def test_update_without_setup_on_capped_collection_fails():
    """Growing the document is rejected by capped collections, hence setup's pre-declared fields."""
    db = Database(capped=True)
    db[COLL].insert({"_id": "update_inc"})
    ctx = make_ctx()
    update_inc.init(ctx, db, COLL)

    with pytest.raises(CappedSizeChangeError):
        update_inc.update(ctx, db, COLL)


def test_update_after_setup_on_capped_collection_succeeds():
    db = Database(capped=True)
    run_setup(db)
    ctx = make_ctx()
    update_inc.init(ctx, db, COLL)

    update_inc.update(ctx, db, COLL)
    update_inc.find(ctx, db, COLL)
    assert ctx.data.count == 1


# ---------------------------------------------------------------------------
# Topology-aware assertion policy
# ---------------------------------------------------------------------------


def test_weak_topology_tolerates_unmatched_update():
    db = ScriptedDatabase([WriteResult(n_matched=0, n_modified=0)], document_level_concurrency=False)
    run_setup(db)
    ctx = make_ctx(document_level=False)
    update_inc.init(ctx, db, COLL)

    update_inc.update(ctx, db, COLL)
    assert ctx.data.count == 0
    assert ctx.data.misses == 1
    update_inc.find(ctx, db, COLL)

    update_inc.update(ctx, db, COLL)
    assert ctx.data.count == 1
    update_inc.find(ctx, db, COLL)


def test_document_level_topology_rejects_unmatched_update():
    db = ScriptedDatabase([WriteResult(n_matched=0, n_modified=0)])
    run_setup(db)
    ctx = make_ctx(document_level=True)
    update_inc.init(ctx, db, COLL)

    with pytest.raises(WorkloadAssertionError):
        update_inc.update(ctx, db, COLL)


def test_document_level_unmatched_update_tolerated_on_shared_collection():
    db = ScriptedDatabase([WriteResult(n_matched=0, n_modified=0)])
    run_setup(db)
    ctx = make_ctx(document_level=True, level=AssertLevel.ALWAYS)
    update_inc.init(ctx, db, COLL)

    update_inc.update(ctx, db, COLL)
    assert ctx.data.count == 0


@pytest.mark.parametrize("document_level", [True, False])
@pytest.mark.parametrize("level", [AssertLevel.ALWAYS, AssertLevel.OWN_COLL])
def test_matched_without_modified_always_fails(document_level, level):
    """$inc always modifies what it matches; matched-but-unmodified is a broken store."""
    db = ScriptedDatabase([WriteResult(n_matched=1, n_modified=0)], document_level_concurrency=document_level)
    run_setup(db)
    ctx = make_ctx(document_level=document_level, level=level)
    update_inc.init(ctx, db, COLL)

    with pytest.raises(WorkloadAssertionError, match="are not equal"):
        update_inc.update(ctx, db, COLL)
    assert ctx.data.count == 0


@pytest.mark.parametrize("document_level", [True, False])
def test_unexpected_upsert_always_fails(document_level):
    db = ScriptedDatabase(
        [WriteResult(n_upserted=1, upserted_id="dup")], document_level_concurrency=document_level
    )
    run_setup(db)
    ctx = make_ctx(document_level=document_level, level=AssertLevel.ALWAYS)
    update_inc.init(ctx, db, COLL)

    with pytest.raises(WorkloadAssertionError, match="n_upserted=1"):
        update_inc.update(ctx, db, COLL)


def test_weak_topology_rejects_more_than_one_match():
    db = ScriptedDatabase([WriteResult(n_matched=2, n_modified=2)], document_level_concurrency=False)
    run_setup(db)
    ctx = make_ctx(document_level=False)
    update_inc.init(ctx, db, COLL)

    with pytest.raises(WorkloadAssertionError, match="is not in"):
        update_inc.update(ctx, db, COLL)


def test_update_never_upserts():
    db = ScriptedDatabase()
    run_setup(db)
    ctx = make_ctx()
    update_inc.init(ctx, db, COLL)

    update_inc.update(ctx, db, COLL)

    query, update, upsert = db[COLL].updates[0]
    assert query == {"_id": "update_inc"}
    assert update == {"$inc": {"t0": 1}}
    assert upsert is False


def test_config_shape():
    config = update_inc.make_config(thread_count=3, iterations=7)
    config.validate()

    assert config.name == "update_inc"
    assert config.start_state == "init"
    assert set(config.states) == {"init", "update", "find"}
    assert config.transitions == {"init": {"update": 1}, "update": {"find": 1}, "find": {"update": 1}}
    assert isinstance(config.data(), UpdateIncData)
    assert (config.thread_count, config.iterations) == (3, 7)
    assert (update_inc.config.thread_count, update_inc.config.iterations) == (10, 20)
