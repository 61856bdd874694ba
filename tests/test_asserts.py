"""Tests for leveled workload assertions."""

import pytest

from fsmcheck.asserts import AssertionPolicy, AssertLevel, WorkloadAssertionError


@pytest.mark.parametrize(
    "level, enabled",
    [
        (AssertLevel.ALWAYS, {"always"}),
        (AssertLevel.OWN_COLL, {"always", "when_own_coll"}),
        (AssertLevel.OWN_DB, {"always", "when_own_coll", "when_own_db"}),
    ],
)
def test_policy_enables_levels_up_to_its_own(level, enabled):
    policy = AssertionPolicy(level)
    actual = {name for name in ("always", "when_own_coll", "when_own_db") if getattr(policy, name).enabled}
    assert actual == enabled


def test_default_policy_runs_everything():
    policy = AssertionPolicy()
    assert policy.level is AssertLevel.OWN_DB
    assert policy.when_own_db.enabled


@pytest.mark.parametrize(
    "owns_collection, owns_db, level",
    [
        (True, True, AssertLevel.OWN_DB),
        (True, False, AssertLevel.OWN_COLL),
        (False, True, AssertLevel.ALWAYS),
        (False, False, AssertLevel.ALWAYS),
    ],
)
def test_policy_from_ownership(owns_collection, owns_db, level):
    policy = AssertionPolicy.from_ownership(owns_collection, owns_db)
    assert policy.level is level
    assert policy.owns_collection is (level >= AssertLevel.OWN_COLL)


def test_eq_message_and_level():
    policy = AssertionPolicy(AssertLevel.OWN_COLL)

    with pytest.raises(WorkloadAssertionError) as excinfo:
        policy.when_own_coll.eq(1, 2, "count mismatch")

    assert str(excinfo.value) == "[1] != [2] are not equal : count mismatch"
    assert excinfo.value.level is AssertLevel.OWN_COLL
    assert isinstance(excinfo.value, AssertionError)


def test_contains_and_gte():
    asserts = AssertionPolicy().always

    asserts.contains(0, (0, 1))
    asserts.gte(3, 3)
    with pytest.raises(WorkloadAssertionError, match=r"2 is not in \(0, 1\)"):
        asserts.contains(2, (0, 1))
    with pytest.raises(WorkloadAssertionError, match="not greater than or equal to 3"):
        asserts.gte(2, 3)


def test_plain_condition():
    asserts = AssertionPolicy().always

    asserts(True)
    with pytest.raises(WorkloadAssertionError, match="assert failed : nope"):
        asserts(False, "nope")


def test_disabled_level_never_fires():
    policy = AssertionPolicy(AssertLevel.ALWAYS)

    policy.when_own_coll.eq(1, 2)
    policy.when_own_coll.contains(5, ())
    policy.when_own_coll(False)
    policy.when_own_db.gte(0, 1)


def test_callable_block_runs_only_when_enabled():
    calls = []

    def block():
        calls.append("ran")

    AssertionPolicy(AssertLevel.ALWAYS).when_own_coll(block)
    assert calls == []

    AssertionPolicy(AssertLevel.OWN_COLL).when_own_coll(block)
    assert calls == ["ran"]


def test_callable_block_failure_propagates():
    policy = AssertionPolicy(AssertLevel.OWN_COLL)

    def block():
        policy.when_own_coll.eq("a", "b")

    with pytest.raises(WorkloadAssertionError, match=r"\['a'\] != \['b'\]"):
        policy.when_own_coll(block)
