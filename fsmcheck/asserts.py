"""Leveled assertions for FSM workloads.

Some checks are only meaningful when a workload has exclusive use of its
collection (or database).  When several workloads share a collection, a
document count or field value seen by one workload can legitimately be
changed by another, so those checks must be switched off while the
checks that hold regardless of sharing stay on.

Every assertion is tagged with the weakest isolation it needs::

    ctx.asserts.always.eq(0, res.n_upserted)          # holds even when shared
    ctx.asserts.when_own_coll.eq(1, len(docs))        # needs its own collection

and the driver decides, through :class:`AssertionPolicy`, which levels are
active for the run.
"""

from __future__ import annotations

import enum
from collections.abc import Container
from typing import Any


class AssertLevel(enum.IntEnum):
    """Isolation a check needs before it is allowed to fire."""

    ALWAYS = 0
    OWN_COLL = 1
    OWN_DB = 2


class WorkloadAssertionError(AssertionError):
    """A workload invariant was violated.

    Attributes:
        level: The assertion level of the failed check.
    """

    def __init__(self, message: str, level: AssertLevel = AssertLevel.ALWAYS):
        super().__init__(message)
        self.level = level


def _with_msg(text: str, msg: str | None) -> str:
    if msg:
        return f"{text} : {msg}"
    return text


class LeveledAssert:
    """Assertion helpers that only fire when their level is enabled.

    Calling the object directly accepts either a condition or a callable.
    A callable is only invoked when the level is enabled, which lets a
    block of dependent checks be skipped as a unit.
    """

    def __init__(self, level: AssertLevel, policy: AssertionPolicy):
        self.level = level
        self._policy = policy

    @property
    def enabled(self) -> bool:
        return self._policy.should_assert(self.level)

    def __call__(self, condition: Any, msg: str | None = None) -> None:
        if not self.enabled:
            return
        if callable(condition):
            condition()
            return
        if not condition:
            self._fail(_with_msg("assert failed", msg))

    def eq(self, expected: Any, actual: Any, msg: str | None = None) -> None:
        if self.enabled and expected != actual:
            self._fail(_with_msg(f"[{expected!r}] != [{actual!r}] are not equal", msg))

    def contains(self, value: Any, candidates: Container[Any], msg: str | None = None) -> None:
        if self.enabled and value not in candidates:
            self._fail(_with_msg(f"{value!r} is not in {candidates!r}", msg))

    def gte(self, value: Any, bound: Any, msg: str | None = None) -> None:
        if self.enabled and not value >= bound:
            self._fail(_with_msg(f"{value!r} is not greater than or equal to {bound!r}", msg))

    def _fail(self, message: str) -> None:
        raise WorkloadAssertionError(message, self.level)

    def __repr__(self):
        return f"LeveledAssert({self.level.name}, enabled={self.enabled})"


class AssertionPolicy:
    """Decides which assertion levels are active for a run.

    A check fires when its level is at or below the policy's level, so a
    policy of ``OWN_COLL`` runs ``always`` and ``when_own_coll`` checks but
    not ``when_own_db`` ones.
    """

    def __init__(self, level: AssertLevel = AssertLevel.OWN_DB):
        self.level = AssertLevel(level)
        self.always = LeveledAssert(AssertLevel.ALWAYS, self)
        self.when_own_coll = LeveledAssert(AssertLevel.OWN_COLL, self)
        self.when_own_db = LeveledAssert(AssertLevel.OWN_DB, self)

    @classmethod
    def from_ownership(cls, owns_collection: bool, owns_db: bool = False) -> AssertionPolicy:
        """Build a policy from the collection-scope flags the driver knows about."""
        if owns_collection and owns_db:
            return cls(AssertLevel.OWN_DB)
        if owns_collection:
            return cls(AssertLevel.OWN_COLL)
        return cls(AssertLevel.ALWAYS)

    @property
    def owns_collection(self) -> bool:
        return self.should_assert(AssertLevel.OWN_COLL)

    def should_assert(self, level: AssertLevel) -> bool:
        return level <= self.level

    def __repr__(self):
        return f"AssertionPolicy({self.level.name})"

