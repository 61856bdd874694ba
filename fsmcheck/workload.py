"""
Declarative description of an FSM workload and the context its states run in.

A workload is a set of named state functions plus a weighted transition
table.  The driver (:mod:`fsmcheck.runner`) starts ``thread_count`` workers;
each begins in ``start_state``, runs the state's function, picks its next
state at random according to the weights, and stops after ``iterations``
state executions.

State functions receive the worker's own :class:`WorkerContext`, the
database handle, and the name of the collection under test::

    def update(ctx: WorkerContext, db: Database, coll_name: str) -> None:
        res = db[coll_name].update({"_id": ctx.data.id}, {"$inc": {ctx.data.field_name: 1}})
        ctx.asserts.always.eq(0, res.n_upserted)
"""

from __future__ import annotations

import dataclasses
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from fsmcheck.asserts import AssertionPolicy
from fsmcheck.common import worker_name

StateFunction = Callable[["WorkerContext", Any, str], None]
HookFunction = Callable[["SetupContext", Any, str], None]


@dataclass(frozen=True)
class ClusterInfo:
    """What the deployment under test guarantees.

    Attributes:
        document_level_concurrency: True when concurrent writes to one
            logical document are serialized (and retried) by the store, so
            a well-formed query always finds a live document.
        topology: Free-form description used in reports.
    """

    document_level_concurrency: bool = True
    topology: str = "standalone"

    @classmethod
    def for_database(cls, db: Any, coll_name: str) -> ClusterInfo:
        """Ask the collection that will be used what it guarantees."""
        coll = db[coll_name]
        document_level = bool(getattr(coll, "document_level_concurrency", True))
        return cls(
            document_level_concurrency=document_level,
            topology=type(coll).__name__,
        )


@dataclass
class WorkerContext:
    """Everything one worker's state functions may read or write.

    Only the owning worker touches its context; ``data`` is the workload's
    private local state (created fresh per worker from ``WorkloadConfig.data``).
    """

    tid: int
    thread_count: int
    iterations: int
    data: Any
    cluster: ClusterInfo = dataclasses.field(default_factory=ClusterInfo)
    asserts: AssertionPolicy = dataclasses.field(default_factory=AssertionPolicy)

    @property
    def name(self) -> str:
        return worker_name(self.tid)


@dataclass
class SetupContext:
    """Context for the one-time ``setup`` and ``teardown`` hooks."""

    data: Any
    thread_count: int
    iterations: int
    cluster: ClusterInfo = dataclasses.field(default_factory=ClusterInfo)


@dataclass
class WorkloadConfig:
    """A complete FSM workload.

    Attributes:
        name: Workload name; also the default collection name.
        states: Mapping of state name to state function.
        transitions: Mapping of state name to ``{next_state: weight}``.
            Weights are relative and must be positive.
        data: Factory for each worker's local state.
        thread_count: Number of concurrent workers.
        iterations: State executions per worker, the start state included.
        start_state: State every worker begins in.
        setup: Hook run once before any worker starts.
        teardown: Hook run once after every worker has stopped.
    """

    name: str
    states: dict[str, StateFunction]
    transitions: dict[str, dict[str, float]]
    data: Callable[[], Any] = dict
    thread_count: int = 10
    iterations: int = 20
    start_state: str = "init"
    setup: HookFunction | None = None
    teardown: HookFunction | None = None

    def validate(self) -> None:
        """Check the workload is runnable.

        Raises:
            ValueError: Describing the first problem found.
        """
        if self.thread_count < 1:
            raise ValueError(f"thread_count must be a positive integer, got {self.thread_count}")
        if self.iterations < 1:
            raise ValueError(f"iterations must be a positive integer, got {self.iterations}")
        if self.start_state not in self.states:
            raise ValueError(f"start state {self.start_state!r} is not one of the workload's states")
        for state in self.states:
            if not self.transitions.get(state):
                raise ValueError(f"state {state!r} has no outgoing transitions")
        for source, targets in self.transitions.items():
            if source not in self.states:
                raise ValueError(f"transitions refer to unknown state {source!r}")
            for target, weight in targets.items():
                if target not in self.states:
                    raise ValueError(f"transition {source!r} -> {target!r} refers to unknown state {target!r}")
                if not weight > 0:
                    raise ValueError(f"transition {source!r} -> {target!r} has non-positive weight {weight!r}")

    def with_overrides(self, **changes: Any) -> WorkloadConfig:
        """Return a copy with the given fields replaced (``None`` values are ignored)."""
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})

    def is_legal(self, current: str, following: str) -> bool:
        return self.transitions.get(current, {}).get(following, 0) > 0

    def next_state(self, current: str, rng: random.Random) -> str:
        """Pick the state after *current* according to the transition weights."""
        targets = self.transitions[current]
        names = list(targets)
        return rng.choices(names, weights=[targets[name] for name in names])[0]
