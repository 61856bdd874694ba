"""
FSM workload driver: run many worker threads through a workload's states.

Each worker is a real thread.  It starts in the workload's start state,
runs the state function with its own :class:`~fsmcheck.workload.WorkerContext`,
picks its next state by weighted random choice, and stops after
``iterations`` state executions.  Workers never coordinate with each other;
whatever serialization happens is the store's business, which is exactly
what the workloads check.

Example — run a workload against the in-memory store::

    >>> from fsmcheck.runner import run_workload
    >>> from fsmcheck.store import Database
    >>> from fsmcheck.workloads import get_workload
    >>>
    >>> result = run_workload(get_workload("update_inc", thread_count=4), Database(), seed=7)
    >>> [w.data.count for w in result.workers]  # doctest: +SKIP
    [10, 10, 10, 10]

For reproducing a specific interleaving, pass a :class:`~fsmcheck.common.Schedule`.
Each worker then runs exactly the states the schedule names for it, one
step at a time in schedule order::

    schedule = Schedule([
        Step("worker-0", "init"),
        Step("worker-1", "init"),
        Step("worker-0", "update"),
        Step("worker-1", "update"),
        Step("worker-1", "find"),
        Step("worker-0", "find"),
    ])
    run_workload(get_workload("update_inc", thread_count=2), Database(), schedule=schedule)
"""

from __future__ import annotations

import random
import threading
import time
from typing import Any

from fsmcheck._trace_format import TraceRecorder, format_trace
from fsmcheck.asserts import AssertionPolicy, AssertLevel
from fsmcheck.common import Schedule, Step, WorkloadResult, worker_name
from fsmcheck.store import Database
from fsmcheck.workload import ClusterInfo, SetupContext, WorkerContext, WorkloadConfig


class StateCoordinator:
    """Makes workers execute their states in the order a schedule dictates.

    A worker calls :meth:`wait_for_turn` before running a state and
    :meth:`finish_step` once the state function has returned; only one
    scheduled step runs at a time.
    """

    def __init__(self, schedule: Schedule):
        self.schedule = schedule
        self.current_step = 0
        self.lock = threading.Lock()
        self.condition = threading.Condition(self.lock)
        self.completed = False
        self.error: BaseException | None = None
        self._running = False

    def wait_for_turn(self, execution_name: str, state_name: str) -> bool:
        """Block until it's this worker's turn to run *state_name*.

        Returns:
            True when the caller should run the state; False when the
            schedule finished or another worker failed.
        """
        with self.condition:
            while True:
                if self.completed or self.error:
                    return False

                if self.current_step >= len(self.schedule.steps):
                    self.completed = True
                    self.condition.notify_all()
                    return False

                expected = self.schedule.steps[self.current_step]
                if not self._running and expected == Step(execution_name, state_name):
                    self._running = True
                    return True

                self.condition.wait()

    def finish_step(self) -> None:
        """Mark the running step as done and wake the next worker."""
        with self.condition:
            self._running = False
            self.current_step += 1
            if self.current_step >= len(self.schedule.steps):
                self.completed = True
            self.condition.notify_all()

    def report_error(self, error: BaseException) -> None:
        """Report an error and wake up all waiting workers."""
        with self.condition:
            if self.error is None:
                self.error = error
            self._running = False
            self.condition.notify_all()

    def is_finished(self) -> bool:
        with self.condition:
            return self.completed or self.error is not None


class WorkloadRunner:
    """Runs one workload with ``thread_count`` concurrent workers.

    Args:
        config: The workload to run.
        db: Database handle passed to every state function.
        coll_name: Collection under test; defaults to the workload name.
        cluster: Capabilities of the deployment.  Defaults to asking the
            collection (:meth:`ClusterInfo.for_database`).
        exclusive_collection: Whether this workload is the only user of its
            collection.  Checks that need exclusivity are skipped otherwise.
        assert_level: Explicit assertion level, overriding
            ``exclusive_collection``.
        seed: Seed for the per-worker transition RNGs.  A random seed is
            chosen (and reported in the result) when omitted.
        schedule: Run exactly this interleaving of states instead of
            choosing transitions at random.
        recorder: Records every state execution for failure explanations.
        debug: Print each state execution as it finishes.
    """

    def __init__(
        self,
        config: WorkloadConfig,
        db: Any,
        coll_name: str | None = None,
        *,
        cluster: ClusterInfo | None = None,
        exclusive_collection: bool = True,
        assert_level: AssertLevel | None = None,
        seed: int | None = None,
        schedule: Schedule | None = None,
        recorder: TraceRecorder | None = None,
        debug: bool = False,
    ):
        self.config = config
        self.db = db
        self.coll_name = coll_name or config.name
        self.cluster = cluster
        if assert_level is None:
            self.asserts = AssertionPolicy.from_ownership(owns_collection=exclusive_collection)
        else:
            self.asserts = AssertionPolicy(assert_level)
        self.seed = seed if seed is not None else random.SystemRandom().randrange(2**32)
        self.schedule = schedule
        self.recorder = recorder
        self.debug = debug
        self.coordinator = StateCoordinator(schedule) if schedule else None
        self.workers: list[WorkerContext] = []
        self.threads: list[threading.Thread] = []
        self.errors: dict[int, BaseException] = {}
        self.explanation: str | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._num_steps = 0

    # --- Planning ---

    def _plans(self) -> dict[int, list[str] | None]:
        """Per-worker state sequences from the schedule (``None`` = random walk)."""
        thread_count = self.config.thread_count
        if self.schedule is None:
            return {tid: None for tid in range(thread_count)}

        known = {worker_name(tid) for tid in range(thread_count)}
        unknown = sorted({s.execution_name for s in self.schedule.steps} - known)
        if unknown:
            raise ValueError(f"Schedule names worker(s) outside 0..{thread_count - 1}: {', '.join(unknown)}")

        plans: dict[int, list[str] | None] = {}
        for tid in range(thread_count):
            plan = self.schedule.steps_for(worker_name(tid))
            if plan and plan[0] != self.config.start_state:
                raise ValueError(
                    f"{worker_name(tid)} must start in {self.config.start_state!r}, schedule starts it in {plan[0]!r}"
                )
            for current, following in zip(plan, plan[1:]):
                if not self.config.is_legal(current, following):
                    raise ValueError(f"{worker_name(tid)}: illegal transition {current!r} -> {following!r} in schedule")
            plans[tid] = plan
        return plans

    # --- Worker thread ---

    def _record(self, ctx: WorkerContext, state: str, iteration: int, error: BaseException | None = None) -> None:
        if self.recorder is not None:
            self.recorder.record(ctx.tid, state, iteration, ctx.data, error=error)
        if self.debug:
            outcome = "ok" if error is None else f"FAILED: {error}"
            print(f"{ctx.name} #{iteration} {state}: {outcome} {ctx.data!r}", flush=True)

    def _report_error(self, tid: int, error: BaseException) -> None:
        with self._lock:
            if tid not in self.errors:
                self.errors[tid] = error
        self._stop.set()
        if self.coordinator is not None:
            self.coordinator.report_error(error)

    def _run_worker(
        self,
        ctx: WorkerContext,
        plan: list[str] | None,
        rng: random.Random,
        barrier: threading.Barrier,
    ) -> None:
        try:
            barrier.wait()
        except threading.BrokenBarrierError:
            return

        coordinator = self.coordinator
        total = len(plan) if plan is not None else ctx.iterations
        state = self.config.start_state
        try:
            for iteration in range(1, total + 1):
                if self._stop.is_set():
                    return
                if plan is not None and coordinator is not None:
                    state = plan[iteration - 1]
                    if not coordinator.wait_for_turn(ctx.name, state):
                        return

                try:
                    self.config.states[state](ctx, self.db, self.coll_name)
                except Exception as e:
                    self._record(ctx, state, iteration, error=e)
                    raise
                self._record(ctx, state, iteration)
                with self._lock:
                    self._num_steps += 1

                if coordinator is not None:
                    coordinator.finish_step()
                else:
                    state = self.config.next_state(state, rng)
        except Exception as e:
            self._report_error(ctx.tid, e)

    def _raise_first_error(self, cause: BaseException | None = None) -> None:
        if self.recorder is not None:
            self.explanation = format_trace(
                list(self.recorder.events), num_workers=self.config.thread_count, seed=self.seed
            )
        with self._lock:
            first = next(iter(self.errors.values()))
        if cause is not None:
            raise first from cause
        raise first

    # --- Entry point ---

    def run(self, timeout: float | None = None) -> WorkloadResult:
        """Set up, run every worker to completion, and tear down.

        Args:
            timeout: Max total seconds to wait for the workers (global deadline).

        Returns:
            WorkloadResult describing the finished run.

        Raises:
            ValueError: If the workload or schedule is malformed.
            TimeoutError: If workers are still running at the deadline and none
                has failed; otherwise the first failure is raised from it.
            Any exception raised by setup, a state function, or teardown.
                When several workers fail, the first failure is raised.
        """
        config = self.config
        config.validate()
        plans = self._plans()

        cluster = self.cluster or ClusterInfo.for_database(self.db, self.coll_name)
        hook_ctx = SetupContext(
            data=config.data(), thread_count=config.thread_count, iterations=config.iterations, cluster=cluster
        )
        if config.setup is not None:
            config.setup(hook_ctx, self.db, self.coll_name)

        self.workers = [
            WorkerContext(
                tid=tid,
                thread_count=config.thread_count,
                iterations=config.iterations if plans[tid] is None else len(plans[tid] or ()),
                data=config.data(),
                cluster=cluster,
                asserts=self.asserts,
            )
            for tid in range(config.thread_count)
        ]

        barrier = threading.Barrier(config.thread_count)
        for ctx in self.workers:
            rng = random.Random(f"{self.seed}:{ctx.tid}")
            t = threading.Thread(
                target=self._run_worker,
                args=(ctx, plans[ctx.tid], rng, barrier),
                name=f"fsmcheck-{ctx.tid}",
                daemon=True,
            )
            self.threads.append(t)

        start = time.monotonic()
        for t in self.threads:
            t.start()

        deadline = None if timeout is None else start + timeout
        for t in self.threads:
            remaining = None if deadline is None else max(0, deadline - time.monotonic())
            t.join(timeout=remaining)
        elapsed = time.monotonic() - start

        alive_threads = [t for t in self.threads if t.is_alive()]
        if alive_threads:
            self._stop.set()
            if self.coordinator is not None:
                self.coordinator.report_error(TimeoutError("workload timed out"))
            thread_names = ", ".join(t.name for t in alive_threads)
            timeout_error = TimeoutError(f"Workers did not complete within timeout: {thread_names}")
            if self.errors:
                # A worker already failed; that failure is the result.
                self._raise_first_error(timeout_error)
            raise timeout_error

        teardown_error: Exception | None = None
        if config.teardown is not None:
            try:
                config.teardown(hook_ctx, self.db, self.coll_name)
            except Exception as e:
                teardown_error = e

        if self.errors:
            self._raise_first_error()

        if teardown_error is not None:
            raise teardown_error

        return WorkloadResult(
            workers=self.workers,
            num_steps=self._num_steps,
            elapsed=elapsed,
            seed=self.seed,
            events=list(self.recorder.events) if self.recorder is not None else [],
        )


def run_workload(
    config: WorkloadConfig,
    db: Any = None,
    coll_name: str | None = None,
    *,
    timeout: float | None = None,
    **runner_kwargs: Any,
) -> WorkloadResult:
    """Convenience function to run a workload once.

    Args:
        config: The workload to run.
        db: Database handle; a fresh in-memory :class:`~fsmcheck.store.Database`
            when omitted.
        coll_name: Collection under test; defaults to the workload name.
        timeout: Optional global deadline for the workers.
        **runner_kwargs: Passed through to :class:`WorkloadRunner`.

    Returns:
        The WorkloadResult of the run.
    """
    if db is None:
        db = Database()
    runner = WorkloadRunner(config, db, coll_name, **runner_kwargs)
    return runner.run(timeout=timeout)


def schedule_strategy(config: WorkloadConfig, num_workers: int | None = None, max_steps: int = 12):
    """Hypothesis strategy for generating legal workload schedules.

    Each worker gets a random walk through the transition graph, starting at
    the start state, of between 1 and ``max_steps`` states.  The walks are
    then interleaved in a random order, so every generated schedule can be
    run by :class:`WorkloadRunner`.

        >>> from hypothesis import given
        >>> from fsmcheck.runner import run_workload, schedule_strategy
        >>>
        >>> @given(schedule=schedule_strategy(config, 3))
        ... def test_my_invariant(schedule):
        ...     run_workload(config, Database(), schedule=schedule)
    """
    from hypothesis import strategies as st

    if num_workers is None:
        num_workers = config.thread_count

    @st.composite
    def _walk(draw: st.DrawFn) -> list[str]:
        length = draw(st.integers(min_value=1, max_value=max_steps))
        walk = [config.start_state]
        while len(walk) < length:
            targets = sorted(t for t, w in config.transitions[walk[-1]].items() if w > 0)
            walk.append(draw(st.sampled_from(targets)))
        return walk

    @st.composite
    def _schedule(draw: st.DrawFn) -> Schedule:
        walks = [draw(_walk()) for _ in range(num_workers)]
        slots = [tid for tid, walk in enumerate(walks) for _ in walk]
        order = draw(st.permutations(slots))
        positions = [0] * num_workers
        steps: list[Step] = []
        for tid in order:
            steps.append(Step(worker_name(tid), walks[tid][positions[tid]]))
            positions[tid] += 1
        return Schedule(steps)

    return _schedule()
