"""Trace recording and formatting for comprehensible workload failures.

When a worker trips an assertion, the exception alone says *what* was wrong
(``[3] != [2] are not equal``) but not *how* the run got there.  This module
records every state execution and turns the tail of that history into a
human-readable story of which worker ran which state, in which order, and
what its local state looked like afterwards.

The pipeline:
1. **Record** a TraceEvent each time a worker finishes (or fails) a state.
2. **Classify** the failure (invariant violation, store error, ...).
3. **Format** the interleaved state history leading up to it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from fsmcheck.asserts import WorkloadAssertionError
from fsmcheck.common import worker_name
from fsmcheck.store import StoreError

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TraceEvent:
    """A single state execution by one worker."""

    step_index: int
    tid: int
    state: str
    iteration: int
    outcome: str  # "ok" or "error"
    snapshot: str  # repr of the worker's local state afterwards
    error: BaseException | None = None


# ---------------------------------------------------------------------------
# Trace recorder
# ---------------------------------------------------------------------------


class TraceRecorder:
    """Accumulates TraceEvent objects during a single run.

    Thread-safe: every worker calls ``record()`` concurrently; the step
    index reflects the order in which state executions finished.
    """

    __slots__ = ("events", "_step", "_lock", "enabled")

    def __init__(self, *, enabled: bool = True) -> None:
        self.events: list[TraceEvent] = []
        self._step = 0
        self._lock = threading.Lock()
        self.enabled = enabled

    def record(
        self,
        tid: int,
        state: str,
        iteration: int,
        data: Any,
        error: BaseException | None = None,
    ) -> None:
        """Record that worker *tid* finished *state* with local state *data*."""
        if not self.enabled:
            return
        snapshot = repr(data)
        with self._lock:
            self.events.append(
                TraceEvent(
                    step_index=self._step,
                    tid=tid,
                    state=state,
                    iteration=iteration,
                    outcome="ok" if error is None else "error",
                    snapshot=snapshot,
                    error=error,
                )
            )
            self._step += 1

    def failures(self) -> list[TraceEvent]:
        with self._lock:
            return [ev for ev in self.events if ev.error is not None]


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------


@dataclass
class FailureInfo:
    """Description of the first failure found in the trace."""

    pattern: str  # "invariant_violation", "store_error", "error", "none"
    summary: str
    tid: int | None = None
    state: str | None = None


def classify_failure(events: list[TraceEvent]) -> FailureInfo:
    """Describe the first failing event in *events*."""
    failed = next((ev for ev in events if ev.error is not None), None)
    if failed is None:
        return FailureInfo(pattern="none", summary="No worker failed.")

    where = f"worker {failed.tid} in state {failed.state!r} (iteration {failed.iteration})"
    if isinstance(failed.error, WorkloadAssertionError):
        return FailureInfo(
            pattern="invariant_violation",
            summary=f"Invariant violated by {where}: {failed.error}",
            tid=failed.tid,
            state=failed.state,
        )
    if isinstance(failed.error, StoreError):
        return FailureInfo(
            pattern="store_error",
            summary=f"Store operation failed for {where}: {type(failed.error).__name__}: {failed.error}",
            tid=failed.tid,
            state=failed.state,
        )
    return FailureInfo(
        pattern="error",
        summary=f"Unexpected error in {where}: {type(failed.error).__name__}: {failed.error}",
        tid=failed.tid,
        state=failed.state,
    )


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_trace(
    events: list[TraceEvent],
    *,
    num_workers: int,
    worker_names: list[str] | None = None,
    tail: int = 20,
    seed: int | None = None,
) -> str:
    """Format a trace as a human-readable interleaved state history.

    Args:
        events: Events from a TraceRecorder.
        num_workers: Total number of workers in the run.
        worker_names: Optional display names for workers.
        tail: Show at most this many events, ending at the first failure.
        seed: Seed of the run, printed so it can be replayed.

    Returns:
        Multi-line string suitable for printing or attaching to test output.
    """
    if worker_names is None:
        worker_names = [worker_name(i) for i in range(num_workers)]

    failure = classify_failure(events)
    parts: list[str] = []

    if failure.pattern == "none":
        parts.append(f"No failure in {len(events)} state executions.\n")
        return "\n".join(parts)

    failed_at = next(i for i, ev in enumerate(events) if ev.error is not None)
    shown = events[max(0, failed_at + 1 - tail) : failed_at + 1]
    omitted = failed_at + 1 - len(shown)

    parts.append(f"Workload failed after {failed_at + 1} state executions.\n")
    parts.append(f"  {failure.summary}\n")

    parts.append("")
    if omitted:
        parts.append(f"  ... {omitted} earlier step(s) omitted")
    max_label = max(len(name) for name in worker_names)
    max_state = max(len(ev.state) for ev in shown)
    for ev in shown:
        label = worker_names[ev.tid].ljust(max_label)
        marker = "!!" if ev.error is not None else "  "
        parts.append(f"  {label} | #{ev.iteration:<4d} {ev.state.ljust(max_state)} {marker} {ev.snapshot}")

    if seed is not None:
        parts.append("")
        parts.append(f"  Replay with seed={seed}")

    parts.append("")
    return "\n".join(parts)
