"""Shared data structures for fsmcheck."""

from dataclasses import dataclass, field
from typing import Any


def worker_name(tid: int) -> str:
    """Return the execution name used for worker *tid* in schedules and threads."""
    return f"worker-{tid}"


@dataclass
class Step:
    """Represents a single step in a deterministic workload schedule.

    Attributes:
        execution_name: The worker that should execute this step (``worker-<tid>``)
        state_name: The FSM state that worker runs at this point
    """

    execution_name: str
    state_name: str

    def __repr__(self):
        return f"Step({self.execution_name!r}, {self.state_name!r})"


class Schedule:
    """Defines the global order in which workers execute their states.

    A schedule is a linear sequence of steps.  Each worker executes exactly
    the steps that name it, in order, and only when every earlier step in
    the schedule has finished.
    """

    def __init__(self, steps: list[Step]):
        """Initialize a schedule with a list of steps.

        Args:
            steps: Ordered list of Step objects defining the execution sequence
        """
        self.steps = steps
        self._validate()

    def _validate(self):
        """Validate that the schedule is well-formed."""
        if not self.steps:
            raise ValueError("Schedule must contain at least one step")

    def steps_for(self, execution_name: str) -> list[str]:
        """Return the state names *execution_name* runs, in schedule order."""
        return [s.state_name for s in self.steps if s.execution_name == execution_name]

    def __repr__(self):
        return f"Schedule({self.steps!r})"


@dataclass
class WorkloadResult:
    """Result of a completed workload run.

    Returned by :meth:`~fsmcheck.runner.WorkloadRunner.run` and
    :func:`~fsmcheck.runner.run_workload` when no worker failed.

    Attributes:
        workers: The per-worker contexts, in ``tid`` order, after the run.
            Each carries the workload's local state in ``data``.
        num_steps: Total number of state functions executed across workers.
        elapsed: Wall-clock seconds spent between starting and joining workers.
        seed: The seed the per-worker transition RNGs were derived from.
        events: Recorded trace events, when a recorder was supplied.
    """

    workers: list[Any] = field(default_factory=list)
    num_steps: int = 0
    elapsed: float = 0.0
    seed: int | None = None
    events: list[Any] = field(default_factory=list)
