"""
fsmcheck: Concurrent FSM correctness workloads for document stores.

Running a workload (stable)::

    from fsmcheck.runner import run_workload
    from fsmcheck.store import Database
    from fsmcheck.workloads import get_workload

Deterministic interleavings::

    from fsmcheck.common import Schedule, Step
    from fsmcheck.runner import WorkloadRunner

Writing a workload::

    from fsmcheck.workload import WorkloadConfig, WorkerContext, SetupContext

SQL-backed store (requires the ``sql`` extra)::

    from fsmcheck.sql_store import SqlDatabase
"""

__version__ = "0.1.0"
