"""fsmcheck CLI — run FSM workloads from the command line.

Usage::

    fsmcheck list
    fsmcheck run update_inc
    fsmcheck run update_inc --threads 16 --iterations 200 --topology collection
    fsmcheck run update_inc --capped --seed 1234
    fsmcheck run update_inc --sql sqlite:////tmp/fsmcheck.db

Defaults can also be set through the environment:

1. ``FSMCHECK_THREAD_COUNT`` / ``FSMCHECK_ITERATIONS`` override the
   workload's worker count and per-worker iterations.
2. ``FSMCHECK_SEED`` fixes the transition RNG seed, for replaying a run.
3. ``FSMCHECK_TOPOLOGY`` selects ``document`` or ``collection`` locking.
4. ``FSMCHECK_STORE_URL`` runs against a SQL store instead of memory.

Exit status is 0 when the workload passes, 1 when it fails, and 2 for
usage errors.
"""

from __future__ import annotations

import argparse
import sys

from fsmcheck._trace_format import TraceRecorder
from fsmcheck.runner import WorkloadRunner
from fsmcheck.settings import (
    FSMCHECK_ITERATIONS_ENV,
    FSMCHECK_SEED_ENV,
    FSMCHECK_STORE_URL_ENV,
    FSMCHECK_THREAD_COUNT_ENV,
    FSMCHECK_TOPOLOGY_ENV,
    TOPOLOGIES,
    RunSettings,
)
from fsmcheck.workloads import available_workloads, get_workload


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fsmcheck",
        description="Run concurrent FSM correctness workloads against a document store.",
        epilog=(
            "Environment variables: "
            f"{FSMCHECK_THREAD_COUNT_ENV}, {FSMCHECK_ITERATIONS_ENV}, {FSMCHECK_SEED_ENV}, "
            f"{FSMCHECK_TOPOLOGY_ENV}, {FSMCHECK_STORE_URL_ENV}"
        ),
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("list", help="List the available workloads.")

    run = sub.add_parser("run", help="Run a workload.")
    run.add_argument("workload", help="Workload name (see 'fsmcheck list').")
    run.add_argument("--threads", type=int, default=None, help="Number of concurrent workers.")
    run.add_argument("--iterations", type=int, default=None, help="State executions per worker.")
    run.add_argument("--seed", type=int, default=None, help="Seed for the transition RNGs.")
    run.add_argument(
        "--topology",
        choices=TOPOLOGIES,
        default=None,
        help="'document' for per-document concurrency control, 'collection' for coarse locking.",
    )
    run.add_argument("--capped", action="store_true", default=None, help="Use capped (fixed-size) collections.")
    run.add_argument(
        "--shared-collection",
        dest="exclusive_collection",
        action="store_false",
        default=None,
        help="Assume other workloads share the collection; skip exclusivity checks.",
    )
    run.add_argument("--sql", dest="store_url", default=None, help="SQLAlchemy URL of a SQL store to use.")
    run.add_argument("--timeout", type=float, default=None, help="Global deadline in seconds.")
    run.add_argument("--debug", action="store_true", help="Print every state execution.")
    return parser


def _run(args: argparse.Namespace) -> int:
    settings = RunSettings.from_env().merged(
        thread_count=args.threads,
        iterations=args.iterations,
        seed=args.seed,
        topology=args.topology,
        capped=args.capped,
        exclusive_collection=args.exclusive_collection,
        store_url=args.store_url,
    )
    config = settings.apply(get_workload(args.workload))
    db = settings.make_database()
    recorder = TraceRecorder()
    runner = WorkloadRunner(
        config,
        db,
        exclusive_collection=settings.exclusive_collection,
        seed=settings.seed,
        recorder=recorder,
        debug=args.debug,
    )

    try:
        result = runner.run(timeout=args.timeout)
    except Exception as e:
        print(f"fsmcheck: {config.name} FAILED: {type(e).__name__}: {e}", file=sys.stderr)
        if runner.explanation:
            print(runner.explanation, file=sys.stderr)
        else:
            print(f"fsmcheck: replay with --seed {runner.seed}", file=sys.stderr)
        return 1

    print(
        f"{config.name}: {config.thread_count} workers x {config.iterations} iterations, "
        f"{result.num_steps} state executions in {result.elapsed:.3f}s (seed={result.seed})"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``fsmcheck`` CLI command."""
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code or 0)

    if args.command is None:
        parser.print_usage(sys.stderr)
        return 2

    if args.command == "list":
        for name in available_workloads():
            print(name)
        return 0

    try:
        return _run(args)
    except (KeyError, ValueError) as e:
        message = e.args[0] if isinstance(e, KeyError) and e.args else e
        print(f"fsmcheck: {message}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
