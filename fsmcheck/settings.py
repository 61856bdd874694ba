"""Run settings shared by the CLI and the pytest plugin.

Settings come from three places, later ones winning:

1. The workload's own defaults (``thread_count``/``iterations`` in its config).
2. ``FSMCHECK_*`` environment variables.
3. Explicit command-line flags.
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from fsmcheck.store import Database, InMemoryCollection, YieldingCollection
from fsmcheck.workload import WorkloadConfig

FSMCHECK_SEED_ENV = "FSMCHECK_SEED"
FSMCHECK_THREAD_COUNT_ENV = "FSMCHECK_THREAD_COUNT"
FSMCHECK_ITERATIONS_ENV = "FSMCHECK_ITERATIONS"
FSMCHECK_TOPOLOGY_ENV = "FSMCHECK_TOPOLOGY"
FSMCHECK_STORE_URL_ENV = "FSMCHECK_STORE_URL"

# "document": per-document concurrency control; "collection": coarse locking
# that can invalidate a query mid-update.
TOPOLOGIES = ("document", "collection")


def _int_env(environ: Mapping[str, str], name: str) -> int | None:
    raw = environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class RunSettings:
    """How to run a workload.

    ``None`` means "use the workload's default" for ``thread_count`` and
    ``iterations``, and "pick one at random" for ``seed``.
    """

    thread_count: int | None = None
    iterations: int | None = None
    seed: int | None = None
    topology: str = "document"
    capped: bool = False
    exclusive_collection: bool = True
    store_url: str | None = None

    def __post_init__(self):
        if self.topology not in TOPOLOGIES:
            raise ValueError(f"topology must be one of {', '.join(TOPOLOGIES)}, got {self.topology!r}")
        for name in ("thread_count", "iterations"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RunSettings:
        if environ is None:
            environ = os.environ
        return cls(
            thread_count=_int_env(environ, FSMCHECK_THREAD_COUNT_ENV),
            iterations=_int_env(environ, FSMCHECK_ITERATIONS_ENV),
            seed=_int_env(environ, FSMCHECK_SEED_ENV),
            topology=environ.get(FSMCHECK_TOPOLOGY_ENV) or "document",
            store_url=environ.get(FSMCHECK_STORE_URL_ENV) or None,
        )

    def merged(self, **overrides: Any) -> RunSettings:
        """Return a copy with every non-``None`` override applied."""
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def apply(self, config: WorkloadConfig) -> WorkloadConfig:
        return config.with_overrides(thread_count=self.thread_count, iterations=self.iterations)

    def make_database(self) -> Any:
        """Build the store the workload will run against."""
        if self.store_url:
            if self.topology != "document":
                raise ValueError("SQL stores always provide document-level concurrency; use topology 'document'")
            try:
                from fsmcheck.sql_store import SqlDatabase
            except ImportError as e:
                raise ValueError(f"SQL stores need the 'sql' extra (pip install fsmcheck[sql]): {e}") from e
            from sqlalchemy.exc import ArgumentError

            try:
                return SqlDatabase(self.store_url, capped=self.capped)
            except ArgumentError as e:
                raise ValueError(f"Invalid store URL {self.store_url!r}: {e}") from e
        if self.topology == "collection":
            return Database(collection_factory=YieldingCollection, capped=self.capped)
        return Database(collection_factory=InMemoryCollection, capped=self.capped)
