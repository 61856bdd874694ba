"""Pytest plugin exposing fsmcheck run settings to tests.

Registered via the ``pytest11`` entry point, so it is active as soon as
fsmcheck is installed.  It adds command-line options that tune every
workload run in the session, a marker for workload tests, and an
``fsm_settings`` fixture carrying the resolved :class:`~fsmcheck.settings.RunSettings`.

Usage::

    pytest --fsm-seed=1234                   # replay a failing run
    pytest --fsm-thread-count=32 --fsm-iterations=500   # soak harder

    def test_update_inc(fsm_settings):
        config = fsm_settings.apply(get_workload("update_inc"))
        run_workload(config, fsm_settings.make_database(), seed=fsm_settings.seed)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from fsmcheck.settings import TOPOLOGIES, RunSettings

if TYPE_CHECKING:
    from collections.abc import Mapping


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("fsmcheck", "fsmcheck FSM workloads")
    group.addoption("--fsm-seed", type=int, default=None, help="Seed for workload transition RNGs.")
    group.addoption("--fsm-thread-count", type=int, default=None, help="Override the workers per workload.")
    group.addoption("--fsm-iterations", type=int, default=None, help="Override the iterations per worker.")
    group.addoption(
        "--fsm-topology",
        default=None,
        choices=TOPOLOGIES,
        help="'document' (per-document concurrency control) or 'collection' (coarse locking).",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "fsm_workload: mark test as running an fsmcheck workload")


def settings_from_options(options: Mapping[str, object], environ: Mapping[str, str] | None = None) -> RunSettings:
    """Combine ``FSMCHECK_*`` environment defaults with command-line options."""
    return RunSettings.from_env(environ).merged(
        seed=options.get("fsm_seed"),
        thread_count=options.get("fsm_thread_count"),
        iterations=options.get("fsm_iterations"),
        topology=options.get("fsm_topology"),
    )


@pytest.fixture
def fsm_settings(request: pytest.FixtureRequest) -> RunSettings:
    """Run settings for this session, resolved from options and environment."""
    names = ("fsm_seed", "fsm_thread_count", "fsm_iterations", "fsm_topology")
    options = {name: request.config.getoption(name) for name in names}
    return settings_from_options(options)
