"""
Shared pytest configuration for the fsmcheck test suite.

Provides store fixtures for running workloads and a guard that fails any
test leaving worker threads behind.
"""

import os
import sys
import threading

import pytest

# Add parent directory to path so we can import fsmcheck and tests.* helpers
_fsmcheck_path = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _fsmcheck_path not in sys.path:
    sys.path.insert(0, _fsmcheck_path)

from fsmcheck.store import Database, InMemoryCollection, YieldingCollection


@pytest.fixture
def memory_db():
    """Database whose collections have document-level concurrency control."""
    return Database(collection_factory=InMemoryCollection)


@pytest.fixture
def yielding_db():
    """Database whose collections yield (and can invalidate queries) mid-update."""
    return Database(collection_factory=YieldingCollection, yield_probability=1.0, yield_delay=0.0002)


@pytest.fixture(autouse=True)
def _check_thread_cleanup(request):
    """Auto-used fixture that verifies all threads started by a test are cleaned up.

    Workloads start one thread per worker; a runner that forgets to join
    them would otherwise leak threads silently into later tests.
    """
    initial_threads = set(threading.enumerate())

    yield

    final_threads = set(threading.enumerate())
    new_threads = final_threads - initial_threads

    main_thread = threading.main_thread()
    alive_threads = [t for t in new_threads if t != main_thread and t.is_alive()]

    if alive_threads:
        print(f"\n[THREAD CLEANUP] Test: {request.node.nodeid}")
        for t in alive_threads:
            status = "daemon" if t.daemon else "NON-DAEMON"
            print(f"  - {t.name} (ident={t.ident}, {status}, alive={t.is_alive()})")

    if alive_threads:
        thread_info = ", ".join(
            f"{t.name} ({'daemon' if t.daemon else 'NON-DAEMON'}, ident={t.ident})" for t in alive_threads
        )
        pytest.fail(
            f"Test {request.node.nodeid} left {len(alive_threads)} thread(s) running: {thread_info}. "
            "All threads must be joined before test completion."
        )
