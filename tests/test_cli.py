"""Tests for the fsmcheck command-line interface."""

import pytest

from fsmcheck import workloads
from fsmcheck.cli import main
from fsmcheck.workload import WorkloadConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "FSMCHECK_SEED",
        "FSMCHECK_THREAD_COUNT",
        "FSMCHECK_ITERATIONS",
        "FSMCHECK_TOPOLOGY",
        "FSMCHECK_STORE_URL",
    ):
        monkeypatch.delenv(name, raising=False)


def _broken_workload(thread_count=2, iterations=4):
    def init(ctx, db, coll_name):
        if ctx.tid == 1:
            raise RuntimeError("state exploded")

    return WorkloadConfig(
        name="broken",
        states={"init": init},
        transitions={"init": {"init": 1}},
        thread_count=thread_count,
        iterations=iterations,
    )


def test_list(capsys):
    assert main(["list"]) == 0
    assert capsys.readouterr().out.splitlines() == ["update_inc"]


def test_run_success(capsys):
    assert main(["run", "update_inc", "--threads", "3", "--iterations", "5", "--seed", "5"]) == 0

    out = capsys.readouterr().out
    assert out.startswith("update_inc: 3 workers x 5 iterations, 15 state executions in ")
    assert out.rstrip().endswith("(seed=5)")


@pytest.mark.parametrize(
    "extra",
    [["--topology", "collection"], ["--capped"], ["--shared-collection"], ["--topology", "collection", "--capped"]],
)
def test_run_variants(extra, capsys):
    assert main(["run", "update_inc", "--threads", "4", "--iterations", "9", *extra]) == 0
    assert "36 state executions" in capsys.readouterr().out


def test_run_debug_prints_each_state(capsys):
    assert main(["run", "update_inc", "--threads", "1", "--iterations", "3", "--debug"]) == 0

    out = capsys.readouterr().out
    assert "worker-0 #1 init: ok" in out
    assert "worker-0 #3 find: ok" in out


def test_environment_defaults(monkeypatch, capsys):
    monkeypatch.setenv("FSMCHECK_SEED", "11")
    monkeypatch.setenv("FSMCHECK_THREAD_COUNT", "2")
    monkeypatch.setenv("FSMCHECK_ITERATIONS", "3")

    assert main(["run", "update_inc"]) == 0
    out = capsys.readouterr().out
    assert "2 workers x 3 iterations" in out
    assert "(seed=11)" in out


def test_flags_beat_environment(monkeypatch, capsys):
    monkeypatch.setenv("FSMCHECK_THREAD_COUNT", "2")

    assert main(["run", "update_inc", "--threads", "3", "--iterations", "3"]) == 0
    assert "3 workers x 3 iterations" in capsys.readouterr().out


def test_failing_workload(monkeypatch, capsys):
    monkeypatch.setitem(workloads._REGISTRY, "broken", _broken_workload)

    assert main(["run", "broken", "--seed", "3"]) == 1

    err = capsys.readouterr().err
    assert "fsmcheck: broken FAILED: RuntimeError: state exploded" in err
    assert "Unexpected error in worker 1 in state 'init'" in err
    assert "Replay with seed=3" in err


def test_unknown_workload(capsys):
    assert main(["run", "nope"]) == 2
    assert "fsmcheck: Unknown workload 'nope'; available: update_inc" in capsys.readouterr().err


def test_no_command(capsys):
    assert main([]) == 2
    assert "usage:" in capsys.readouterr().err


@pytest.mark.parametrize(
    "argv",
    [
        ["run", "update_inc", "--threads", "0"],
        ["run", "update_inc", "--iterations", "-2"],
        ["run", "update_inc", "--topology", "collection", "--sql", "sqlite://"],
        ["run", "update_inc", "--sql", "not a url"],
    ],
)
def test_invalid_values(argv, capsys):
    assert main(argv) == 2
    assert capsys.readouterr().err.startswith("fsmcheck: ")


def test_invalid_environment(monkeypatch, capsys):
    monkeypatch.setenv("FSMCHECK_ITERATIONS", "many")
    assert main(["run", "update_inc"]) == 2
    assert "FSMCHECK_ITERATIONS must be an integer" in capsys.readouterr().err


def test_argparse_errors_return_exit_code():
    assert main(["run", "update_inc", "--topology", "sharded"]) == 2
    assert main(["--help"]) == 0
