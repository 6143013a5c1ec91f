# tests/cardinality_test/test_runner.py
# PassRunner: bounded concurrency, synchronous mode, error capture, skip-on-stop

from __future__ import annotations

import threading
import time

import pytest

from cardinality.runner import PassRunner


def _skip(name):
    return ("skipped", name)


def _err(name, e):
    return ("error", name, str(e))


@pytest.fixture()
def runner():
    r = PassRunner(workers=3)
    yield r
    r.stop()
    r.join(timeout=2)


def test_runs_every_task_and_collects_results(runner):
    tasks = {f"job{i}": (lambda i=i: i * i) for i in range(10)}
    out = runner.run(tasks, on_skip=_skip, on_error=_err)
    assert out == {f"job{i}": i * i for i in range(10)}


def test_concurrency_never_exceeds_workers(runner):
    mu = threading.Lock()
    active = [0]
    peak = [0]

    def task():
        with mu:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.02)
        with mu:
            active[0] -= 1
        return True

    runner.run({f"j{i}": task for i in range(12)}, on_skip=_skip, on_error=_err)
    assert 1 <= peak[0] <= 3


def test_task_error_is_contained(runner):
    def boom():
        raise RuntimeError("kaput")

    out = runner.run({"bad": boom, "good": lambda: "ok"}, on_skip=_skip, on_error=_err)
    assert out["bad"] == ("error", "bad", "kaput")
    assert out["good"] == "ok"


def test_sequential_mode_runs_in_caller_thread():
    r = PassRunner(workers=4)
    caller = threading.current_thread().name
    out = r.run({"a": lambda: threading.current_thread().name}, on_skip=_skip, on_error=_err, sequential=True)
    assert out["a"] == caller
    assert r.health()["workers_active"] == 0

    zero = PassRunner(workers=0)
    assert zero.run({"a": lambda: threading.current_thread().name}, on_skip=_skip, on_error=_err)["a"] == caller


def test_stop_skips_queued_tasks_and_lets_started_finish():
    stop = threading.Event()
    r = PassRunner(workers=1, stop_event=stop)
    started = threading.Event()
    finished = []

    def slow():
        started.set()
        time.sleep(0.2)
        finished.append("first")
        return "done"

    result = {}
    t = threading.Thread(target=lambda: result.update(r.run(
        {"first": slow, "second": lambda: "ran", "third": lambda: "ran"},
        on_skip=_skip, on_error=_err,
    )))
    t.start()
    assert started.wait(1)
    r.stop()
    t.join(timeout=3)
    r.join(timeout=2)

    assert result["first"] == "done"
    assert result["second"] == ("skipped", "second")
    assert result["third"] == ("skipped", "third")
    assert finished == ["first"]
