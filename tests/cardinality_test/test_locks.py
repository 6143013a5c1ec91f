# tests/cardinality_test/test_locks.py

from __future__ import annotations

import threading

import pytest

from cardinality.locks import JobLocks


def test_session_tracks_holder_and_releases():
    locks = JobLocks()
    with locks.session("api", "w1"):
        assert locks.health()["active"]["api"]["holder"] == "w1"
    assert locks.health()["active"] == {}


def test_jobs_are_independent_and_same_job_times_out():
    locks = JobLocks(default_timeout=0.05)
    with locks.session("api", "w1"):
        with locks.session("web", "w2"):
            pass
        errs = []

        def contend():
            try:
                with locks.session("api", "w3"):
                    pass
            except TimeoutError as e:
                errs.append(e)

        t = threading.Thread(target=contend)
        t.start()
        t.join()
        assert len(errs) == 1


def test_release_by_non_holder_is_ignored():
    locks = JobLocks()
    assert locks.acquire("api", "w1", timeout=0.1)
    locks.release("api", "intruder")
    assert locks.health()["active"]["api"]["holder"] == "w1"
    locks.release("api", "w1")
    assert locks.acquire("api", "w2", timeout=0.1)
