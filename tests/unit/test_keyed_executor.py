"""Tests for per-key serial execution."""

from __future__ import annotations

import threading
import time

import pytest

from services.ingestion.keyed_executor import KeyedLocks, KeyedSerialExecutor


@pytest.fixture
def executor():
    ex = KeyedSerialExecutor(max_workers=4, name="test")
    yield ex
    ex.shutdown(wait=True)


class TestKeyedSerialExecutor:
    def test_same_key_runs_in_submission_order(self, executor):
        seen = []

        def task(i):
            time.sleep(0.001 * (i % 3))
            seen.append(i)

        futures = [executor.submit("DEV-1", task, i) for i in range(40)]
        for f in futures:
            f.result(timeout=5)
        assert seen == list(range(40))

    def test_different_keys_run_in_parallel(self, executor):
        started = threading.Event()

        def waits_for_other():
            return started.wait(timeout=5)

        blocked = executor.submit("DEV-A", waits_for_other)
        executor.submit("DEV-B", started.set)
        assert blocked.result(timeout=5) is True

    def test_failure_does_not_stop_the_lane(self, executor):
        def boom():
            raise ValueError("bad window")

        failed = executor.submit("DEV-1", boom)
        after = executor.submit("DEV-1", lambda: "ok")
        assert after.result(timeout=5) == "ok"
        assert isinstance(failed.exception(timeout=5), ValueError)

    def test_wait_idle(self, executor):
        done = []
        for i in range(10):
            executor.submit(f"DEV-{i % 3}", lambda i=i: done.append(i))
        assert executor.wait_idle(timeout=5) is True
        assert sorted(done) == list(range(10))
        assert executor.pending("DEV-0") == 0


class TestKeyedLocks:
    def test_same_lock_per_key(self):
        locks = KeyedLocks()
        assert locks.get("DEV-1") is locks.get("DEV-1")
        assert locks.get("DEV-1") is not locks.get("DEV-2")
        assert len(locks) == 2
