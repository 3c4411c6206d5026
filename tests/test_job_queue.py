"""Tests for LocalJobQueue retry, priority and worker behaviour."""

from __future__ import annotations

import threading

import pytest

from mail_ingestor.core.exceptions import AuthError, TransientProviderError
from mail_ingestor.pipeline.queue import (
    PRIORITY_HIGH,
    JobDeferred,
    LocalJobQueue,
    QueuedJob,
)


@pytest.fixture
def queue() -> LocalJobQueue:
    return LocalJobQueue("test", max_attempts=3, initial_backoff=0, max_backoff=0)


class TestOrdering:
    def test_priority_then_fifo(self, queue: LocalJobQueue) -> None:
        queue.enqueue("a")
        queue.enqueue("b")
        queue.enqueue("urgent", priority=PRIORITY_HIGH)
        seen: list[str] = []

        queue.drain(lambda job: seen.append(job.payload))
        assert seen == ["urgent", "a", "b"]

    def test_len(self, queue: LocalJobQueue) -> None:
        queue.enqueue("a")
        queue.enqueue("b", delay=60)
        assert len(queue) == 2


class TestRetryPolicy:
    def test_backoff_doubles_up_to_max(self) -> None:
        queue = LocalJobQueue("q", initial_backoff=2, max_backoff=10)
        assert [queue.backoff(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 10]

    def test_retryable_error_retried(self, queue: LocalJobQueue) -> None:
        queue.enqueue("x")
        calls: list[int] = []

        def handler(job: QueuedJob) -> None:
            calls.append(job.attempts)
            if job.attempts < 3:
                raise TransientProviderError("flaky")

        assert queue.drain(handler) == 3
        assert calls == [1, 2, 3]
        assert queue.dead_letters == []

    def test_exhausted_retries_dead_letter(self, queue: LocalJobQueue) -> None:
        queue.enqueue("x")

        def handler(job: QueuedJob) -> None:
            raise TransientProviderError("still down")

        assert queue.drain(handler) == 3
        assert len(queue.dead_letters) == 1
        assert queue.dead_letters[0].last_error == "still down"

    def test_terminal_error_not_retried(self, queue: LocalJobQueue) -> None:
        queue.enqueue("x")

        def handler(job: QueuedJob) -> None:
            raise AuthError("revoked")

        assert queue.drain(handler) == 1
        assert queue.dead_letters[0].attempts == 1

    def test_plain_exception_not_retried(self, queue: LocalJobQueue) -> None:
        queue.enqueue("x")

        def handler(job: QueuedJob) -> None:
            raise KeyError("bug")

        assert queue.drain(handler) == 1
        assert len(queue.dead_letters) == 1

    def test_per_job_max_attempts(self, queue: LocalJobQueue) -> None:
        job = queue.enqueue("x", max_attempts=1)
        assert job.is_final_attempt is False

        def handler(job: QueuedJob) -> None:
            raise TransientProviderError("down")

        assert queue.drain(handler) == 1
        assert queue.dead_letters == [job]

    def test_deferral_does_not_spend_attempt(self, queue: LocalJobQueue) -> None:
        queue.enqueue("x")
        attempts: list[int] = []

        def handler(job: QueuedJob) -> None:
            attempts.append(job.attempts)
            if len(attempts) < 5:
                raise JobDeferred(0.001, "busy")

        assert queue.drain(handler) == 5
        assert attempts == [1, 1, 1, 1, 1]
        assert queue.dead_letters == []

    def test_delayed_retry_is_waited_for(self) -> None:
        queue = LocalJobQueue("q", max_attempts=2, initial_backoff=0.02, max_backoff=0.02)
        queue.enqueue("x")
        results: list[int] = []

        def handler(job: QueuedJob) -> None:
            results.append(job.attempts)
            if job.attempts == 1:
                raise TransientProviderError("once")

        queue.drain(handler)
        assert results == [1, 2]


class TestWorkers:
    def test_process_and_wait_idle(self, queue: LocalJobQueue) -> None:
        done: list[str] = []
        lock = threading.Lock()

        def handler(job: QueuedJob) -> None:
            with lock:
                done.append(job.payload)

        for i in range(20):
            queue.enqueue(f"job-{i}")
        queue.process(handler, concurrency=4)
        try:
            assert queue.wait_idle(timeout=5)
        finally:
            queue.stop(timeout=5)

        assert sorted(done) == sorted(f"job-{i}" for i in range(20))

    def test_jobs_run_concurrently(self, queue: LocalJobQueue) -> None:
        barrier = threading.Barrier(3, timeout=5)

        def handler(job: QueuedJob) -> None:
            barrier.wait()

        for i in range(3):
            queue.enqueue(i)
        queue.process(handler, concurrency=3)
        try:
            assert queue.wait_idle(timeout=5)
        finally:
            queue.stop(timeout=5)
        assert queue.dead_letters == []

    def test_stop_ends_workers(self, queue: LocalJobQueue) -> None:
        queue.process(lambda job: None, concurrency=2)
        queue.stop(timeout=5)
        queue.enqueue("late")
        assert len(queue) == 1
