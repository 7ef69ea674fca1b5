"""Tests for the continuation queue and per-instance locks."""

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from litestar_bpm.engine.locks import InstanceLocks
from litestar_bpm.engine.queue import Continuation, WorkQueue


@pytest.mark.unit
@pytest.mark.asyncio
class TestWorkQueue:
    """Tests for WorkQueue."""

    async def test_runs_submitted_continuations(self) -> None:
        """Test workers start on submit and process every continuation."""
        seen: list[str] = []

        async def handler(continuation: Continuation) -> None:
            seen.append(continuation.node_id)

        queue = WorkQueue(handler, worker_count=2)
        assert not queue.running

        for node_id in ("a", "b", "c"):
            await queue.submit(Continuation(uuid4(), node_id))
        await queue.join()
        await queue.stop()

        assert sorted(seen) == ["a", "b", "c"]
        assert queue.stats.submitted == 3
        assert queue.stats.completed == 3
        assert not queue.running

    async def test_failed_continuation_is_retried(self) -> None:
        """Test a crashing handler is retried until it succeeds."""
        attempts: list[int] = []

        async def handler(continuation: Continuation) -> None:
            attempts.append(continuation.attempts)
            if continuation.attempts < 2:
                msg = "store unavailable"
                raise ConnectionError(msg)

        queue = WorkQueue(handler, worker_count=1, max_attempts=3, retry_delay=0)
        await queue.submit(Continuation(uuid4(), "a"))
        await queue.stop()

        assert attempts == [1, 2]
        assert queue.stats.retried == 1
        assert queue.stats.completed == 1
        assert queue.stats.dropped == 0

    async def test_retry_leaves_worker_free(self) -> None:
        """Test a failed continuation goes back on the queue behind waiting work."""
        seen: list[tuple[str, int]] = []

        async def handler(continuation: Continuation) -> None:
            seen.append((continuation.node_id, continuation.attempts))
            if continuation.node_id == "a" and continuation.attempts == 1:
                msg = "store unavailable"
                raise ConnectionError(msg)

        queue = WorkQueue(handler, worker_count=1, max_attempts=2, retry_delay=0.05)
        await queue.submit(Continuation(uuid4(), "a"))
        await queue.submit(Continuation(uuid4(), "b"))
        await queue.join()

        assert seen == [("a", 1), ("b", 1), ("a", 2)]
        assert queue.stats.retried == 1
        assert queue.stats.completed == 2
        await queue.stop()

    async def test_exhausted_continuation_is_dropped(self) -> None:
        """Test a continuation is dropped after its last attempt."""

        async def handler(continuation: Continuation) -> None:
            msg = "always broken"
            raise RuntimeError(msg)

        queue = WorkQueue(handler, worker_count=1, max_attempts=2, retry_delay=0)
        await queue.submit(Continuation(uuid4(), "a"))
        await queue.stop()

        assert queue.stats.retried == 1
        assert queue.stats.dropped == 1
        assert queue.stats.completed == 0

    async def test_stop_without_drain(self) -> None:
        """Test stopping without draining cancels in-flight work."""
        started = asyncio.Event()

        async def handler(continuation: Continuation) -> None:
            started.set()
            await asyncio.sleep(3600)

        queue = WorkQueue(handler, worker_count=1)
        await queue.submit(Continuation(uuid4(), "a"))
        await started.wait()

        await queue.stop(drain=False)

        assert not queue.running
        assert queue.stats.completed == 0

    async def test_start_is_idempotent(self) -> None:
        """Test starting twice keeps one pool."""

        async def handler(continuation: Continuation) -> None:
            return None

        queue = WorkQueue(handler, worker_count=3)
        queue.start()
        queue.start()

        assert len(queue._workers) == 3
        await queue.stop()


@pytest.mark.unit
@pytest.mark.asyncio
class TestInstanceLocks:
    """Tests for InstanceLocks."""

    async def test_serializes_one_instance(self) -> None:
        """Test critical sections of one instance never overlap."""
        locks = InstanceLocks()
        instance_id = uuid4()
        inside = 0
        overlaps = 0

        async def critical() -> None:
            nonlocal inside, overlaps
            async with locks.hold(instance_id):
                inside += 1
                if inside > 1:
                    overlaps += 1
                await asyncio.sleep(0)
                inside -= 1

        await asyncio.gather(*(critical() for _ in range(10)))

        assert overlaps == 0

    async def test_other_instances_are_independent(self) -> None:
        """Test holding one instance lock does not block another."""
        locks = InstanceLocks()
        first, second = uuid4(), uuid4()

        async with locks.hold(first):
            assert locks.is_locked(first)
            async with locks.hold(second):
                assert locks.is_locked(second)

    async def test_unused_locks_are_dropped(self) -> None:
        """Test locks disappear once nobody holds them."""
        locks = InstanceLocks()
        instance_id = uuid4()

        async with locks.hold(instance_id):
            assert len(locks) == 1

        assert len(locks) == 0
        assert not locks.is_locked(instance_id)

    async def test_lock_released_on_error(self) -> None:
        """Test an exception inside the block releases the lock."""
        locks = InstanceLocks()
        instance_id = uuid4()

        with pytest.raises(ValueError, match="boom"):
            async with locks.hold(instance_id):
                msg = "boom"
                raise ValueError(msg)

        assert not locks.is_locked(instance_id)
        assert len(locks) == 0
