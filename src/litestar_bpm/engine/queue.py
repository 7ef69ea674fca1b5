"""Bounded work queue carrying walk continuations to a pool of workers.

Request-facing operations such as starting an instance or completing a task
persist their state change, submit a :class:`Continuation` and return. Workers
pick continuations up and run the walk. A continuation whose handler raises is
put back on the queue after a delay, leaving its worker free in the meantime,
and dropped with an error log once its attempts are exhausted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from uuid import UUID

__all__ = ["Continuation", "QueueStats", "WorkQueue"]

logger = logging.getLogger(__name__)


@dataclass
class Continuation:
    """Resume the walk of an instance after a node.

    Attributes:
        instance_id: The instance to walk.
        node_id: The node whose successors are walked.
        attempts: How many times a worker has run this continuation.
    """

    instance_id: UUID
    node_id: str
    attempts: int = 0


@dataclass
class QueueStats:
    """Counters describing queue activity."""

    submitted: int = 0
    completed: int = 0
    retried: int = 0
    dropped: int = 0


class WorkQueue:
    """An ``asyncio.Queue`` consumed by a fixed pool of worker tasks.

    Attributes:
        worker_count: Number of workers started by :meth:`start`.
        max_attempts: Attempts per continuation before it is dropped.
        retry_delay: Seconds to wait between attempts.
        stats: Activity counters.
    """

    def __init__(
        self,
        handler: Callable[[Continuation], Awaitable[None]],
        *,
        worker_count: int = 4,
        maxsize: int = 1000,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        """Initialize the queue.

        Args:
            handler: Coroutine function run for each continuation.
            worker_count: Number of workers.
            maxsize: Queue capacity; :meth:`submit` waits while the queue is full.
            max_attempts: Attempts per continuation.
            retry_delay: Seconds between attempts.
        """
        self._handler = handler
        self._queue: asyncio.Queue[Continuation] = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task[None]] = []
        self._delayed: set[asyncio.Task[None]] = set()
        self.worker_count = max(worker_count, 1)
        self.max_attempts = max(max_attempts, 1)
        self.retry_delay = retry_delay
        self.stats = QueueStats()

    @property
    def running(self) -> bool:
        """Whether workers are running."""
        return bool(self._workers)

    @property
    def pending(self) -> int:
        """Number of continuations waiting for a worker."""
        return self._queue.qsize()

    def start(self) -> None:
        """Start the workers. Does nothing when already running."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._work(), name=f"litestar-bpm-worker-{index}") for index in range(self.worker_count)
        ]
        logger.debug("Started %d workers", self.worker_count)

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the workers.

        Args:
            drain: Wait for queued continuations to finish first.
        """
        if not self._workers:
            return
        if drain:
            await self.join()
        workers, self._workers = self._workers, []
        tasks = [*workers, *self._delayed]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Stopped %d workers", len(workers))

    async def submit(self, continuation: Continuation) -> None:
        """Queue a continuation, starting the workers if needed.

        Args:
            continuation: The continuation to run.
        """
        self.start()
        await self._queue.put(continuation)
        self.stats.submitted += 1

    async def join(self) -> None:
        """Wait until every submitted continuation has been processed.

        Continuations waiting to be re-queued after a failure count as unprocessed.
        """
        while True:
            await self._queue.join()
            if not self._delayed:
                return
            await asyncio.gather(*self._delayed, return_exceptions=True)

    async def _work(self) -> None:
        while True:
            continuation = await self._queue.get()
            try:
                await self._run(continuation)
            finally:
                self._queue.task_done()

    async def _run(self, continuation: Continuation) -> None:
        continuation.attempts += 1
        try:
            await self._handler(continuation)
        except asyncio.CancelledError:
            raise
        except Exception:
            if continuation.attempts >= self.max_attempts:
                self.stats.dropped += 1
                logger.exception(
                    "Dropping continuation of instance %s after node %s (%d attempts)",
                    continuation.instance_id,
                    continuation.node_id,
                    continuation.attempts,
                )
                return
            self.stats.retried += 1
            logger.warning(
                "Continuation of instance %s after node %s failed, re-queueing in %.2fs",
                continuation.instance_id,
                continuation.node_id,
                self.retry_delay,
                exc_info=True,
            )
            requeue = asyncio.create_task(self._requeue(continuation))
            self._delayed.add(requeue)
            requeue.add_done_callback(self._delayed.discard)
        else:
            self.stats.completed += 1

    async def _requeue(self, continuation: Continuation) -> None:
        await asyncio.sleep(self.retry_delay)
        await self._queue.put(continuation)
