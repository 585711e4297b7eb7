import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class PipelineError(RuntimeError):
    pass


class QueueFullError(PipelineError):
    def __init__(self, message: str = "Queue full, task dropped"):
        super().__init__(message)


class QueueClearedError(PipelineError):
    def __init__(self, message: str = "Queue cleared"):
        super().__init__(message)


@dataclass(eq=False)
class QueueItem:
    task: TaskFactory
    future: asyncio.Future
    metadata: dict = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.monotonic)


class ProcessingQueue:
    """Bounded-concurrency FIFO scheduler that drops the oldest backlog item on overflow.

    All state is mutated from the event loop thread only.
    """

    def __init__(self, max_concurrent: int = 2, max_queue_size: int = 10):
        self.max_concurrent = max(1, int(max_concurrent))
        self.max_queue_size = max(1, int(max_queue_size))
        self._queue: deque[QueueItem] = deque()
        self._in_flight: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

        self.total_queued = 0
        self.total_processed = 0
        self.total_dropped = 0
        self.total_errors = 0
        self.peak_in_flight = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def submit(self, task: TaskFactory, metadata: dict | None = None) -> asyncio.Future:
        """Admit a task and return the future that settles with its result."""
        loop = asyncio.get_running_loop()

        self._evict_oldest(keep=self.max_queue_size - 1)

        item = QueueItem(task=task, future=loop.create_future(), metadata=dict(metadata or {}))
        self._queue.append(item)
        self.total_queued += 1
        self._idle.clear()
        self._process_next()
        return item.future

    def _evict_oldest(self, keep: int) -> None:
        """Drop the oldest queued items until at most `keep` remain."""
        while len(self._queue) > max(0, keep):
            dropped = self._queue.popleft()
            self.total_dropped += 1
            logger.warning(
                "Queue full (%s), dropping oldest task %s",
                self.max_queue_size,
                dropped.metadata.get("segment_id", "-"),
            )
            if not dropped.future.done():
                dropped.future.set_exception(QueueFullError())

    async def enqueue(self, task: TaskFactory, metadata: dict | None = None) -> Any:
        return await self.submit(task, metadata)

    def _process_next(self) -> None:
        loop = asyncio.get_running_loop()
        while len(self._in_flight) < self.max_concurrent and self._queue:
            item = self._queue.popleft()
            t = loop.create_task(self._run(item))
            self._in_flight.add(t)
            self.peak_in_flight = max(self.peak_in_flight, len(self._in_flight))
        self._update_idle()

    async def _run(self, item: QueueItem) -> None:
        logger.debug(
            "Starting task %s (waited %.0fms)",
            item.metadata.get("segment_id", "-"),
            (time.monotonic() - item.enqueued_at) * 1000.0,
        )
        try:
            result = await item.task()
        except asyncio.CancelledError:
            self.total_errors += 1
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            self.total_errors += 1
            logger.debug(f"Queued task failed: {e}")
            if not item.future.done():
                item.future.set_exception(e)
        else:
            self.total_processed += 1
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._in_flight.discard(asyncio.current_task())
            self._process_next()

    def _update_idle(self) -> None:
        if not self._queue and not self._in_flight:
            self._idle.set()
        else:
            self._idle.clear()

    async def wait_for_completion(self, timeout: float | None = None) -> bool:
        """Wait until the backlog is empty and nothing is running.

        Returns False if the timeout expired first.
        """

        async def _wait() -> None:
            while self._queue or self._in_flight:
                await self._idle.wait()
                # A new admission may have raced the wakeup.
                if self._queue or self._in_flight:
                    await asyncio.sleep(0)

        try:
            await asyncio.wait_for(_wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out waiting for queue to drain (queued=%s in_flight=%s)",
                len(self._queue),
                len(self._in_flight),
            )
            return False

    def clear(self) -> int:
        """Reject every item that has not started yet."""
        cleared = 0
        while self._queue:
            item = self._queue.popleft()
            cleared += 1
            if not item.future.done():
                item.future.set_exception(QueueClearedError())
        self._update_idle()
        if cleared:
            logger.info(f"Cleared {cleared} queued task(s)")
        return cleared

    def reconfigure(self, *, max_concurrent: int | None = None, max_queue_size: int | None = None) -> None:
        if max_concurrent is not None:
            self.max_concurrent = max(1, int(max_concurrent))
        if max_queue_size is not None:
            self.max_queue_size = max(1, int(max_queue_size))
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            # Fill newly opened slots before trimming the backlog.
            self._process_next()
        self._evict_oldest(keep=self.max_queue_size)
        self._update_idle()

    def get_stats(self) -> dict:
        return {
            "queue_size": len(self._queue),
            "processing": len(self._in_flight),
            "max_concurrent": self.max_concurrent,
            "max_queue_size": self.max_queue_size,
            "total_queued": self.total_queued,
            "total_processed": self.total_processed,
            "total_dropped": self.total_dropped,
            "total_errors": self.total_errors,
        }
