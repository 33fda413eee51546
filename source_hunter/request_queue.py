"""Rate-limited outbound request queue.

Every call to the remote comment API goes through a RequestQueue. Tasks run
strictly FIFO, one at a time, with a minimum interval between the start of
consecutive dispatches (default 250ms, i.e. at most ~4 requests per second).

Each enqueued task may carry a CancelToken. When a scan is paused its token is
cancelled, and any of its tasks still waiting in the queue are dropped instead
of dispatched; their awaiters receive RequestCancelled. A task that has already
been dispatched always runs to completion.

Example:
    >>> queue = RequestQueue(min_interval=0.25)
    >>> token = CancelToken()
    >>> data = await queue.enqueue(lambda: fetch_page(...), token=token)
"""

import asyncio
import collections
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

import structlog

logger = structlog.get_logger()

DEFAULT_MIN_INTERVAL = 0.25


class RequestCancelled(Exception):
    """Raised to the awaiter of a task dropped because its token was cancelled."""
    pass


class CancelToken:
    """Cooperative cancellation flag shared by one scan run and its queued requests."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


_Entry = Tuple[Callable[[], Awaitable[Any]], asyncio.Future, Optional[CancelToken]]


class RequestQueue:
    """FIFO queue with concurrency 1 and fixed minimum dispatch spacing.

    The queue is unbounded and has no priorities. A single background worker
    task drains it; enqueuing while the worker is draining just appends.

    Attributes:
        min_interval: Minimum seconds between the start of consecutive dispatches
        dispatched: Number of tasks actually started (dropped tasks excluded)
    """

    def __init__(self, min_interval: float = DEFAULT_MIN_INTERVAL):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self.dispatched = 0
        self._pending: Deque[_Entry] = collections.deque()
        self._worker: Optional[asyncio.Task] = None
        self._last_dispatch: Optional[float] = None

    def __len__(self) -> int:
        return len(self._pending)

    async def enqueue(
        self,
        task: Callable[[], Awaitable[Any]],
        token: Optional[CancelToken] = None
    ) -> Any:
        """Append a task and wait for its result.

        Args:
            task: Zero-argument callable returning an awaitable
            token: Optional CancelToken; if cancelled before dispatch the task is dropped

        Returns:
            Whatever the task's awaitable returns

        Raises:
            RequestCancelled: If the token was cancelled before the task was dispatched
            Exception: Any exception raised by the task itself
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending.append((task, future, token))

        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())

        return await future

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()

        while self._pending:
            task, future, token = self._pending.popleft()

            if self._drop_if_cancelled(future, token):
                continue

            if self._last_dispatch is not None:
                wait = self._last_dispatch + self.min_interval - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)

            # Token may have been cancelled while we were pacing
            if self._drop_if_cancelled(future, token):
                continue

            self._last_dispatch = loop.time()
            self.dispatched += 1

            try:
                result = await task()
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

    def _drop_if_cancelled(self, future: asyncio.Future, token: Optional[CancelToken]) -> bool:
        if future.done():
            # Awaiter went away (e.g. its own task was cancelled)
            return True
        if token is not None and token.cancelled:
            logger.debug("queued_request_dropped", pending=len(self._pending))
            future.set_exception(RequestCancelled("Request dropped: scan was cancelled"))
            return True
        return False
