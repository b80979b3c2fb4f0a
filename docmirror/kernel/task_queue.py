"""
docmirror Kernel: Task Queue

A per-object FIFO of asynchronous tasks. Saves and destroys for the same
object go through one of these so that at most one request is in flight
per object, requests leave in the order they were issued, and a failing
task never stalls the ones queued behind it.

Each caller gets its own future resolving to its own task's result.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

Task = Callable[[], Awaitable[Any]]


@dataclass
class _QueuedTask:
    task: Task
    completion: asyncio.Future


class TaskQueue:
    """FIFO of zero-argument coroutine factories, run one at a time."""

    def __init__(self) -> None:
        self.queue: deque[_QueuedTask] = deque()
        self.running = False

    def __len__(self) -> int:
        return len(self.queue)

    def enqueue(self, task: Task) -> asyncio.Future:
        """
        Append a task. Starts it right away when nothing else is queued.
        Must be called with a running event loop.
        """
        loop = asyncio.get_running_loop()
        entry = _QueuedTask(task=task, completion=loop.create_future())
        self.queue.append(entry)
        if not self.running:
            self._start(entry)
        return entry.completion

    def _start(self, entry: _QueuedTask) -> None:
        self.running = True
        try:
            runner = asyncio.ensure_future(entry.task())
        except Exception as exc:
            # The factory itself raised before producing an awaitable.
            self._settle(entry, None, exc)
            return
        runner.add_done_callback(lambda fut: self._finish(entry, fut))

    def _finish(self, entry: _QueuedTask, runner: asyncio.Future) -> None:
        if runner.cancelled():
            self._advance()
            entry.completion.cancel()
            return
        exc = runner.exception()
        self._settle(entry, None if exc else runner.result(), exc)

    def _advance(self) -> None:
        self.queue.popleft()
        self.running = False
        if self.queue:
            self._start(self.queue[0])

    def _settle(self, entry: _QueuedTask, result: Any, exc: BaseException | None) -> None:
        self._advance()
        if entry.completion.done():
            return
        if exc is not None:
            logger.debug("task_queue: task failed: %r", exc)
            entry.completion.set_exception(exc)
        else:
            entry.completion.set_result(result)
