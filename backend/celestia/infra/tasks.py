"""Tracked background tasks that can be drained or cancelled together."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Coroutine, Set

logger = logging.getLogger(__name__)


class TaskGroup:
	"""Owns fire-and-forget work started by an engine instance.

	Failures are logged rather than lost; `drain()` waits for in-flight work
	and `shutdown()` cancels it.
	"""

	def __init__(self, name: str) -> None:
		self.name = name
		self._tasks: Set[asyncio.Task] = set()

	def spawn(self, coro: Coroutine, *, name: str | None = None) -> asyncio.Task:
		task = asyncio.create_task(coro, name=name or self.name)
		self._tasks.add(task)
		task.add_done_callback(self._finished)
		return task

	def _finished(self, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.error(
				"tasks.failed",
				exc_info=(type(exc), exc, exc.__traceback__),
				extra={"group": self.name, "task": task.get_name()},
			)

	@property
	def pending(self) -> int:
		return len(self._tasks)

	async def drain(self) -> None:
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)

	async def shutdown(self) -> None:
		tasks = list(self._tasks)
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError, Exception):
				await task
		self._tasks.clear()
