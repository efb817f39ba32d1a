"""Injectable time sources."""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
	def now(self) -> datetime:
		...

	async def sleep(self, seconds: float) -> None:
		...


class SystemClock:
	"""Wall clock in UTC backed by asyncio.sleep."""

	def now(self) -> datetime:
		return datetime.now(timezone.utc)

	async def sleep(self, seconds: float) -> None:
		await asyncio.sleep(max(0.0, seconds))


class MonotonicTimestamps:
	"""Hands out strictly increasing UTC timestamps from a clock.

	Two writes within the same clock tick still get distinct, ordered values,
	which is what last-write-wins comparisons rely on.
	"""

	_STEP = timedelta(microseconds=1)

	def __init__(self, clock: Clock) -> None:
		self._clock = clock
		self._last: datetime | None = None
		self._lock = threading.Lock()

	def next(self) -> datetime:
		with self._lock:
			current = self._clock.now()
			if self._last is not None and current <= self._last:
				current = self._last + self._STEP
			self._last = current
			return current
