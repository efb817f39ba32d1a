"""In-process fixed-window counters used while the remote authority is unreachable."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Tuple

from celestia.infra.rate_limit import window_start


@dataclass(slots=True)
class LocalCounter:
	window_start: float
	count: int = 0


class LocalQuotaCounter:
	"""Mirror of the remote counters.

	Every successful remote answer overwrites the mirror, so the fallback
	continues from the server's count instead of starting from zero.
	"""

	def __init__(self) -> None:
		self._lock = threading.Lock()
		self._counters: Dict[Tuple[str, str], LocalCounter] = {}

	def _current(self, user_id: str, action: str, now: float, window_seconds: int) -> LocalCounter:
		start = window_start(now, window_seconds)
		counter = self._counters.get((user_id, action))
		if counter is None or counter.window_start != start:
			counter = LocalCounter(window_start=start)
			self._counters[(user_id, action)] = counter
		return counter

	def increment(self, user_id: str, action: str, *, now: float, window_seconds: int) -> LocalCounter:
		with self._lock:
			counter = self._current(user_id, action, now, window_seconds)
			counter.count += 1
			return LocalCounter(window_start=counter.window_start, count=counter.count)

	def peek(self, user_id: str, action: str, *, now: float, window_seconds: int) -> LocalCounter:
		with self._lock:
			counter = self._current(user_id, action, now, window_seconds)
			return LocalCounter(window_start=counter.window_start, count=counter.count)

	def overwrite(self, user_id: str, action: str, *, count: int, window_start: float) -> None:
		with self._lock:
			self._counters[(user_id, action)] = LocalCounter(window_start=window_start, count=max(0, int(count)))

	def clear(self) -> None:
		with self._lock:
			self._counters.clear()
