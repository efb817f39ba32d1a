"""Redis-backed fixed-window counters; the authoritative quota service."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from celestia.infra.redis import TRANSPORT_ERRORS, KeySpace, as_transient


@dataclass(slots=True)
class QuotaWindow:
	"""Counter state for one (actor, kind) fixed window."""

	count: int
	window_start: float
	window_seconds: int

	@property
	def resets_at(self) -> float:
		return self.window_start + self.window_seconds


def window_slot(now: float, window_seconds: int) -> int:
	window = max(1, int(window_seconds))
	return int(math.floor(now / window))


def window_start(now: float, window_seconds: int) -> float:
	window = max(1, int(window_seconds))
	return float(window_slot(now, window) * window)


class RedisQuotaService:
	"""Counts actions per fixed window in Redis.

	Redis is the single authority shared by every client session; transport
	failures surface as TransientError so callers can fall back.
	"""

	def __init__(self, client: redis.Redis, *, keys: KeySpace | None = None) -> None:
		self._client = client
		self._keys = keys or KeySpace()

	def _key(self, kind: str, actor_id: str, now: float, window_seconds: int) -> str:
		window = max(1, int(window_seconds))
		return self._keys("rl", kind, actor_id, window_slot(now, window), window)

	async def increment(
		self,
		kind: str,
		actor_id: str,
		*,
		window_seconds: int,
		now: Optional[float] = None,
	) -> QuotaWindow:
		now = now if now is not None else time.time()
		key = self._key(kind, actor_id, now, window_seconds)
		try:
			async with self._client.pipeline(transaction=True) as pipe:
				pipe.incr(key)
				pipe.expire(key, max(1, int(window_seconds)))
				count, _ = await pipe.execute()
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return QuotaWindow(count=int(count), window_start=window_start(now, window_seconds), window_seconds=int(window_seconds))

	async def peek(
		self,
		kind: str,
		actor_id: str,
		*,
		window_seconds: int,
		now: Optional[float] = None,
	) -> QuotaWindow:
		now = now if now is not None else time.time()
		key = self._key(kind, actor_id, now, window_seconds)
		try:
			raw = await self._client.get(key)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return QuotaWindow(
			count=max(0, int(raw or 0)),
			window_start=window_start(now, window_seconds),
			window_seconds=int(window_seconds),
		)

	async def allow(
		self,
		kind: str,
		actor_id: str,
		*,
		limit: int,
		window_seconds: int = 60,
		now: Optional[float] = None,
	) -> bool:
		"""Return True when the operation is still within the allowed budget."""

		if limit <= 0:
			return False
		state = await self.increment(kind, actor_id, window_seconds=window_seconds, now=now)
		return state.count <= limit
