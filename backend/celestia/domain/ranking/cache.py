"""Two-tier, session-scoped memoisation of candidate scores and result sets."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Generic, Hashable, Iterable, Optional, Tuple, TypeVar

from celestia.domain.scoring.models import ScoreBreakdown
from celestia.obs import metrics as obs_metrics

from .models import RankedResult, candidate_fingerprint

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache(Generic[K, V]):
	"""Bounded LRU map whose entries expire after a fixed TTL.

	Expired entries are purged when touched and reported as misses; they are
	never returned.
	"""

	def __init__(self, *, name: str, ttl_seconds: float, capacity: int, time_fn: Callable[[], float]) -> None:
		if capacity <= 0:
			raise ValueError("capacity must be positive")
		self.name = name
		self.ttl_seconds = ttl_seconds
		self.capacity = capacity
		self._time = time_fn
		self._entries: "OrderedDict[K, Tuple[float, V]]" = OrderedDict()

	def __len__(self) -> int:
		return len(self._entries)

	def __contains__(self, key: object) -> bool:
		return key in self._entries

	def get(self, key: K) -> Optional[V]:
		entry = self._entries.get(key, _MISSING)
		if entry is _MISSING:
			obs_metrics.inc_ranking_cache(self.name, "miss")
			return None
		expires_at, value = entry  # type: ignore[misc]
		if expires_at <= self._time():
			del self._entries[key]
			obs_metrics.inc_ranking_cache(self.name, "expired")
			self._publish_size()
			return None
		self._entries.move_to_end(key)
		obs_metrics.inc_ranking_cache(self.name, "hit")
		return value

	def put(self, key: K, value: V) -> None:
		self._entries[key] = (self._time() + self.ttl_seconds, value)
		self._entries.move_to_end(key)
		while len(self._entries) > self.capacity:
			evicted, _ = self._entries.popitem(last=False)
			obs_metrics.inc_ranking_cache(self.name, "evicted")
			logger.debug("ranking_cache.evicted", extra={"tier": self.name, "key": str(evicted)})
		self._publish_size()

	def pop_where(self, predicate: Callable[[K, V], bool]) -> int:
		doomed = [key for key, (_, value) in self._entries.items() if predicate(key, value)]
		for key in doomed:
			del self._entries[key]
		if doomed:
			self._publish_size()
		return len(doomed)

	def clear(self) -> None:
		self._entries.clear()
		self._publish_size()

	def _publish_size(self) -> None:
		obs_metrics.set_ranking_cache_size(self.name, len(self._entries))


ScoreKey = Tuple[str, str]
ResultKey = Tuple[str, str]


class RankingCache:
	"""Per-session cache owned by one RankingService.

	- score tier: (viewer, candidate) -> ScoreBreakdown, short TTL
	- result tier: (viewer, candidate-set fingerprint) -> RankedResult, longer TTL,
	  LRU-bounded to a small number of viewer result sets
	"""

	def __init__(
		self,
		*,
		score_ttl_seconds: float = 60.0,
		result_ttl_seconds: float = 300.0,
		result_capacity: int = 50,
		score_capacity: int = 5000,
		time_fn: Callable[[], float] = time.monotonic,
	) -> None:
		self.scores: TTLCache[ScoreKey, ScoreBreakdown] = TTLCache(
			name="score", ttl_seconds=score_ttl_seconds, capacity=score_capacity, time_fn=time_fn
		)
		self.results: TTLCache[ResultKey, RankedResult] = TTLCache(
			name="result", ttl_seconds=result_ttl_seconds, capacity=result_capacity, time_fn=time_fn
		)

	async def get_or_compute(
		self,
		viewer_id: str,
		candidate_ids: Iterable[str],
		compute: Callable[[], Awaitable[RankedResult]],
	) -> RankedResult:
		ids = frozenset(candidate_ids)
		key = (viewer_id, candidate_fingerprint(ids))
		cached = self.results.get(key)
		if cached is not None:
			return cached
		result = await compute()
		self.results.put(key, result)
		return result

	def cached_score(self, viewer_id: str, candidate_id: str) -> Optional[ScoreBreakdown]:
		return self.scores.get((viewer_id, candidate_id))

	def store_score(self, viewer_id: str, breakdown: ScoreBreakdown) -> None:
		self.scores.put((viewer_id, breakdown.candidate_id), breakdown)

	def invalidate_viewer(self, viewer_id: str) -> int:
		"""Drop every result set computed for a viewer (new swipe or explicit refresh)."""
		dropped = self.results.pop_where(lambda key, _: key[0] == viewer_id)
		logger.debug("ranking_cache.invalidate_viewer", extra={"viewer_id": viewer_id, "dropped": dropped})
		return dropped

	def invalidate_profile(self, user_id: str) -> int:
		"""Drop results and scores touching a user whose profile changed."""
		dropped = self.results.pop_where(lambda _, result: result.involves(user_id))
		dropped += self.scores.pop_where(lambda key, _: user_id in key)
		logger.debug("ranking_cache.invalidate_profile", extra={"edited_user": user_id, "dropped": dropped})
		return dropped

	def clear(self) -> None:
		self.results.clear()
		self.scores.clear()
