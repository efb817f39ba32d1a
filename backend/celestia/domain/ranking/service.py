"""Ranked candidate stream for a viewer."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from time import perf_counter
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set

from celestia.domain.common.exceptions import NotFound
from celestia.domain.profiles.models import BehavioralProfile, Profile
from celestia.domain.profiles.source import ProfileSource
from celestia.domain.scoring.engine import ScoringEngine
from celestia.domain.scoring.models import ScoreBreakdown
from celestia.domain.scoring.ratings import DEFAULT_RATING, RatingBook
from celestia.infra.clock import Clock, SystemClock
from celestia.obs import metrics as obs_metrics

from .cache import RankingCache
from .models import RankedCandidate, RankedResult

logger = logging.getLogger(__name__)


class DecisionLookup(Protocol):
	async def decided_targets(self, actor_id: str) -> Set[str]:
		...


def _score_chunk(
	engine: ScoringEngine,
	viewer: Profile,
	candidates: Sequence[Profile],
	behavior: Optional[BehavioralProfile],
	ratings: Mapping[str, float],
	now: datetime,
) -> List[ScoreBreakdown]:
	return [
		engine.score(
			viewer,
			candidate,
			behavior,
			rating=ratings.get(candidate.user_id, DEFAULT_RATING),
			now=now,
		)
		for candidate in candidates
	]


def _order(breakdowns: Iterable[ScoreBreakdown]) -> List[ScoreBreakdown]:
	return sorted(breakdowns, key=lambda item: (-item.total, item.candidate_id))


class RankingService:
	def __init__(
		self,
		*,
		profiles: ProfileSource,
		engine: ScoringEngine,
		cache: RankingCache,
		ratings: RatingBook,
		decisions: DecisionLookup | None = None,
		clock: Clock | None = None,
		chunk_size: int = 64,
	) -> None:
		self._profiles = profiles
		self._engine = engine
		self._cache = cache
		self._ratings = ratings
		self._decisions = decisions
		self._clock = clock or SystemClock()
		self._chunk_size = max(1, chunk_size)

	@property
	def cache(self) -> RankingCache:
		return self._cache

	async def ranked_candidates(
		self,
		viewer_id: str,
		candidate_ids: Optional[Iterable[str]] = None,
		*,
		limit: Optional[int] = None,
		include_breakdown: bool = False,
	) -> List[RankedCandidate]:
		viewer = await self._profiles.get_profile(viewer_id)
		if viewer is None:
			raise NotFound("viewer_profile_missing")
		if candidate_ids is None:
			candidate_ids = await self._profiles.list_candidate_ids(viewer_id)
		pool = {str(uid) for uid in candidate_ids if uid and str(uid) != viewer_id}
		if self._decisions is not None:
			decided = await self._decisions.decided_targets(viewer_id)
			obs_metrics.inc_ranking_excluded("already_decided", len(pool & decided))
			pool -= decided

		result = await self._cache.get_or_compute(
			viewer_id,
			pool,
			lambda: self._compute(viewer, frozenset(pool)),
		)
		items = list(result.items[:limit] if limit is not None else result.items)
		if include_breakdown:
			return items
		return [item.without_breakdown() for item in items]

	async def _compute(self, viewer: Profile, candidate_ids: frozenset) -> RankedResult:
		started = perf_counter()
		profiles = await self._profiles.get_profiles(sorted(candidate_ids))
		behavior = await self._profiles.get_behavior(viewer.user_id)
		eligible = [profile for profile in profiles if self._engine.within_range(viewer, profile)]
		obs_metrics.inc_ranking_excluded("missing_profile", len(candidate_ids) - len(profiles))
		obs_metrics.inc_ranking_excluded("out_of_range", len(profiles) - len(eligible))

		reused: Dict[str, ScoreBreakdown] = {}
		to_score: List[Profile] = []
		for profile in eligible:
			cached = self._cache.cached_score(viewer.user_id, profile.user_id)
			if cached is not None:
				reused[profile.user_id] = cached
			else:
				to_score.append(profile)

		fresh = await self._score_parallel(viewer, to_score, behavior)
		for breakdown in fresh:
			self._cache.store_score(viewer.user_id, breakdown)

		ordered = _order([*reused.values(), *fresh])
		elapsed_ms = (perf_counter() - started) * 1000.0
		obs_metrics.SCORE_DURATION.observe(elapsed_ms)
		obs_metrics.RANKING_CANDIDATES.inc(len(fresh))
		logger.info(
			"ranking.computed",
			extra={
				"viewer_id": viewer.user_id,
				"candidates": len(candidate_ids),
				"eligible": len(eligible),
				"scored": len(fresh),
				"reused": len(reused),
				"elapsed_ms": round(elapsed_ms, 2),
			},
		)
		return RankedResult(
			viewer_id=viewer.user_id,
			candidate_ids=candidate_ids,
			items=tuple(RankedCandidate(candidate_id=item.candidate_id, score=item.total, breakdown=item) for item in ordered),
		)

	async def _score_parallel(
		self,
		viewer: Profile,
		candidates: Sequence[Profile],
		behavior: Optional[BehavioralProfile],
	) -> List[ScoreBreakdown]:
		if not candidates:
			return []
		ratings = self._ratings.snapshot()
		now = self._clock.now()
		chunks = [candidates[i : i + self._chunk_size] for i in range(0, len(candidates), self._chunk_size)]
		results = await asyncio.gather(
			*(
				asyncio.to_thread(_score_chunk, self._engine, viewer, chunk, behavior, ratings, now)
				for chunk in chunks
			)
		)
		return [breakdown for chunk in results for breakdown in chunk]

	def refresh(self, viewer_id: str) -> int:
		return self._cache.invalidate_viewer(viewer_id)

	def on_decision(self, viewer_id: str) -> int:
		return self._cache.invalidate_viewer(viewer_id)

	async def on_profile_edited(self, user_id: str) -> None:
		self._cache.invalidate_profile(user_id)
