"""Multi-factor compatibility scoring for (viewer, candidate) pairs.

Every function here is pure: the caller supplies the clock reading and the
candidate's rating, so scores are reproducible and safe to compute in
parallel worker threads.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Mapping, Optional, Sequence, Tuple

from celestia.domain.profiles.models import BehavioralProfile, Profile

from .geo import haversine_km
from .models import ScoreBreakdown, ScoringConfig
from .ratings import DEFAULT_RATING, normalise_rating

# (upper bound in hours, score); anything older than the last bound scores RECENCY_FLOOR
RECENCY_BUCKETS: Sequence[Tuple[float, float]] = (
	(1.0, 1.0),
	(6.0, 0.8),
	(24.0, 0.6),
	(72.0, 0.4),
	(168.0, 0.2),
)
RECENCY_FLOOR = 0.1


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
	if math.isnan(value):
		return low
	return max(low, min(high, value))


def jaccard(a: frozenset, b: frozenset) -> float:
	union = a | b
	if not union:
		return 0.0
	return len(a & b) / len(union)


def interest_similarity(viewer: frozenset, candidate: frozenset, config: ScoringConfig) -> float:
	shared = len(viewer & candidate)
	if shared == 0:
		return 0.0
	bonus = min(config.interest_bonus_cap, config.interest_bonus_per_shared * shared)
	return _clamp(jaccard(viewer, candidate) + bonus)


def proximity_score(distance_km: Optional[float], config: ScoringConfig) -> float:
	if distance_km is None:
		return config.neutral
	decay = config.decay_km
	if decay <= 0:
		return 1.0 if distance_km <= 0 else 0.0
	return _clamp(math.exp(-max(0.0, distance_km) / decay))


def recency_score(last_active_at: datetime, now: datetime) -> float:
	hours = max(0.0, (now - last_active_at).total_seconds() / 3600.0)
	for bound, score in RECENCY_BUCKETS:
		if hours < bound:
			return score
	return RECENCY_FLOOR


def activity_score(candidate: Profile, now: datetime) -> float:
	recency = recency_score(candidate.last_active_at, now)
	return _clamp(
		0.5 * recency
		+ 0.3 * _clamp(candidate.completeness)
		+ 0.2 * _clamp(candidate.engagement.response_rate)
	)


def photo_quality_score(candidate: Profile, config: ScoringConfig) -> float:
	engagement = candidate.engagement
	coverage = _clamp(engagement.photo_count / max(1, config.full_photo_count))
	if engagement.photo_quality is not None:
		base = 0.6 * _clamp(engagement.photo_quality) + 0.4 * coverage
	else:
		base = coverage
	if candidate.verification.photo_verified:
		base += 0.1
	return _clamp(base)


def desirability_score(candidate: Profile, rating: float, config: ScoringConfig) -> float:
	engagement = candidate.engagement
	if engagement.views > 0:
		like_ratio = _clamp(engagement.likes_received / engagement.views)
	else:
		like_ratio = config.neutral
	return _clamp(
		0.5 * normalise_rating(rating)
		+ 0.3 * like_ratio
		+ 0.2 * photo_quality_score(candidate, config)
	)


def behavioral_fit(behavior: Optional[BehavioralProfile], candidate: Profile, config: ScoringConfig) -> float:
	"""Average of the alignment checks the viewer's history supports."""
	if behavior is None or behavior.is_empty:
		return config.neutral
	checks: list[float] = []
	if behavior.age_range is not None and candidate.age is not None:
		low, high = behavior.age_range
		checks.append(1.0 if low <= candidate.age <= high else 0.0)
	if behavior.prefers_verified is not None:
		checks.append(1.0 if (not behavior.prefers_verified or candidate.verification.any) else 0.0)
	if behavior.prefers_bio is not None:
		checks.append(1.0 if (not behavior.prefers_bio or candidate.has_bio) else 0.0)
	if behavior.min_photos is not None:
		if behavior.min_photos <= 0:
			checks.append(1.0)
		else:
			checks.append(_clamp(candidate.engagement.photo_count / behavior.min_photos))
	if behavior.active_hours and candidate.active_hours:
		overlap = len(behavior.active_hours & candidate.active_hours)
		checks.append(overlap / len(behavior.active_hours))
	if not checks:
		return config.neutral
	return _clamp(sum(checks) / len(checks))


def weighted_total(components: Mapping[str, float], config: ScoringConfig) -> float:
	weights = config.weights.as_dict()
	total = sum(weights[name] * _clamp(components.get(name, config.neutral)) for name in weights)
	return _clamp(total * 100.0, 0.0, 100.0)


class ScoringEngine:
	"""Computes ScoreBreakdowns; holds configuration only."""

	def __init__(self, config: ScoringConfig | None = None) -> None:
		self.config = config or ScoringConfig()

	def distance_km(self, viewer: Profile, candidate: Profile) -> Optional[float]:
		if viewer.location is None or candidate.location is None:
			return None
		return haversine_km(viewer.location, candidate.location)

	def within_range(self, viewer: Profile, candidate: Profile) -> bool:
		"""Candidates beyond max distance are excluded before scoring.

		Missing coordinates cannot be ruled out, so they stay eligible.
		"""
		distance = self.distance_km(viewer, candidate)
		return distance is None or distance <= self.config.max_distance_km

	def score(
		self,
		viewer: Profile,
		candidate: Profile,
		behavioral: Optional[BehavioralProfile] = None,
		*,
		rating: float = DEFAULT_RATING,
		now: Optional[datetime] = None,
	) -> ScoreBreakdown:
		now = now or datetime.now(timezone.utc)
		distance = self.distance_km(viewer, candidate)
		components = {
			"interest": interest_similarity(viewer.interests, candidate.interests, self.config),
			"proximity": proximity_score(distance, self.config),
			"activity": activity_score(candidate, now),
			"desirability": desirability_score(candidate, rating, self.config),
			"behavioral": behavioral_fit(behavioral, candidate, self.config),
		}
		return ScoreBreakdown(
			candidate_id=candidate.user_id,
			interest=components["interest"],
			proximity=components["proximity"],
			activity=components["activity"],
			desirability=components["desirability"],
			behavioral=components["behavioral"],
			total=weighted_total(components, self.config),
			computed_at=now,
			distance_km=distance,
		)
