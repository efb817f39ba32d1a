"""ELO-style desirability ratings updated after every swipe outcome."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Tuple

DEFAULT_RATING = 1200.0
K_FACTOR = 32.0
RATING_FLOOR = 800.0
RATING_CEILING = 1600.0


def expected_score(rating_a: float, rating_b: float) -> float:
	"""Probability that a 'wins' against b under the logistic ELO model."""
	return 1.0 / (1.0 + 10 ** ((rating_b - rating_a) / 400.0))


def elo_update(rating_a: float, rating_b: float, score_a: float, *, k: float = K_FACTOR) -> Tuple[float, float]:
	"""Return updated (a, b) ratings for an outcome where a scored `score_a` in [0, 1]."""
	exp_a = expected_score(rating_a, rating_b)
	delta = k * (score_a - exp_a)
	return rating_a + delta, rating_b - delta


def normalise_rating(rating: float) -> float:
	span = RATING_CEILING - RATING_FLOOR
	return max(0.0, min(1.0, (rating - RATING_FLOOR) / span))


@dataclass(frozen=True, slots=True)
class RatingChange:
	target_id: str
	before: float
	after: float


class RatingBook:
	"""Per-user ratings owned by one engine instance.

	A swipe is treated as a match-up between the target and the viewer: a like
	or superlike is a win for the target, a pass is a loss.
	"""

	def __init__(self, *, k: float = K_FACTOR, default: float = DEFAULT_RATING) -> None:
		self._k = k
		self._default = default
		self._ratings: Dict[str, float] = {}
		self._lock = threading.Lock()

	def rating(self, user_id: str) -> float:
		with self._lock:
			return self._ratings.get(user_id, self._default)

	def snapshot(self) -> Dict[str, float]:
		with self._lock:
			return dict(self._ratings)

	def record_outcome(self, viewer_id: str, target_id: str, *, liked: bool) -> RatingChange:
		with self._lock:
			target_before = self._ratings.get(target_id, self._default)
			viewer_before = self._ratings.get(viewer_id, self._default)
			target_after, viewer_after = elo_update(
				target_before,
				viewer_before,
				1.0 if liked else 0.0,
				k=self._k,
			)
			self._ratings[target_id] = target_after
			self._ratings[viewer_id] = viewer_after
		return RatingChange(target_id=target_id, before=target_before, after=target_after)
