"""Score breakdown and weighting configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict


@dataclass(frozen=True, slots=True)
class ScoringWeights:
	interest: float = 0.30
	proximity: float = 0.25
	activity: float = 0.20
	desirability: float = 0.15
	behavioral: float = 0.10

	def as_dict(self) -> Dict[str, float]:
		return {
			"interest": self.interest,
			"proximity": self.proximity,
			"activity": self.activity,
			"desirability": self.desirability,
			"behavioral": self.behavioral,
		}


@dataclass(frozen=True, slots=True)
class ScoringConfig:
	weights: ScoringWeights = ScoringWeights()
	max_distance_km: float = 50.0
	interest_bonus_per_shared: float = 0.05
	interest_bonus_cap: float = 0.3
	neutral: float = 0.5
	full_photo_count: int = 6

	@property
	def decay_km(self) -> float:
		return self.max_distance_km / 3.0


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
	"""Per-component scores in [0, 1] and the weighted total in [0, 100]."""

	candidate_id: str
	interest: float
	proximity: float
	activity: float
	desirability: float
	behavioral: float
	total: float
	computed_at: datetime
	distance_km: float | None = None

	def components(self) -> Dict[str, float]:
		return {
			"interest": self.interest,
			"proximity": self.proximity,
			"activity": self.activity,
			"desirability": self.desirability,
			"behavioral": self.behavioral,
		}

	def to_dict(self) -> dict:
		return {
			"candidate_id": self.candidate_id,
			**self.components(),
			"total": self.total,
			"distance_km": self.distance_km,
			"computed_at": self.computed_at.isoformat(),
		}
