"""Candidate scoring."""

from .engine import ScoringEngine, jaccard
from .models import ScoreBreakdown, ScoringConfig, ScoringWeights
from .ratings import RatingBook

__all__ = [
	"RatingBook",
	"ScoreBreakdown",
	"ScoringConfig",
	"ScoringEngine",
	"ScoringWeights",
	"jaccard",
]
