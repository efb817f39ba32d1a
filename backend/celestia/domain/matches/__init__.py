"""Reciprocal matches."""

from .detector import MatchDetector
from .models import DeactivationReason, Match, MatchOutcome, match_id_for
from .repo import InMemoryMatchRepository, MatchRepository, RedisMatchRepository

__all__ = [
	"DeactivationReason",
	"InMemoryMatchRepository",
	"Match",
	"MatchDetector",
	"MatchOutcome",
	"MatchRepository",
	"RedisMatchRepository",
	"match_id_for",
]
