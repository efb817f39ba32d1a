"""Candidate ranking and its session cache."""

from .cache import RankingCache, TTLCache
from .models import RankedCandidate, RankedResult
from .service import RankingService

__all__ = ["RankedCandidate", "RankedResult", "RankingCache", "RankingService", "TTLCache"]
