"""Ranked candidate records served to the presentation layer."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from typing import FrozenSet, Iterable, Optional, Tuple

from celestia.domain.scoring.models import ScoreBreakdown


@dataclass(frozen=True, slots=True)
class RankedCandidate:
	candidate_id: str
	score: float
	breakdown: Optional[ScoreBreakdown] = None

	def without_breakdown(self) -> "RankedCandidate":
		return replace(self, breakdown=None)


@dataclass(frozen=True, slots=True)
class RankedResult:
	"""An ordered result set for one viewer and one candidate set."""

	viewer_id: str
	candidate_ids: FrozenSet[str]
	items: Tuple[RankedCandidate, ...]

	def involves(self, user_id: str) -> bool:
		return user_id == self.viewer_id or user_id in self.candidate_ids


def candidate_fingerprint(candidate_ids: Iterable[str]) -> str:
	joined = "\n".join(sorted(set(candidate_ids)))
	return hashlib.sha256(joined.encode("utf-8")).hexdigest()
