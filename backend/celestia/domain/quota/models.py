"""Quota policies and decisions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:  # pragma: no cover - typing only
	from celestia.settings import Settings

DAY_SECONDS = 86_400
HOUR_SECONDS = 3_600


@dataclass(frozen=True, slots=True)
class QuotaPolicy:
	limit: int
	window_seconds: int
	premium_exempt: bool = False


DEFAULT_POLICIES: Dict[str, QuotaPolicy] = {
	"swipe": QuotaPolicy(limit=50, window_seconds=DAY_SECONDS, premium_exempt=True),
	"superlike": QuotaPolicy(limit=1, window_seconds=DAY_SECONDS),
	"message": QuotaPolicy(limit=100, window_seconds=HOUR_SECONDS),
}


def policies_from_settings(settings: "Settings") -> Dict[str, QuotaPolicy]:
	return {
		"swipe": QuotaPolicy(limit=settings.quota_swipe_per_day, window_seconds=DAY_SECONDS, premium_exempt=True),
		"superlike": QuotaPolicy(limit=settings.quota_superlike_per_day, window_seconds=DAY_SECONDS),
		"message": QuotaPolicy(limit=settings.quota_message_per_hour, window_seconds=HOUR_SECONDS),
	}


@dataclass(slots=True)
class QuotaDecision:
	action: str
	allowed: bool
	limit: int
	used: int
	source: str  # remote | local | exempt
	reset_at: Optional[datetime] = None
	retry_after: Optional[float] = None

	@property
	def remaining(self) -> int:
		return max(0, self.limit - self.used)
