"""Read-only profile projections consumed by scoring and ranking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Optional, Tuple


@dataclass(frozen=True, slots=True)
class GeoPoint:
	lat: float
	lon: float


@dataclass(frozen=True, slots=True)
class VerificationFlags:
	photo_verified: bool = False
	id_verified: bool = False

	@property
	def any(self) -> bool:
		return self.photo_verified or self.id_verified


@dataclass(frozen=True, slots=True)
class EngagementCounters:
	views: int = 0
	likes_received: int = 0
	response_rate: float = 0.0  # 0..1, share of received messages answered
	photo_count: int = 0
	photo_quality: Optional[float] = None  # 0..1 from the photo pipeline, when known


@dataclass(frozen=True, slots=True)
class Profile:
	"""Attributes owned by the profile-editing collaborator."""

	user_id: str
	interests: FrozenSet[str]
	location: Optional[GeoPoint]
	last_active_at: datetime
	completeness: float = 0.0
	verification: VerificationFlags = field(default_factory=VerificationFlags)
	engagement: EngagementCounters = field(default_factory=EngagementCounters)
	age: Optional[int] = None
	has_bio: bool = False
	active_hours: FrozenSet[int] = frozenset()


@dataclass(frozen=True, slots=True)
class BehavioralProfile:
	"""Preferences learned from a viewer's swipe history; every field is optional."""

	age_range: Optional[Tuple[int, int]] = None
	prefers_verified: Optional[bool] = None
	prefers_bio: Optional[bool] = None
	min_photos: Optional[int] = None
	active_hours: FrozenSet[int] = frozenset()

	@property
	def is_empty(self) -> bool:
		return (
			self.age_range is None
			and self.prefers_verified is None
			and self.prefers_bio is None
			and self.min_photos is None
			and not self.active_hours
		)
