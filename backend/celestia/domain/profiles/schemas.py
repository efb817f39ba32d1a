"""Pydantic schemas validating profile payloads at the collaborator boundary."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from celestia.domain.common.exceptions import ValidationError

from .models import BehavioralProfile, EngagementCounters, GeoPoint, Profile, VerificationFlags


class GeoPayload(BaseModel):
	lat: float = Field(..., ge=-90.0, le=90.0)
	lon: float = Field(..., ge=-180.0, le=180.0)


class EngagementPayload(BaseModel):
	views: int = Field(default=0, ge=0)
	likes_received: int = Field(default=0, ge=0)
	response_rate: float = Field(default=0.0, ge=0.0, le=1.0)
	photo_count: int = Field(default=0, ge=0)
	photo_quality: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ProfilePayload(BaseModel):
	user_id: str = Field(..., min_length=1)
	interests: List[str] = Field(default_factory=list)
	location: Optional[GeoPayload] = None
	last_active_at: datetime
	completeness: float = Field(default=0.0, ge=0.0, le=1.0)
	photo_verified: bool = False
	id_verified: bool = False
	engagement: EngagementPayload = Field(default_factory=EngagementPayload)
	age: Optional[int] = Field(default=None, ge=18, le=120)
	bio: Optional[str] = None
	active_hours: List[int] = Field(default_factory=list)

	@field_validator("interests", mode="before")
	def _normalise_interests(cls, value):  # type: ignore[override]
		if value in (None, ""):
			return []
		if isinstance(value, str):
			value = value.split(",")
		return [str(item).strip().lower() for item in value if str(item).strip()]

	@field_validator("active_hours")
	def _check_hours(cls, value):  # type: ignore[override]
		for hour in value:
			if hour < 0 or hour > 23:
				raise ValueError("active_hours must be within 0..23")
		return value

	@field_validator("last_active_at")
	def _aware(cls, value: datetime):  # type: ignore[override]
		if value.tzinfo is None:
			return value.replace(tzinfo=timezone.utc)
		return value

	def to_model(self) -> Profile:
		return Profile(
			user_id=self.user_id,
			interests=frozenset(self.interests),
			location=GeoPoint(lat=self.location.lat, lon=self.location.lon) if self.location else None,
			last_active_at=self.last_active_at,
			completeness=self.completeness,
			verification=VerificationFlags(photo_verified=self.photo_verified, id_verified=self.id_verified),
			engagement=EngagementCounters(**self.engagement.model_dump()),
			age=self.age,
			has_bio=bool(self.bio and self.bio.strip()),
			active_hours=frozenset(self.active_hours),
		)


class BehavioralPayload(BaseModel):
	age_min: Optional[int] = Field(default=None, ge=18)
	age_max: Optional[int] = Field(default=None, ge=18)
	prefers_verified: Optional[bool] = None
	prefers_bio: Optional[bool] = None
	min_photos: Optional[int] = Field(default=None, ge=0)
	active_hours: List[int] = Field(default_factory=list)

	def to_model(self) -> BehavioralProfile:
		age_range: Optional[Tuple[int, int]] = None
		if self.age_min is not None and self.age_max is not None:
			low, high = sorted((self.age_min, self.age_max))
			age_range = (low, high)
		return BehavioralProfile(
			age_range=age_range,
			prefers_verified=self.prefers_verified,
			prefers_bio=self.prefers_bio,
			min_photos=self.min_photos,
			active_hours=frozenset(hour for hour in self.active_hours if 0 <= hour <= 23),
		)


def parse_profile(payload: ProfilePayload | Mapping[str, Any]) -> Profile:
	if isinstance(payload, ProfilePayload):
		return payload.to_model()
	try:
		return ProfilePayload.model_validate(payload).to_model()
	except PydanticValidationError as exc:
		raise ValidationError("invalid_profile") from exc


def parse_behavior(payload: BehavioralPayload | Mapping[str, Any]) -> BehavioralProfile:
	if isinstance(payload, BehavioralPayload):
		return payload.to_model()
	try:
		return BehavioralPayload.model_validate(payload).to_model()
	except PydanticValidationError as exc:
		raise ValidationError("invalid_behavior") from exc
