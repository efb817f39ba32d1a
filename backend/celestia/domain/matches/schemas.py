"""Stored match records."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from pydantic import BaseModel

from .models import DeactivationReason, Match


class MatchRecord(BaseModel):
	match_id: str
	participant_ids: Tuple[str, str]
	created_at: datetime
	is_active: bool = True
	deactivated_by: Optional[str] = None
	deactivated_at: Optional[datetime] = None
	deactivation_reason: Optional[DeactivationReason] = None
	last_message_preview: Optional[str] = None
	last_message_at: Optional[datetime] = None

	@classmethod
	def from_model(cls, match: Match) -> "MatchRecord":
		return cls(
			match_id=match.match_id,
			participant_ids=match.participant_ids,
			created_at=match.created_at,
			is_active=match.is_active,
			deactivated_by=match.deactivated_by,
			deactivated_at=match.deactivated_at,
			deactivation_reason=match.deactivation_reason,
			last_message_preview=match.last_message_preview,
			last_message_at=match.last_message_at,
		)

	def to_model(self) -> Match:
		return Match(
			match_id=self.match_id,
			participant_ids=self.participant_ids,
			created_at=self.created_at,
			is_active=self.is_active,
			deactivated_by=self.deactivated_by,
			deactivated_at=self.deactivated_at,
			deactivation_reason=self.deactivation_reason,
			last_message_preview=self.last_message_preview,
			last_message_at=self.last_message_at,
		)
