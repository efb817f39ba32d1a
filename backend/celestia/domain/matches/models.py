"""Match records keyed by the sorted participant pair."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from celestia.domain.common.results import OperationResult


def match_pair(user_one: str, user_two: str) -> Tuple[str, str]:
	ordered = tuple(sorted((str(user_one), str(user_two))))
	return (ordered[0], ordered[1])


def match_id_for(user_one: str, user_two: str) -> str:
	user_a, user_b = match_pair(user_one, user_two)
	return f"match:{user_a}:{user_b}"


class DeactivationReason(str, Enum):
	UNMATCH = "unmatch"
	BLOCK = "block"


@dataclass(frozen=True, slots=True)
class Match:
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
	def between(cls, user_one: str, user_two: str, *, created_at: datetime) -> "Match":
		return cls(
			match_id=match_id_for(user_one, user_two),
			participant_ids=match_pair(user_one, user_two),
			created_at=created_at,
		)

	def involves(self, user_id: str) -> bool:
		return user_id in self.participant_ids

	def other(self, user_id: str) -> str:
		user_a, user_b = self.participant_ids
		if user_id == user_a:
			return user_b
		if user_id == user_b:
			return user_a
		raise ValueError(f"{user_id} is not a participant of {self.match_id}")


@dataclass(slots=True)
class MatchOutcome(OperationResult):
	match: Optional[Match] = None
	created: bool = False
