"""Swipe decisions between an actor and a target."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from celestia.domain.common.results import OperationResult


class SwipeAction(str, Enum):
	LIKE = "like"
	SUPERLIKE = "superlike"
	PASS = "pass"

	@property
	def is_positive(self) -> bool:
		return self is not SwipeAction.PASS

	@property
	def quota_action(self) -> str:
		return "superlike" if self is SwipeAction.SUPERLIKE else "swipe"


@dataclass(frozen=True, slots=True)
class SwipeDecision:
	"""The current decision for one ordered (actor, target) pair.

	`created_at` is the server-assigned write timestamp; a stored decision is
	only ever replaced by one with a later timestamp.
	"""

	actor_id: str
	target_id: str
	action: SwipeAction
	created_at: datetime
	active: bool = True

	@property
	def pair(self) -> Tuple[str, str]:
		return (self.actor_id, self.target_id)

	@property
	def is_positive(self) -> bool:
		return self.active and self.action.is_positive

	def same_intent(self, action: SwipeAction) -> bool:
		return self.active and self.action is action

	def newer_than(self, other: Optional["SwipeDecision"]) -> bool:
		return other is None or self.created_at > other.created_at


@dataclass(slots=True)
class SwipeResult(OperationResult):
	decision: Optional[SwipeDecision] = None
	changed: bool = False
