"""Notification events emitted by the matching core.

Every event carries a deterministic `event_id` derived from what happened,
so a redelivered event has the same id as the original and consumers can
drop it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def event_id_for(kind: str, *parts: object) -> str:
	return ":".join([kind, *(str(part) for part in parts)])


class _Event(BaseModel):
	model_config = ConfigDict(frozen=True)

	event_id: str
	occurred_at: datetime

	def audience(self) -> Tuple[str, ...]:
		return ()


class MatchCreated(_Event):
	kind: Literal["match.created"] = "match.created"
	match_id: str
	participant_ids: Tuple[str, str]

	def audience(self) -> Tuple[str, ...]:
		return self.participant_ids


class MatchDeactivated(_Event):
	kind: Literal["match.deactivated"] = "match.deactivated"
	match_id: str
	participant_ids: Tuple[str, str]
	deactivated_by: str
	reason: str

	def audience(self) -> Tuple[str, ...]:
		return self.participant_ids


class MessageCreated(_Event):
	kind: Literal["message.created"] = "message.created"
	match_id: str
	message_id: str
	sender_id: str
	receiver_id: str
	seq: int
	preview: Optional[str] = None

	def audience(self) -> Tuple[str, ...]:
		return (self.receiver_id,)


NotificationEvent = Annotated[
	Union[MatchCreated, MatchDeactivated, MessageCreated],
	Field(discriminator="kind"),
]

NOTIFICATION_EVENTS: TypeAdapter[NotificationEvent] = TypeAdapter(NotificationEvent)


def parse_event(payload: dict | str | bytes) -> NotificationEvent:
	if isinstance(payload, (str, bytes)):
		return NOTIFICATION_EVENTS.validate_json(payload)
	return NOTIFICATION_EVENTS.validate_python(payload)
