"""Pydantic schemas for chat input, stored records and live events."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .models import Message


class SendMessageRequest(BaseModel):
	match_id: str = Field(..., min_length=1)
	body: str = Field(..., min_length=1)
	local_id: Optional[str] = Field(default=None, description="Client-generated ULID")

	@field_validator("body")
	def _not_blank(cls, value: str):  # type: ignore[override]
		if not value.strip():
			raise ValueError("message body must not be blank")
		return value


class MessageRecord(BaseModel):
	message_id: str
	match_id: str
	sender_id: str
	receiver_id: str
	body: str
	sent_at: datetime
	seq: int = Field(..., ge=1)
	local_id: str
	delivered_at: Optional[datetime] = None
	read_at: Optional[datetime] = None

	@classmethod
	def from_model(cls, message: Message) -> "MessageRecord":
		return cls(**message.to_dict())

	def to_model(self) -> Message:
		return Message(
			message_id=self.message_id,
			match_id=self.match_id,
			sender_id=self.sender_id,
			receiver_id=self.receiver_id,
			body=self.body,
			sent_at=self.sent_at,
			seq=self.seq,
			local_id=self.local_id,
			delivered_at=self.delivered_at,
			read_at=self.read_at,
		)


class _LiveEvent(BaseModel):
	model_config = ConfigDict(frozen=True)

	match_id: str


class MessageAdded(_LiveEvent):
	kind: Literal["message.added"] = "message.added"
	message: MessageRecord

	@classmethod
	def of(cls, message: Message) -> "MessageAdded":
		return cls(match_id=message.match_id, message=MessageRecord.from_model(message))


class MessagesRead(_LiveEvent):
	kind: Literal["message.read"] = "message.read"
	reader_id: str
	up_to_seq: int
	read_at: datetime


class MessagesDelivered(_LiveEvent):
	kind: Literal["message.delivered"] = "message.delivered"
	recipient_id: str
	up_to_seq: int
	delivered_at: datetime


LiveEvent = Annotated[
	Union[MessageAdded, MessagesRead, MessagesDelivered],
	Field(discriminator="kind"),
]

LIVE_EVENTS: TypeAdapter[LiveEvent] = TypeAdapter(LiveEvent)


def parse_live_event(payload: dict | str | bytes) -> LiveEvent:
	if isinstance(payload, (str, bytes)):
		return LIVE_EVENTS.validate_json(payload)
	return LIVE_EVENTS.validate_python(payload)
