"""Domain models for match conversations."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from celestia.domain.common.results import OperationResult


@dataclass(frozen=True, slots=True)
class Message:
	"""A confirmed message. Only the delivery and read timestamps ever change."""

	message_id: str
	match_id: str
	sender_id: str
	receiver_id: str
	body: str
	sent_at: datetime
	seq: int
	local_id: str
	delivered_at: Optional[datetime] = None
	read_at: Optional[datetime] = None

	def is_participant(self, user_id: str) -> bool:
		return user_id in (self.sender_id, self.receiver_id)

	def with_delivered(self, at: datetime) -> "Message":
		if self.delivered_at is not None:
			return self
		return replace(self, delivered_at=at)

	def with_read(self, at: datetime) -> "Message":
		if self.read_at is not None:
			return self
		return replace(self, read_at=at, delivered_at=self.delivered_at or at)

	def to_dict(self) -> dict:
		return {
			"message_id": self.message_id,
			"match_id": self.match_id,
			"sender_id": self.sender_id,
			"receiver_id": self.receiver_id,
			"body": self.body,
			"sent_at": self.sent_at.isoformat(),
			"seq": self.seq,
			"local_id": self.local_id,
			"delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
			"read_at": self.read_at.isoformat() if self.read_at else None,
		}


class SyncState(str, Enum):
	IDLE = "idle"
	LOADING_INITIAL = "loading_initial"
	LIVE = "live"
	PAGINATING = "paginating"
	CLOSED = "closed"


class DisplayStatus(str, Enum):
	CONFIRMED = "confirmed"
	PENDING = "pending"
	SENDING = "sending"
	FAILED = "failed"


@dataclass(frozen=True, slots=True)
class DisplayedMessage:
	"""One row of the displayed conversation: confirmed or optimistic."""

	local_id: str
	match_id: str
	sender_id: str
	body: str
	sent_at: datetime
	status: DisplayStatus
	message_id: Optional[str] = None
	seq: Optional[int] = None
	read_at: Optional[datetime] = None
	error: Optional[str] = None

	@property
	def key(self) -> str:
		return self.message_id or self.local_id

	@property
	def can_retry(self) -> bool:
		return self.status is DisplayStatus.FAILED

	@classmethod
	def confirmed(cls, message: Message) -> "DisplayedMessage":
		return cls(
			local_id=message.local_id,
			match_id=message.match_id,
			sender_id=message.sender_id,
			body=message.body,
			sent_at=message.sent_at,
			status=DisplayStatus.CONFIRMED,
			message_id=message.message_id,
			seq=message.seq,
			read_at=message.read_at,
		)


@dataclass(slots=True)
class SendResult(OperationResult):
	local_id: Optional[str] = None
	message: Optional[Message] = None
