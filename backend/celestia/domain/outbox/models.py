"""Outbound message staging entries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class OutboxStatus(str, Enum):
	PENDING = "pending"
	SENDING = "sending"
	DELIVERED = "delivered"
	FAILED_RETRYABLE = "failed_retryable"
	FAILED_PERMANENT = "failed_permanent"


_OPEN = (OutboxStatus.PENDING, OutboxStatus.SENDING, OutboxStatus.FAILED_RETRYABLE)


@dataclass(frozen=True, slots=True)
class OutboxEntry:
	local_id: str
	match_id: str
	sender_id: str
	receiver_id: str
	body: str
	enqueued_seq: int
	created_at: datetime
	attempts: int = 0
	next_retry_at: Optional[datetime] = None
	status: OutboxStatus = OutboxStatus.PENDING
	last_error: Optional[str] = None
	message_id: Optional[str] = None

	@property
	def is_open(self) -> bool:
		return self.status in _OPEN

	def due(self, now: datetime) -> bool:
		return self.is_open and (self.next_retry_at is None or self.next_retry_at <= now)

	def age_seconds(self, now: datetime) -> float:
		return (now - self.created_at).total_seconds()


class OutboxRecord(BaseModel):
	local_id: str
	match_id: str
	sender_id: str
	receiver_id: str
	body: str
	enqueued_seq: int
	created_at: datetime
	attempts: int = 0
	next_retry_at: Optional[datetime] = None
	status: OutboxStatus = OutboxStatus.PENDING
	last_error: Optional[str] = None
	message_id: Optional[str] = None

	@classmethod
	def from_model(cls, entry: OutboxEntry) -> "OutboxRecord":
		return cls(
			local_id=entry.local_id,
			match_id=entry.match_id,
			sender_id=entry.sender_id,
			receiver_id=entry.receiver_id,
			body=entry.body,
			enqueued_seq=entry.enqueued_seq,
			created_at=entry.created_at,
			attempts=entry.attempts,
			next_retry_at=entry.next_retry_at,
			status=entry.status,
			last_error=entry.last_error,
			message_id=entry.message_id,
		)

	def to_model(self) -> OutboxEntry:
		return OutboxEntry(
			local_id=self.local_id,
			match_id=self.match_id,
			sender_id=self.sender_id,
			receiver_id=self.receiver_id,
			body=self.body,
			enqueued_seq=self.enqueued_seq,
			created_at=self.created_at,
			attempts=self.attempts,
			next_retry_at=self.next_retry_at,
			status=self.status,
			last_error=self.last_error,
			message_id=self.message_id,
		)
