"""Delivery and read-state tracking helpers."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from celestia.obs import metrics as obs_metrics

from .models import Message


class ReadStateRepository(Protocol):
	async def mark_read(self, match_id: str, reader_id: str, *, up_to_seq: int, at: datetime) -> int:
		...

	async def mark_delivered(self, match_id: str, recipient_id: str, *, up_to_seq: int, at: datetime) -> int:
		...


class ReadStateBatcher:
	"""Collects unread inbound messages for one match and marks them read in one call."""

	def __init__(self, repo: ReadStateRepository, *, match_id: str, user_id: str) -> None:
		self._repo = repo
		self.match_id = match_id
		self.user_id = user_id
		self._unread_up_to = 0
		self._unread = 0

	@property
	def unread(self) -> int:
		return self._unread

	def note(self, message: Message) -> None:
		if message.receiver_id != self.user_id or message.read_at is not None:
			return
		self._unread += 1
		self._unread_up_to = max(self._unread_up_to, message.seq)

	async def flush(self, *, at: datetime) -> int:
		if not self._unread_up_to:
			return 0
		up_to = self._unread_up_to
		changed = await self._repo.mark_read(self.match_id, self.user_id, up_to_seq=up_to, at=at)
		obs_metrics.inc_chat_read_batch()
		self._unread_up_to = 0
		self._unread = 0
		return changed
