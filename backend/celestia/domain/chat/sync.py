"""Conversation sync: paginated history, live tail, dedup and optimistic sends.

One engine serves one client session and keeps at most one conversation
open. Opening another match cancels the previous live subscription and bumps
the generation, so callbacks still in flight for the old match are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Set

from pydantic import ValidationError as PydanticValidationError

from celestia.domain.common.exceptions import NotFound, QuotaExceeded, TransientError, ValidationError
from celestia.domain.common.results import ResultStatus
from celestia.domain.outbox.models import OutboxStatus
from celestia.infra.clock import Clock, SystemClock
from celestia.infra.retry import BackoffPolicy
from celestia.infra.tasks import TaskGroup
from celestia.obs import logging as obs_logging
from celestia.obs import metrics as obs_metrics

from .delivery import ReadStateBatcher
from .models import DisplayedMessage, DisplayStatus, Message, SendResult, SyncState
from .repo import MessageStore
from .schemas import LiveEvent, MessageAdded, MessagesDelivered, MessagesRead, SendMessageRequest

if TYPE_CHECKING:  # pragma: no cover - typing only
	from celestia.domain.outbox.queue import OfflineQueue

logger = logging.getLogger(__name__)

RESUBSCRIBE_POLICY = BackoffPolicy(base_delay=1.0, factor=2.0, max_delay=30.0, max_attempts=1_000_000)

_DISPLAY_STATUS = {
	OutboxStatus.PENDING: DisplayStatus.PENDING,
	OutboxStatus.SENDING: DisplayStatus.SENDING,
	OutboxStatus.FAILED_RETRYABLE: DisplayStatus.PENDING,
	OutboxStatus.FAILED_PERMANENT: DisplayStatus.FAILED,
}


class QuotaEnforcer(Protocol):
	async def enforce(self, user_id: str, action: str, *, premium: bool = False) -> Any:
		...


@dataclass(frozen=True, slots=True)
class SubscriptionToken:
	match_id: str
	generation: int


class _Conversation:
	__slots__ = ("token", "counterpart_id", "seen", "messages", "last_seq", "oldest_seq", "has_more", "batcher", "task")

	def __init__(self, token: SubscriptionToken, counterpart_id: str, batcher: ReadStateBatcher) -> None:
		self.token = token
		self.counterpart_id = counterpart_id
		self.seen: Set[str] = set()
		self.messages: Dict[int, Message] = {}
		self.last_seq = 0
		self.oldest_seq: Optional[int] = None
		self.has_more = False
		self.batcher = batcher
		self.task: Optional[asyncio.Task] = None


class MessageSyncEngine:
	def __init__(
		self,
		*,
		user_id: str,
		store: MessageStore,
		queue: "OfflineQueue",
		guard: QuotaEnforcer | None = None,
		clock: Clock | None = None,
		page_size: int = 20,
		max_body_length: int = 4000,
		premium: bool = False,
		resubscribe_policy: BackoffPolicy = RESUBSCRIBE_POLICY,
	) -> None:
		self.user_id = user_id
		self._store = store
		self._queue = queue
		self._guard = guard
		self._clock = clock or SystemClock()
		self._page_size = max(1, page_size)
		self._max_body_length = max_body_length
		self._premium = premium
		self._resubscribe_policy = resubscribe_policy
		self._state = SyncState.IDLE
		self._generation = 0
		self._conversation: Optional[_Conversation] = None
		self._tasks = TaskGroup("chat.live_tail")
		self._remove_listener = queue.add_listener(self._on_outbox_delivered)

	@property
	def state(self) -> SyncState:
		return self._state

	@property
	def token(self) -> Optional[SubscriptionToken]:
		return self._conversation.token if self._conversation else None

	@property
	def match_id(self) -> Optional[str]:
		return self._conversation.token.match_id if self._conversation else None

	@property
	def has_more(self) -> bool:
		return bool(self._conversation and self._conversation.has_more)

	def _is_current(self, token: SubscriptionToken) -> bool:
		conv = self._conversation
		return conv is not None and conv.token == token and self._state is not SyncState.CLOSED

	def _require(self) -> _Conversation:
		if self._conversation is None:
			raise ValidationError("no_open_conversation")
		return self._conversation

	async def open(self, match_id: str, *, counterpart_id: str) -> List[DisplayedMessage]:
		if self._state is SyncState.CLOSED:
			raise ValidationError("sync_engine_closed")
		await self._detach()
		self._generation += 1
		token = SubscriptionToken(match_id=match_id, generation=self._generation)
		conv = _Conversation(token, counterpart_id, ReadStateBatcher(self._store, match_id=match_id, user_id=self.user_id))
		self._conversation = conv
		self._state = SyncState.LOADING_INITIAL
		try:
			recent = await self._store.list_recent(match_id, self._page_size)
		except TransientError:
			if self._is_current(token):
				self._state = SyncState.IDLE
				self._conversation = None
			raise
		if not self._is_current(token):
			obs_metrics.inc_chat_stale_callback()
			return []
		for message in reversed(recent):
			self._accept(conv, message, source="initial")
		conv.has_more = len(recent) >= self._page_size
		await self._queue.reconcile(list(conv.messages.values()))
		conv.task = self._tasks.spawn(self._pump(token, conv.last_seq), name=f"chat-live:{match_id}")
		self._state = SyncState.LIVE
		logger.info("chat.opened", extra={"match_id": match_id, "loaded": len(recent), "high_water": conv.last_seq})
		return self.displayed()

	async def load_older(self) -> List[Message]:
		conv = self._require()
		if not conv.has_more or conv.oldest_seq is None:
			return []
		token = conv.token
		self._state = SyncState.PAGINATING
		try:
			page = await self._store.list_before(token.match_id, conv.oldest_seq, self._page_size)
		finally:
			if self._is_current(token):
				self._state = SyncState.LIVE
		if not self._is_current(token):
			obs_metrics.inc_chat_stale_callback()
			return []
		added = [message for message in reversed(page) if self._accept(conv, message, source="page")]
		conv.has_more = len(page) >= self._page_size
		return added

	async def _pump(self, token: SubscriptionToken, after_seq: int) -> None:
		obs_logging.bind_context(user_id=self.user_id, match_id=token.match_id)
		attempt = 0
		while self._is_current(token):
			try:
				async for event in self._store.subscribe(token.match_id, after_seq):
					attempt = 0
					await self.on_live_event(token, event)
					if not self._is_current(token):
						return
			except TransientError as exc:
				attempt += 1
				delay = self._resubscribe_policy.delay_for(attempt)
				logger.warning(
					"chat.live_tail_lost",
					extra={"match_id": token.match_id, "attempt": attempt, "delay_s": delay, "error": exc.reason},
				)
				await self._clock.sleep(delay)
				if self._conversation is not None and self._conversation.token == token:
					after_seq = self._conversation.last_seq
				continue
			return

	async def on_live_event(self, token: SubscriptionToken, event: LiveEvent) -> bool:
		"""Apply one live event; events for a stale subscription are discarded."""
		conv = self._conversation
		if conv is None or not self._is_current(token) or event.match_id != token.match_id:
			obs_metrics.inc_chat_stale_callback()
			logger.debug("chat.stale_callback", extra={"match_id": event.match_id, "generation": token.generation})
			return False
		if isinstance(event, MessageAdded):
			message = event.message.to_model()
			if message.seq > conv.last_seq + 1:
				await self._fill_gap(conv, message.seq)
				if not self._is_current(token):
					return False
			accepted = self._accept(conv, message, source="live")
			if accepted:
				await self._after_live_message(conv, message)
			return accepted
		if isinstance(event, MessagesRead):
			if event.reader_id != self.user_id:
				self._apply_receipt(conv, event.up_to_seq, lambda m: m.with_read(event.read_at))
			return True
		if isinstance(event, MessagesDelivered):
			if event.recipient_id != self.user_id:
				self._apply_receipt(conv, event.up_to_seq, lambda m: m.with_delivered(event.delivered_at))
			return True
		return False

	async def _after_live_message(self, conv: _Conversation, message: Message) -> None:
		if message.sender_id == self.user_id:
			await self._queue.reconcile([message])
			return
		try:
			await self._store.mark_delivered(message.match_id, self.user_id, up_to_seq=message.seq, at=self._clock.now())
		except TransientError as exc:
			logger.info("chat.delivery_ack_failed", extra={"match_id": message.match_id, "error": exc.reason})

	def _apply_receipt(self, conv: _Conversation, up_to_seq: int, change) -> None:
		for seq, message in list(conv.messages.items()):
			if seq <= up_to_seq and message.sender_id == self.user_id:
				conv.messages[seq] = change(message)

	async def _fill_gap(self, conv: _Conversation, before_seq: int) -> None:
		obs_metrics.inc_chat_gap_fill()
		logger.info("chat.gap_detected", extra={"match_id": conv.token.match_id, "from": conv.last_seq, "to": before_seq})
		missing = await self._store.list_after(conv.token.match_id, conv.last_seq, before_seq - conv.last_seq - 1)
		for message in missing:
			if message.seq < before_seq:
				self._accept(conv, message, source="gap_fill")

	def _accept(self, conv: _Conversation, message: Message, *, source: str) -> bool:
		if message.message_id in conv.seen:
			known = conv.messages.get(message.seq)
			if known is not None and known.message_id == message.message_id:
				# a replayed copy may carry newer receipts
				if message.delivered_at is not None:
					known = known.with_delivered(message.delivered_at)
				if message.read_at is not None:
					known = known.with_read(message.read_at)
				conv.messages[message.seq] = known
			obs_metrics.inc_chat_inbound(source, "duplicate")
			return False
		conv.seen.add(message.message_id)
		conv.messages[message.seq] = message
		conv.last_seq = max(conv.last_seq, message.seq)
		conv.oldest_seq = message.seq if conv.oldest_seq is None else min(conv.oldest_seq, message.seq)
		conv.batcher.note(message)
		obs_metrics.inc_chat_inbound(source, "accepted")
		return True

	async def _on_outbox_delivered(self, message: Message) -> None:
		conv = self._conversation
		if conv is None or conv.token.match_id != message.match_id or self._state is SyncState.CLOSED:
			return
		if message.seq > conv.last_seq + 1:
			await self._fill_gap(conv, message.seq)
		self._accept(conv, message, source="send")

	async def mark_read(self) -> int:
		"""Mark every unread inbound message of the open match read in one batch."""
		conv = self._require()
		now = self._clock.now()
		changed = await conv.batcher.flush(at=now)
		for seq, message in list(conv.messages.items()):
			if message.receiver_id == self.user_id and message.read_at is None:
				conv.messages[seq] = message.with_read(now)
		return changed

	async def send(self, body: str, *, local_id: str | None = None) -> SendResult:
		conv = self._require()
		try:
			request = SendMessageRequest(match_id=conv.token.match_id, body=body, local_id=local_id)
		except PydanticValidationError as exc:
			raise ValidationError("invalid_message") from exc
		if len(request.body) > self._max_body_length:
			raise ValidationError("message_too_long")
		if self._guard is not None:
			try:
				await self._guard.enforce(self.user_id, "message", premium=self._premium)
			except QuotaExceeded as exc:
				obs_metrics.inc_chat_send("quota_exceeded")
				return SendResult(status=ResultStatus.QUOTA_EXCEEDED, reason=exc.reason, retry_after=exc.retry_after)
		entry = await self._queue.enqueue(
			request.match_id,
			sender_id=self.user_id,
			receiver_id=conv.counterpart_id,
			body=request.body,
			local_id=request.local_id,
		)
		return await self._deliver(entry.match_id, entry.local_id)

	async def retry(self, local_id: str) -> SendResult:
		"""Manual resend for an entry the caller sees as failed."""
		entry = self._queue.get(local_id)
		if entry is None:
			raise NotFound("outbox_entry_not_found")
		if entry.status is OutboxStatus.FAILED_PERMANENT:
			await self._queue.retry_failed(local_id)
		return await self._deliver(entry.match_id, local_id)

	async def _deliver(self, match_id: str, local_id: str) -> SendResult:
		for message in await self._queue.flush(match_id):
			if message.local_id == local_id:
				return SendResult(status=ResultStatus.SUCCESS, local_id=local_id, message=message)
		entry = self._queue.get(local_id)
		if entry is None:
			message = await self._store.find_by_local_id(match_id, local_id)
			return SendResult(status=ResultStatus.SUCCESS, local_id=local_id, message=message)
		if entry.status is OutboxStatus.FAILED_PERMANENT:
			return SendResult(status=ResultStatus.PERMANENT_FAILURE, reason=entry.last_error, local_id=local_id)
		retry_after = None
		if entry.next_retry_at is not None:
			retry_after = max(0.0, (entry.next_retry_at - self._clock.now()).total_seconds())
		obs_metrics.inc_chat_send("queued")
		return SendResult(
			status=ResultStatus.TRANSIENT_FAILURE,
			reason=entry.last_error or "queued",
			retry_after=retry_after,
			local_id=local_id,
		)

	def messages(self) -> List[Message]:
		conv = self._conversation
		if conv is None:
			return []
		return [conv.messages[seq] for seq in sorted(conv.messages)]

	def displayed(self) -> List[DisplayedMessage]:
		"""Confirmed history in order, followed by optimistic entries still in the outbox."""
		conv = self._conversation
		if conv is None:
			return []
		confirmed = self.messages()
		rows = [DisplayedMessage.confirmed(message) for message in confirmed]
		confirmed_local_ids = {m.local_id for m in confirmed if m.sender_id == self.user_id}
		for entry in self._queue.pending_for(conv.token.match_id):
			if entry.local_id in confirmed_local_ids:
				continue
			rows.append(
				DisplayedMessage(
					local_id=entry.local_id,
					match_id=entry.match_id,
					sender_id=entry.sender_id,
					body=entry.body,
					sent_at=entry.created_at,
					status=_DISPLAY_STATUS[entry.status],
					error=entry.last_error,
				)
			)
		return rows

	async def _detach(self) -> None:
		conv = self._conversation
		if conv is None:
			return
		self._conversation = None
		if conv.task is not None and not conv.task.done():
			conv.task.cancel()
			with suppress(asyncio.CancelledError):
				await conv.task
		logger.debug("chat.detached", extra={"match_id": conv.token.match_id, "generation": conv.token.generation})

	async def close(self) -> None:
		await self._detach()
		self._remove_listener()
		await self._tasks.shutdown()
		self._state = SyncState.CLOSED
