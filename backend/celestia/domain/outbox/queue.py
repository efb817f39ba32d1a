"""Durable outbound message queue with optimistic local ids.

Entries are delivered per match in enqueue order; a head entry that is
waiting for its retry blocks the entries behind it. Order across matches
is not guaranteed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

import ulid

from celestia.domain.chat.models import Message
from celestia.domain.chat.repo import MessageStore
from celestia.domain.common.exceptions import NotFound, PermanentDeliveryError, TransientError, ValidationError
from celestia.infra.clock import Clock, SystemClock
from celestia.infra.retry import BackoffPolicy
from celestia.obs import metrics as obs_metrics

from .models import OutboxEntry, OutboxStatus
from .store import OutboxStore

logger = logging.getLogger(__name__)

DEFAULT_OUTBOX_POLICY = BackoffPolicy(base_delay=2.0, factor=2.0, max_delay=60.0, max_attempts=5)

DeliveryListener = Callable[[Message], Awaitable[None]]


def new_local_id() -> str:
	return str(ulid.new())


class OfflineQueue:
	def __init__(
		self,
		*,
		store: OutboxStore,
		transport: MessageStore,
		clock: Clock | None = None,
		policy: BackoffPolicy = DEFAULT_OUTBOX_POLICY,
		max_age_seconds: float = 86_400.0,
		id_factory: Callable[[], str] = new_local_id,
	) -> None:
		self._store = store
		self._transport = transport
		self._clock = clock or SystemClock()
		self._policy = policy
		self._max_age = max_age_seconds
		self._id_factory = id_factory
		self._entries: Dict[str, OutboxEntry] = {}
		self._listeners: List[DeliveryListener] = []
		self._flush_lock = asyncio.Lock()
		self._online = True

	@property
	def policy(self) -> BackoffPolicy:
		return self._policy

	@property
	def online(self) -> bool:
		return self._online

	def set_online(self, online: bool) -> None:
		if online != self._online:
			logger.info("outbox.connectivity", extra={"online": online})
		self._online = online

	def add_listener(self, listener: DeliveryListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _remove() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _remove

	async def load(self) -> int:
		"""Rebuild the in-memory view from the durable store.

		Entries left in `sending` by a previous process go back to `pending`;
		the message store's local_id idempotency keeps the resend from
		creating a duplicate.
		"""
		recovered = 0
		for entry in await self._store.load_all():
			if entry.status is OutboxStatus.SENDING:
				entry = replace(entry, status=OutboxStatus.PENDING)
				await self._store.save(entry)
				recovered += 1
			self._entries[entry.local_id] = entry
		self._publish_gauge()
		if recovered:
			logger.info("outbox.recovered", extra={"count": recovered})
		return len(self._entries)

	def get(self, local_id: str) -> Optional[OutboxEntry]:
		return self._entries.get(local_id)

	def pending_for(self, match_id: str) -> List[OutboxEntry]:
		"""Undelivered entries for a match (failed ones included) in enqueue order."""
		entries = [
			e
			for e in self._entries.values()
			if e.match_id == match_id and e.status is not OutboxStatus.DELIVERED
		]
		return sorted(entries, key=lambda e: e.enqueued_seq)

	def open_matches(self) -> Set[str]:
		return {e.match_id for e in self._entries.values() if e.is_open}

	def next_due_at(self) -> Optional[datetime]:
		due = [e.next_retry_at or e.created_at for e in self._entries.values() if e.is_open]
		return min(due) if due else None

	async def enqueue(
		self,
		match_id: str,
		*,
		sender_id: str,
		receiver_id: str,
		body: str,
		local_id: str | None = None,
	) -> OutboxEntry:
		local_id = local_id or self._id_factory()
		existing = self._entries.get(local_id)
		if existing is not None:
			return existing
		entry = OutboxEntry(
			local_id=local_id,
			match_id=match_id,
			sender_id=sender_id,
			receiver_id=receiver_id,
			body=body,
			enqueued_seq=await self._store.next_seq(),
			created_at=self._clock.now(),
		)
		await self._save(entry)
		logger.debug("outbox.enqueued", extra={"local_id": local_id, "match_id": match_id})
		return entry

	async def _save(self, entry: OutboxEntry) -> None:
		await self._store.save(entry)
		self._entries[entry.local_id] = entry
		self._publish_gauge()

	async def _forget(self, local_id: str) -> None:
		await self._store.delete(local_id)
		self._entries.pop(local_id, None)
		self._publish_gauge()

	def _publish_gauge(self) -> None:
		obs_metrics.set_outbox_pending(sum(1 for e in self._entries.values() if e.is_open))

	def _head(self, match_id: str) -> Optional[OutboxEntry]:
		for entry in self.pending_for(match_id):
			if entry.is_open:
				return entry
		return None

	async def flush(self, match_id: str | None = None) -> List[Message]:
		"""Deliver every due entry, per match in order; return confirmed messages."""
		if not self._online:
			return []
		async with self._flush_lock:
			confirmed: List[Message] = []
			targets = [match_id] if match_id is not None else sorted(self.open_matches())
			for target in targets:
				while True:
					head = self._head(target)
					if head is None:
						break
					now = self._clock.now()
					if head.age_seconds(now) > self._max_age:
						await self._fail_permanently(head, "expired")
						continue
					if not head.due(now):
						break
					message = await self._attempt(head)
					if message is None:
						break
					confirmed.append(message)
			return confirmed

	async def _attempt(self, entry: OutboxEntry) -> Optional[Message]:
		sending = replace(entry, status=OutboxStatus.SENDING, attempts=entry.attempts + 1)
		await self._save(sending)
		try:
			message, _created = await self._transport.append(
				entry.match_id,
				sender_id=entry.sender_id,
				receiver_id=entry.receiver_id,
				body=entry.body,
				local_id=entry.local_id,
				sent_at=self._clock.now(),
			)
		except TransientError as exc:
			await self._schedule_retry(sending, exc.reason)
			return None
		except (ValidationError, PermanentDeliveryError) as exc:
			await self._fail_permanently(sending, exc.reason)
			return None
		await self._confirm(sending, message)
		return message

	async def _schedule_retry(self, entry: OutboxEntry, error: str) -> None:
		if self._policy.exhausted(entry.attempts):
			await self._fail_permanently(entry, error)
			return
		delay = self._policy.delay_for(entry.attempts)
		retry = replace(
			entry,
			status=OutboxStatus.FAILED_RETRYABLE,
			next_retry_at=self._clock.now() + timedelta(seconds=delay),
			last_error=error,
		)
		await self._save(retry)
		obs_metrics.inc_outbox_attempt("retry")
		logger.info(
			"outbox.retry_scheduled",
			extra={"local_id": entry.local_id, "attempts": entry.attempts, "delay_s": delay, "error": error},
		)

	async def _fail_permanently(self, entry: OutboxEntry, error: str) -> None:
		failed = replace(entry, status=OutboxStatus.FAILED_PERMANENT, next_retry_at=None, last_error=error)
		await self._save(failed)
		obs_metrics.inc_outbox_attempt("failed_permanent")
		obs_metrics.inc_chat_send("failed_permanent")
		logger.warning(
			"outbox.failed_permanent",
			extra={"local_id": entry.local_id, "match_id": entry.match_id, "attempts": entry.attempts, "error": error},
		)

	async def _confirm(self, entry: OutboxEntry, message: Message) -> None:
		await self._forget(entry.local_id)
		obs_metrics.inc_outbox_attempt("delivered")
		obs_metrics.inc_chat_send("delivered")
		for listener in list(self._listeners):
			try:
				await listener(message)
			except Exception:
				logger.exception("outbox.listener_failed", extra={"local_id": entry.local_id})

	async def reconcile(self, confirmed: Iterable[Message]) -> List[OutboxEntry]:
		"""Drop entries whose echoed local_id shows they reached the server."""
		reconciled: List[OutboxEntry] = []
		for message in confirmed:
			entry = self._entries.get(message.local_id)
			if entry is None or entry.match_id != message.match_id:
				continue
			if entry.status is OutboxStatus.SENDING:
				continue
			await self._forget(entry.local_id)
			reconciled.append(replace(entry, status=OutboxStatus.DELIVERED, message_id=message.message_id))
		if reconciled:
			logger.debug("outbox.reconciled", extra={"count": len(reconciled)})
		return reconciled

	async def cancel(self, local_id: str) -> bool:
		entry = self._entries.get(local_id)
		if entry is None or entry.status in (OutboxStatus.SENDING, OutboxStatus.DELIVERED):
			return False
		await self._forget(local_id)
		logger.info("outbox.cancelled", extra={"local_id": local_id})
		return True

	async def retry_failed(self, local_id: str | None = None) -> List[OutboxEntry]:
		"""Put permanently failed entries back at the tail of their match queue."""
		if local_id is not None:
			entry = self._entries.get(local_id)
			if entry is None:
				raise NotFound("outbox_entry_not_found")
			candidates = [entry]
		else:
			candidates = sorted(self._entries.values(), key=lambda e: e.enqueued_seq)
		requeued: List[OutboxEntry] = []
		for entry in candidates:
			if entry.status is not OutboxStatus.FAILED_PERMANENT:
				continue
			fresh = replace(
				entry,
				status=OutboxStatus.PENDING,
				attempts=0,
				next_retry_at=None,
				last_error=None,
				enqueued_seq=await self._store.next_seq(),
				created_at=self._clock.now(),
			)
			await self._save(fresh)
			requeued.append(fresh)
		return requeued
