"""Message stores: ordered create/query/subscribe per match.

`append` is create-if-absent on (match_id, local_id): a resend of the same
outbox entry returns the message created the first time.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis
import ulid
from redis.exceptions import WatchError

from celestia.domain.common.exceptions import TransientError
from celestia.infra.redis import TRANSPORT_ERRORS, KeySpace, as_transient

from .models import Message
from .schemas import LiveEvent, MessageAdded, MessageRecord, MessagesDelivered, MessagesRead, parse_live_event

logger = logging.getLogger(__name__)

_MAX_CAS_ROUNDS = 16


def _new_message_id() -> str:
	return str(ulid.new())


class MessageStore(Protocol):
	async def append(
		self,
		match_id: str,
		*,
		sender_id: str,
		receiver_id: str,
		body: str,
		local_id: str,
		sent_at: datetime,
	) -> Tuple[Message, bool]:
		...

	async def find_by_local_id(self, match_id: str, local_id: str) -> Optional[Message]:
		...

	async def list_recent(self, match_id: str, limit: int) -> List[Message]:
		"""Newest first."""
		...

	async def list_before(self, match_id: str, before_seq: int, limit: int) -> List[Message]:
		"""Newest first, strictly older than `before_seq`."""
		...

	async def list_after(self, match_id: str, after_seq: int, limit: Optional[int] = None) -> List[Message]:
		"""Oldest first, strictly newer than `after_seq`."""
		...

	def subscribe(self, match_id: str, after_seq: int) -> AsyncIterator[LiveEvent]:
		...

	async def mark_read(self, match_id: str, reader_id: str, *, up_to_seq: int, at: datetime) -> int:
		...

	async def mark_delivered(self, match_id: str, recipient_id: str, *, up_to_seq: int, at: datetime) -> int:
		...

	async def unread_count(self, match_id: str, user_id: str) -> int:
		...


class InMemoryMessageStore:
	"""Store used in tests and local sessions; sequences start at 1 per match."""

	def __init__(self, *, id_factory: Callable[[], str] = _new_message_id) -> None:
		self._cond = asyncio.Condition()
		self._id_factory = id_factory
		self._messages: Dict[str, List[Message]] = {}
		self._by_local: Dict[Tuple[str, str], int] = {}
		self._events: Dict[str, List[LiveEvent]] = {}

	async def append(
		self,
		match_id: str,
		*,
		sender_id: str,
		receiver_id: str,
		body: str,
		local_id: str,
		sent_at: datetime,
	) -> Tuple[Message, bool]:
		async with self._cond:
			messages = self._messages.setdefault(match_id, [])
			existing = self._by_local.get((match_id, local_id))
			if existing is not None:
				return messages[existing - 1], False
			message = Message(
				message_id=self._id_factory(),
				match_id=match_id,
				sender_id=sender_id,
				receiver_id=receiver_id,
				body=body,
				sent_at=sent_at,
				seq=len(messages) + 1,
				local_id=local_id,
			)
			messages.append(message)
			self._by_local[(match_id, local_id)] = message.seq
			self._events.setdefault(match_id, []).append(MessageAdded.of(message))
			self._cond.notify_all()
			return message, True

	async def find_by_local_id(self, match_id: str, local_id: str) -> Optional[Message]:
		async with self._cond:
			seq = self._by_local.get((match_id, local_id))
			return self._messages[match_id][seq - 1] if seq is not None else None

	async def list_recent(self, match_id: str, limit: int) -> List[Message]:
		async with self._cond:
			messages = self._messages.get(match_id, [])
			return list(reversed(messages[-limit:])) if limit > 0 else []

	async def list_before(self, match_id: str, before_seq: int, limit: int) -> List[Message]:
		async with self._cond:
			older = [m for m in self._messages.get(match_id, []) if m.seq < before_seq]
			return list(reversed(older[-limit:])) if limit > 0 else []

	async def list_after(self, match_id: str, after_seq: int, limit: Optional[int] = None) -> List[Message]:
		async with self._cond:
			newer = [m for m in self._messages.get(match_id, []) if m.seq > after_seq]
			return newer[:limit] if limit is not None else newer

	async def subscribe(self, match_id: str, after_seq: int) -> AsyncIterator[LiveEvent]:
		async with self._cond:
			backlog = [m for m in self._messages.get(match_id, []) if m.seq > after_seq]
			cursor = len(self._events.get(match_id, []))
		for message in backlog:
			yield MessageAdded.of(message)
		while True:
			async with self._cond:
				await self._cond.wait_for(lambda: len(self._events.get(match_id, [])) > cursor)
				log = self._events[match_id]
				batch = log[cursor:]
				cursor = len(log)
			for event in batch:
				if isinstance(event, MessageAdded) and event.message.seq <= after_seq:
					continue
				yield event

	async def _update(self, match_id: str, user_id: str, up_to_seq: int, change: Callable[[Message], Message]) -> int:
		messages = self._messages.get(match_id, [])
		changed = 0
		for index, message in enumerate(messages):
			if message.seq > up_to_seq:
				break
			if message.receiver_id != user_id:
				continue
			updated = change(message)
			if updated is not message:
				messages[index] = updated
				changed += 1
		return changed

	async def mark_read(self, match_id: str, reader_id: str, *, up_to_seq: int, at: datetime) -> int:
		async with self._cond:
			changed = await self._update(match_id, reader_id, up_to_seq, lambda m: m.with_read(at))
			if changed:
				self._events.setdefault(match_id, []).append(
					MessagesRead(match_id=match_id, reader_id=reader_id, up_to_seq=up_to_seq, read_at=at)
				)
				self._cond.notify_all()
			return changed

	async def mark_delivered(self, match_id: str, recipient_id: str, *, up_to_seq: int, at: datetime) -> int:
		async with self._cond:
			changed = await self._update(match_id, recipient_id, up_to_seq, lambda m: m.with_delivered(at))
			if changed:
				self._events.setdefault(match_id, []).append(
					MessagesDelivered(match_id=match_id, recipient_id=recipient_id, up_to_seq=up_to_seq, delivered_at=at)
				)
				self._cond.notify_all()
			return changed

	async def unread_count(self, match_id: str, user_id: str) -> int:
		async with self._cond:
			return sum(
				1
				for m in self._messages.get(match_id, [])
				if m.receiver_id == user_id and m.read_at is None
			)


class RedisMessageStore:
	"""Messages as JSON strings, a seq-scored timeline and a stream for the live tail."""

	_CLAIM_TTL_SECONDS = 30
	_STREAM_MAXLEN = 1000

	def __init__(
		self,
		client: redis.Redis,
		*,
		keys: KeySpace | None = None,
		id_factory: Callable[[], str] = _new_message_id,
		block_ms: int = 1000,
	) -> None:
		self._client = client
		self._keys = keys or KeySpace()
		self._id_factory = id_factory
		self._block_ms = block_ms

	def _key(self, match_id: str, *parts: object) -> str:
		return self._keys("chat", match_id, *parts)

	@staticmethod
	def _decode(raw: Optional[str]) -> Optional[Message]:
		if not raw:
			return None
		return MessageRecord.model_validate_json(raw).to_model()

	async def _load(self, match_id: str, message_ids: List[str]) -> List[Message]:
		if not message_ids:
			return []
		raws = await self._client.mget([self._key(match_id, "msg", mid) for mid in message_ids])
		return [m for m in (self._decode(raw) for raw in raws) if m is not None]

	async def append(
		self,
		match_id: str,
		*,
		sender_id: str,
		receiver_id: str,
		body: str,
		local_id: str,
		sent_at: datetime,
	) -> Tuple[Message, bool]:
		local_key = self._key(match_id, "local", local_id)
		try:
			message_id = self._id_factory()
			claimed = await self._client.set(local_key, message_id, nx=True, ex=self._CLAIM_TTL_SECONDS)
			if not claimed:
				existing = await self.find_by_local_id(match_id, local_id)
				if existing is None:
					raise TransientError("message_write_in_progress")
				return existing, False
			message = await self._publish(
				match_id,
				local_key,
				lambda seq: Message(
					message_id=message_id,
					match_id=match_id,
					sender_id=sender_id,
					receiver_id=receiver_id,
					body=body,
					sent_at=sent_at,
					seq=seq,
					local_id=local_id,
				),
			)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		if message is None:
			await self._release_claim(local_key)
			raise TransientError("message_seq_contention")
		return message, True

	async def _publish(self, match_id: str, local_key: str, build: Callable[[int], Message]) -> Optional[Message]:
		"""Allocate the next seq and write message, timeline entry and stream event in one MULTI."""
		seq_key = self._key(match_id, "seq")
		async with self._client.pipeline(transaction=True) as pipe:
			for _ in range(_MAX_CAS_ROUNDS):
				try:
					await pipe.watch(seq_key)
					seq = int(await pipe.get(seq_key) or 0) + 1
					message = build(seq)
					pipe.multi()
					pipe.set(seq_key, seq)
					pipe.set(self._key(match_id, "msg", message.message_id), MessageRecord.from_model(message).model_dump_json())
					pipe.zadd(self._key(match_id, "timeline"), {message.message_id: seq})
					pipe.persist(local_key)
					self._queue_event(pipe, MessageAdded.of(message))
					await pipe.execute()
					return message
				except WatchError:
					continue
		return None

	async def _release_claim(self, local_key: str) -> None:
		try:
			await self._client.delete(local_key)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc

	def _queue_event(self, pipe, event: LiveEvent) -> None:
		pipe.xadd(
			self._key(event.match_id, "events"),
			{"event": event.model_dump_json()},
			maxlen=self._STREAM_MAXLEN,
			approximate=True,
		)

	async def find_by_local_id(self, match_id: str, local_id: str) -> Optional[Message]:
		try:
			message_id = await self._client.get(self._key(match_id, "local", local_id))
			if not message_id:
				return None
			return self._decode(await self._client.get(self._key(match_id, "msg", message_id)))
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc

	async def list_recent(self, match_id: str, limit: int) -> List[Message]:
		if limit <= 0:
			return []
		try:
			ids = await self._client.zrevrange(self._key(match_id, "timeline"), 0, limit - 1)
			return await self._load(match_id, ids)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc

	async def list_before(self, match_id: str, before_seq: int, limit: int) -> List[Message]:
		if limit <= 0:
			return []
		try:
			ids = await self._client.zrevrangebyscore(
				self._key(match_id, "timeline"), f"({before_seq}", "-inf", start=0, num=limit
			)
			return await self._load(match_id, ids)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc

	async def list_after(self, match_id: str, after_seq: int, limit: Optional[int] = None) -> List[Message]:
		try:
			if limit is None:
				ids = await self._client.zrangebyscore(self._key(match_id, "timeline"), f"({after_seq}", "+inf")
			else:
				ids = await self._client.zrangebyscore(
					self._key(match_id, "timeline"), f"({after_seq}", "+inf", start=0, num=limit
				)
			return await self._load(match_id, ids)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc

	async def subscribe(self, match_id: str, after_seq: int) -> AsyncIterator[LiveEvent]:
		stream = self._key(match_id, "events")
		try:
			last = await self._client.xrevrange(stream, count=1)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		stream_id = last[0][0] if last else "0-0"
		replayed = set()
		for message in await self.list_after(match_id, after_seq):
			replayed.add(message.message_id)
			yield MessageAdded.of(message)
		while True:
			try:
				entries = await self._client.xread({stream: stream_id}, count=100, block=self._block_ms)
			except TRANSPORT_ERRORS as exc:
				raise as_transient(exc) from exc
			for _name, items in entries or []:
				for entry_id, fields in items:
					stream_id = entry_id
					event = parse_live_event(fields["event"])
					if isinstance(event, MessageAdded):
						# live events may arrive out of seq order
						if event.message.seq <= after_seq or event.message.message_id in replayed:
							continue
					yield event

	async def _update(
		self,
		match_id: str,
		user_id: str,
		up_to_seq: int,
		change: Callable[[Message], Message],
		event: LiveEvent,
	) -> int:
		try:
			ids = await self._client.zrangebyscore(self._key(match_id, "timeline"), "-inf", up_to_seq)
			messages = await self._load(match_id, ids)
			updated = []
			for message in messages:
				if message.receiver_id != user_id:
					continue
				changed = change(message)
				if changed is not message:
					updated.append(changed)
			if not updated:
				return 0
			async with self._client.pipeline(transaction=True) as pipe:
				for message in updated:
					pipe.set(self._key(match_id, "msg", message.message_id), MessageRecord.from_model(message).model_dump_json())
				self._queue_event(pipe, event)
				await pipe.execute()
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return len(updated)

	async def mark_read(self, match_id: str, reader_id: str, *, up_to_seq: int, at: datetime) -> int:
		return await self._update(
			match_id,
			reader_id,
			up_to_seq,
			lambda m: m.with_read(at),
			MessagesRead(match_id=match_id, reader_id=reader_id, up_to_seq=up_to_seq, read_at=at),
		)

	async def mark_delivered(self, match_id: str, recipient_id: str, *, up_to_seq: int, at: datetime) -> int:
		return await self._update(
			match_id,
			recipient_id,
			up_to_seq,
			lambda m: m.with_delivered(at),
			MessagesDelivered(match_id=match_id, recipient_id=recipient_id, up_to_seq=up_to_seq, delivered_at=at),
		)

	async def unread_count(self, match_id: str, user_id: str) -> int:
		try:
			ids = await self._client.zrange(self._key(match_id, "timeline"), 0, -1)
			messages = await self._load(match_id, ids)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return sum(1 for m in messages if m.receiver_id == user_id and m.read_at is None)
