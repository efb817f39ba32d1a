"""Outbox persistence. The store is the durable source of truth for pending sends."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Protocol

import redis.asyncio as redis

from celestia.infra.redis import TRANSPORT_ERRORS, KeySpace, as_transient

from .models import OutboxEntry, OutboxRecord


class OutboxStore(Protocol):
	async def load_all(self) -> List[OutboxEntry]:
		...

	async def save(self, entry: OutboxEntry) -> None:
		...

	async def delete(self, local_id: str) -> None:
		...

	async def next_seq(self) -> int:
		...


class InMemoryOutboxStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._entries: Dict[str, OutboxEntry] = {}
		self._seq = 0

	async def load_all(self) -> List[OutboxEntry]:
		async with self._lock:
			return sorted(self._entries.values(), key=lambda e: e.enqueued_seq)

	async def save(self, entry: OutboxEntry) -> None:
		async with self._lock:
			self._entries[entry.local_id] = entry

	async def delete(self, local_id: str) -> None:
		async with self._lock:
			self._entries.pop(local_id, None)

	async def next_seq(self) -> int:
		async with self._lock:
			self._seq += 1
			return self._seq


class RedisOutboxStore:
	"""One hash of JSON entries per owner plus a sequence counter."""

	def __init__(self, client: redis.Redis, owner_id: str, *, keys: KeySpace | None = None) -> None:
		self._client = client
		self._keys = keys or KeySpace()
		self._entries_key = self._keys("outbox", owner_id, "entries")
		self._seq_key = self._keys("outbox", owner_id, "seq")

	async def load_all(self) -> List[OutboxEntry]:
		try:
			raw = await self._client.hgetall(self._entries_key)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		entries = [OutboxRecord.model_validate_json(value).to_model() for value in raw.values()]
		return sorted(entries, key=lambda e: e.enqueued_seq)

	async def save(self, entry: OutboxEntry) -> None:
		try:
			await self._client.hset(self._entries_key, entry.local_id, OutboxRecord.from_model(entry).model_dump_json())
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc

	async def delete(self, local_id: str) -> None:
		try:
			await self._client.hdel(self._entries_key, local_id)
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc

	async def next_seq(self) -> int:
		try:
			return int(await self._client.incr(self._seq_key))
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
