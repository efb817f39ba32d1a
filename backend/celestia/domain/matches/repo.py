"""Match stores with transactional create-if-absent."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError

from celestia.domain.common.exceptions import TransientError
from celestia.infra.redis import TRANSPORT_ERRORS, KeySpace, as_transient

from .models import DeactivationReason, Match
from .schemas import MatchRecord

_MAX_CAS_ROUNDS = 16

PREVIEW_LENGTH = 80


def _preview(body: str) -> str:
	text = " ".join(body.split())
	if len(text) <= PREVIEW_LENGTH:
		return text
	return text[: PREVIEW_LENGTH - 1] + "…"


def _deactivated(match: Match, *, by: str, reason: DeactivationReason, at: datetime) -> Match:
	return replace(match, is_active=False, deactivated_by=by, deactivated_at=at, deactivation_reason=reason)


def _touched(match: Match, *, body: str, at: datetime) -> Match:
	if match.last_message_at is not None and match.last_message_at >= at:
		return match
	return replace(match, last_message_preview=_preview(body), last_message_at=at)


class MatchRepository(Protocol):
	async def create_if_absent(self, match: Match) -> Tuple[Match, bool]:
		"""Insert `match` unless its pair key exists; return (stored, created)."""
		...

	async def get(self, match_id: str) -> Optional[Match]:
		...

	async def list_for_user(self, user_id: str, *, active_only: bool = True) -> List[Match]:
		...

	async def deactivate(
		self,
		match_id: str,
		*,
		by: str,
		reason: DeactivationReason,
		at: datetime,
	) -> Optional[Match]:
		...

	async def touch(self, match_id: str, *, body: str, at: datetime) -> Optional[Match]:
		...


class InMemoryMatchRepository:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._matches: Dict[str, Match] = {}

	async def create_if_absent(self, match: Match) -> Tuple[Match, bool]:
		async with self._lock:
			existing = self._matches.get(match.match_id)
			if existing is not None:
				return existing, False
			self._matches[match.match_id] = match
			return match, True

	async def get(self, match_id: str) -> Optional[Match]:
		async with self._lock:
			return self._matches.get(match_id)

	async def list_for_user(self, user_id: str, *, active_only: bool = True) -> List[Match]:
		async with self._lock:
			matches = [
				match
				for match in self._matches.values()
				if match.involves(user_id) and (match.is_active or not active_only)
			]
		return sorted(matches, key=lambda m: (m.created_at, m.match_id))

	async def _mutate(self, match_id: str, change: Callable[[Match], Match]) -> Optional[Match]:
		async with self._lock:
			current = self._matches.get(match_id)
			if current is None:
				return None
			updated = change(current)
			self._matches[match_id] = updated
			return updated

	async def deactivate(
		self,
		match_id: str,
		*,
		by: str,
		reason: DeactivationReason,
		at: datetime,
	) -> Optional[Match]:
		return await self._mutate(
			match_id,
			lambda m: m if not m.is_active else _deactivated(m, by=by, reason=reason, at=at),
		)

	async def touch(self, match_id: str, *, body: str, at: datetime) -> Optional[Match]:
		return await self._mutate(match_id, lambda m: _touched(m, body=body, at=at))

	async def count(self) -> int:
		async with self._lock:
			return len(self._matches)


class RedisMatchRepository:
	"""Matches as JSON strings created with SET NX, plus a per-user index set."""

	def __init__(self, client: redis.Redis, *, keys: KeySpace | None = None) -> None:
		self._client = client
		self._keys = keys or KeySpace()

	def _match_key(self, match_id: str) -> str:
		return self._keys(match_id)

	def _user_key(self, user_id: str) -> str:
		return self._keys("matches", user_id)

	@staticmethod
	def _decode(raw: Optional[str]) -> Optional[Match]:
		if not raw:
			return None
		return MatchRecord.model_validate_json(raw).to_model()

	async def create_if_absent(self, match: Match) -> Tuple[Match, bool]:
		key = self._match_key(match.match_id)
		payload = MatchRecord.from_model(match).model_dump_json()
		try:
			created = await self._client.set(key, payload, nx=True)
			async with self._client.pipeline(transaction=True) as pipe:
				for user_id in match.participant_ids:
					pipe.sadd(self._user_key(user_id), match.match_id)
				await pipe.execute()
			if created:
				return match, True
			existing = self._decode(await self._client.get(key))
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		if existing is None:
			raise TransientError("match_vanished")
		return existing, False

	async def get(self, match_id: str) -> Optional[Match]:
		try:
			raw = await self._client.get(self._match_key(match_id))
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return self._decode(raw)

	async def list_for_user(self, user_id: str, *, active_only: bool = True) -> List[Match]:
		try:
			match_ids = sorted(await self._client.smembers(self._user_key(user_id)))
			raws = await self._client.mget([self._match_key(mid) for mid in match_ids]) if match_ids else []
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		matches = [m for m in (self._decode(raw) for raw in raws) if m is not None]
		if active_only:
			matches = [m for m in matches if m.is_active]
		return sorted(matches, key=lambda m: (m.created_at, m.match_id))

	async def _mutate(self, match_id: str, change: Callable[[Match], Match]) -> Optional[Match]:
		key = self._match_key(match_id)
		try:
			async with self._client.pipeline(transaction=True) as pipe:
				for _ in range(_MAX_CAS_ROUNDS):
					try:
						await pipe.watch(key)
						current = self._decode(await pipe.get(key))
						if current is None:
							await pipe.unwatch()
							return None
						updated = change(current)
						if updated == current:
							await pipe.unwatch()
							return current
						pipe.multi()
						pipe.set(key, MatchRecord.from_model(updated).model_dump_json())
						await pipe.execute()
						return updated
					except WatchError:
						continue
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		raise TransientError("match_cas_contention")

	async def deactivate(
		self,
		match_id: str,
		*,
		by: str,
		reason: DeactivationReason,
		at: datetime,
	) -> Optional[Match]:
		return await self._mutate(
			match_id,
			lambda m: m if not m.is_active else _deactivated(m, by=by, reason=reason, at=at),
		)

	async def touch(self, match_id: str, *, body: str, at: datetime) -> Optional[Match]:
		return await self._mutate(match_id, lambda m: _touched(m, body=body, at=at))
