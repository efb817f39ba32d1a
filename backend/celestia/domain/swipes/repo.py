"""Swipe decision stores.

Both stores keep exactly one record per ordered pair and apply writes with
last-write-wins on the server timestamp, so concurrent writers for the same
pair can never leave two active decisions behind.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Protocol, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError

from celestia.domain.common.exceptions import TransientError
from celestia.infra.redis import TRANSPORT_ERRORS, KeySpace, as_transient

from .models import SwipeDecision
from .schemas import SwipeRecord

logger = logging.getLogger(__name__)

_MAX_CAS_ROUNDS = 16


class SwipeRepository(Protocol):
	async def get(self, actor_id: str, target_id: str) -> Optional[SwipeDecision]:
		...

	async def get_active(self, actor_id: str, target_id: str) -> Optional[SwipeDecision]:
		...

	async def upsert(self, decision: SwipeDecision) -> SwipeDecision:
		"""Store `decision` unless a newer one exists; return whichever record won."""
		...

	async def swap(self, decision: SwipeDecision) -> Tuple[SwipeDecision, Optional[SwipeDecision]]:
		"""Like `upsert`, also returning the record that was stored before the call."""
		...

	async def decided_targets(self, actor_id: str) -> Set[str]:
		...

	async def likes_sent(self, actor_id: str) -> List[str]:
		"""Targets `actor_id` currently likes or superlikes."""
		...

	async def likes_received(self, target_id: str) -> List[str]:
		"""Actors currently liking or superliking `target_id`."""
		...


class InMemorySwipeRepository:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._decisions: Dict[Tuple[str, str], SwipeDecision] = {}

	async def get(self, actor_id: str, target_id: str) -> Optional[SwipeDecision]:
		async with self._lock:
			return self._decisions.get((actor_id, target_id))

	async def get_active(self, actor_id: str, target_id: str) -> Optional[SwipeDecision]:
		decision = await self.get(actor_id, target_id)
		if decision is None or not decision.active:
			return None
		return decision

	async def upsert(self, decision: SwipeDecision) -> SwipeDecision:
		stored, _previous = await self.swap(decision)
		return stored

	async def swap(self, decision: SwipeDecision) -> Tuple[SwipeDecision, Optional[SwipeDecision]]:
		async with self._lock:
			current = self._decisions.get(decision.pair)
			if not decision.newer_than(current):
				return current, current  # type: ignore[return-value]
			self._decisions[decision.pair] = decision
			return decision, current

	async def decided_targets(self, actor_id: str) -> Set[str]:
		async with self._lock:
			return {
				target
				for (actor, target), decision in self._decisions.items()
				if actor == actor_id and decision.active
			}


	async def likes_sent(self, actor_id: str) -> List[str]:
		async with self._lock:
			return sorted(
				target
				for (actor, target), decision in self._decisions.items()
				if actor == actor_id and decision.is_positive
			)

	async def likes_received(self, target_id: str) -> List[str]:
		async with self._lock:
			return sorted(
				actor
				for (actor, target), decision in self._decisions.items()
				if target == target_id and decision.is_positive
			)

	async def all_active(self) -> List[SwipeDecision]:
		async with self._lock:
			return [decision for decision in self._decisions.values() if decision.active]


class RedisSwipeRepository:
	"""Decisions as JSON strings with an index set of active targets per actor."""

	def __init__(self, client: redis.Redis, *, keys: KeySpace | None = None) -> None:
		self._client = client
		self._keys = keys or KeySpace()

	def _decision_key(self, actor_id: str, target_id: str) -> str:
		return self._keys("swipe", actor_id, target_id)

	def _index_key(self, actor_id: str) -> str:
		return self._keys("swipes", actor_id, "active")

	def _liked_key(self, actor_id: str) -> str:
		return self._keys("swipes", actor_id, "liked")

	def _liked_by_key(self, target_id: str) -> str:
		return self._keys("swipes", target_id, "liked_by")

	@staticmethod
	def _decode(raw: Optional[str]) -> Optional[SwipeDecision]:
		if not raw:
			return None
		return SwipeRecord.model_validate_json(raw).to_model()

	async def get(self, actor_id: str, target_id: str) -> Optional[SwipeDecision]:
		try:
			raw = await self._client.get(self._decision_key(actor_id, target_id))
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return self._decode(raw)

	async def get_active(self, actor_id: str, target_id: str) -> Optional[SwipeDecision]:
		decision = await self.get(actor_id, target_id)
		if decision is None or not decision.active:
			return None
		return decision

	async def upsert(self, decision: SwipeDecision) -> SwipeDecision:
		stored, _previous = await self.swap(decision)
		return stored

	async def swap(self, decision: SwipeDecision) -> Tuple[SwipeDecision, Optional[SwipeDecision]]:
		key = self._decision_key(decision.actor_id, decision.target_id)
		index = self._index_key(decision.actor_id)
		payload = SwipeRecord.from_model(decision).model_dump_json()
		try:
			async with self._client.pipeline(transaction=True) as pipe:
				for _ in range(_MAX_CAS_ROUNDS):
					try:
						await pipe.watch(key)
						current = self._decode(await pipe.get(key))
						if not decision.newer_than(current):
							await pipe.unwatch()
							return current, current  # type: ignore[return-value]
						pipe.multi()
						pipe.set(key, payload)
						if decision.active:
							pipe.sadd(index, decision.target_id)
						else:
							pipe.srem(index, decision.target_id)
						if decision.is_positive:
							pipe.sadd(self._liked_key(decision.actor_id), decision.target_id)
							pipe.sadd(self._liked_by_key(decision.target_id), decision.actor_id)
						else:
							pipe.srem(self._liked_key(decision.actor_id), decision.target_id)
							pipe.srem(self._liked_by_key(decision.target_id), decision.actor_id)
						await pipe.execute()
						return decision, current
					except WatchError:
						logger.debug("swipes.cas_retry", extra={"actor_id": decision.actor_id, "target_id": decision.target_id})
						continue
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		raise TransientError("swipe_cas_contention")

	async def decided_targets(self, actor_id: str) -> Set[str]:
		try:
			members = await self._client.smembers(self._index_key(actor_id))
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return set(members)

	async def likes_sent(self, actor_id: str) -> List[str]:
		try:
			members = await self._client.smembers(self._liked_key(actor_id))
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return sorted(members)

	async def likes_received(self, target_id: str) -> List[str]:
		try:
			members = await self._client.smembers(self._liked_by_key(target_id))
		except TRANSPORT_ERRORS as exc:
			raise as_transient(exc) from exc
		return sorted(members)
