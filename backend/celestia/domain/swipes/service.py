"""Swipe processing: validation, quota, last-write-wins persistence, match trigger."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError as PydanticValidationError

from celestia.domain.common.exceptions import QuotaExceeded, TransientError, ValidationError
from celestia.domain.common.results import OperationResult, ResultStatus
from celestia.domain.scoring.ratings import RatingBook
from celestia.infra.clock import Clock, MonotonicTimestamps, SystemClock
from celestia.infra.retry import BackoffPolicy, retry_async
from celestia.infra.tasks import TaskGroup
from celestia.obs import metrics as obs_metrics

from .models import SwipeAction, SwipeDecision, SwipeResult
from .repo import SwipeRepository
from .schemas import SwipeRequest

logger = logging.getLogger(__name__)

DEFAULT_WRITE_POLICY = BackoffPolicy(base_delay=0.5, factor=2.0, max_delay=4.0, max_attempts=3)
DEFAULT_RECHECK_POLICY = BackoffPolicy(base_delay=5.0, factor=2.0, max_delay=60.0, max_attempts=3)


class QuotaEnforcer(Protocol):
	async def enforce(self, user_id: str, action: str, *, premium: bool = False) -> Any:
		...


class MatchTrigger(Protocol):
	async def on_decision(self, actor_id: str, target_id: str) -> Any:
		...


class DecisionListener(Protocol):
	def on_decision(self, viewer_id: str) -> Any:
		...


def parse_swipe(actor_id: str, target_id: str, action: SwipeAction | str) -> SwipeRequest:
	try:
		return SwipeRequest(actor_id=actor_id, target_id=target_id, action=action)
	except PydanticValidationError as exc:
		raise ValidationError("invalid_swipe") from exc


class SwipeProcessor:
	"""Records like / superlike / pass decisions for one engine scope."""

	def __init__(
		self,
		*,
		repo: SwipeRepository,
		guard: QuotaEnforcer | None = None,
		detector: MatchTrigger | None = None,
		ratings: RatingBook | None = None,
		ranking: DecisionListener | None = None,
		clock: Clock | None = None,
		policy: BackoffPolicy = DEFAULT_WRITE_POLICY,
		timestamps: MonotonicTimestamps | None = None,
		tasks: TaskGroup | None = None,
		recheck_policy: BackoffPolicy = DEFAULT_RECHECK_POLICY,
	) -> None:
		self._repo = repo
		self._guard = guard
		self._detector = detector
		self._ratings = ratings
		self._ranking = ranking
		self._clock = clock or SystemClock()
		self._timestamps = timestamps or MonotonicTimestamps(self._clock)
		self._policy = policy
		self._tasks = tasks or TaskGroup("swipes.match_detection")
		self._recheck_policy = recheck_policy
		self._pair_locks: Dict[Tuple[str, str], Tuple[asyncio.Lock, int]] = {}

	@property
	def tasks(self) -> TaskGroup:
		return self._tasks

	async def record_decision(
		self,
		actor_id: str,
		target_id: str,
		action: SwipeAction | str,
		*,
		premium: bool = False,
	) -> SwipeResult:
		request = parse_swipe(actor_id, target_id, action)
		pair = (request.actor_id, request.target_id)
		lock, users = self._pair_locks.get(pair) or (asyncio.Lock(), 0)
		self._pair_locks[pair] = (lock, users + 1)
		try:
			async with lock:
				return await self._record(request, actor_id, target_id, premium=premium)
		finally:
			lock, users = self._pair_locks[pair]
			if users > 1:
				self._pair_locks[pair] = (lock, users - 1)
			else:
				del self._pair_locks[pair]

	async def _record(self, request: SwipeRequest, actor_id: str, target_id: str, *, premium: bool) -> SwipeResult:
		action = request.action
		try:
			current = await self._with_retry(
				lambda: self._repo.get_active(request.actor_id, request.target_id),
				operation="swipes.read",
			)
		except TransientError as exc:
			obs_metrics.inc_swipe(action.value, "transient")
			return SwipeResult(status=ResultStatus.TRANSIENT_FAILURE, reason=exc.reason)

		if current is not None and current.same_intent(action):
			obs_metrics.inc_swipe(action.value, "noop")
			logger.debug("swipe.noop", extra={"actor_id": actor_id, "target_id": target_id, "action": action.value})
			if action.is_positive:
				self._schedule_detection(request.actor_id, request.target_id)
			return SwipeResult(status=ResultStatus.SUCCESS, decision=current, changed=False)

		if self._guard is not None:
			try:
				await self._guard.enforce(request.actor_id, action.quota_action, premium=premium)
			except QuotaExceeded as exc:
				obs_metrics.inc_swipe(action.value, "quota_exceeded")
				return SwipeResult(
					status=ResultStatus.QUOTA_EXCEEDED,
					reason=exc.reason,
					retry_after=exc.retry_after,
				)

		decision = SwipeDecision(
			actor_id=request.actor_id,
			target_id=request.target_id,
			action=action,
			created_at=self._timestamps.next(),
			active=True,
		)
		try:
			stored, previous = await self._with_retry(lambda: self._repo.swap(decision), operation="swipes.write")
		except TransientError as exc:
			obs_metrics.inc_swipe(action.value, "transient")
			logger.warning("swipe.persist_failed", extra={"actor_id": actor_id, "target_id": target_id, "error": exc.reason})
			return SwipeResult(status=ResultStatus.TRANSIENT_FAILURE, reason=exc.reason)

		if stored != decision:
			# a newer concurrent write for the same pair won
			obs_metrics.inc_swipe(action.value, "superseded")
			logger.info("swipe.superseded", extra={"actor_id": actor_id, "target_id": target_id})
			return SwipeResult(status=ResultStatus.SUCCESS, decision=stored, changed=False)

		if previous is not None and previous.same_intent(action):
			# a concurrent writer already recorded this intent
			obs_metrics.inc_swipe(action.value, "noop")
			return SwipeResult(status=ResultStatus.SUCCESS, decision=stored, changed=False)

		obs_metrics.inc_swipe(action.value, "recorded")
		logger.info(
			"swipe.recorded",
			extra={"actor_id": actor_id, "target_id": target_id, "action": action.value},
		)
		if self._ratings is not None:
			self._ratings.record_outcome(request.actor_id, request.target_id, liked=action.is_positive)
		if self._ranking is not None:
			self._ranking.on_decision(request.actor_id)
		if action.is_positive:
			self._schedule_detection(request.actor_id, request.target_id)
		return SwipeResult(status=ResultStatus.SUCCESS, decision=stored, changed=True)

	async def revoke_decision(self, actor_id: str, target_id: str) -> SwipeResult:
		"""Undo the active decision for a pair. Consumed quota is not refunded."""
		try:
			current = await self._with_retry(lambda: self._repo.get_active(actor_id, target_id), operation="swipes.read")
			if current is None:
				return SwipeResult(status=ResultStatus.SUCCESS, changed=False)
			revoked = replace(current, active=False, created_at=self._timestamps.next())
			stored = await self._with_retry(lambda: self._repo.upsert(revoked), operation="swipes.write")
		except TransientError as exc:
			return SwipeResult(status=ResultStatus.TRANSIENT_FAILURE, reason=exc.reason)
		if stored == revoked:
			obs_metrics.inc_swipe(current.action.value, "revoked")
			logger.info("swipe.revoked", extra={"actor_id": actor_id, "target_id": target_id})
			if self._ranking is not None:
				self._ranking.on_decision(actor_id)
		return SwipeResult(status=ResultStatus.SUCCESS, decision=stored, changed=stored == revoked)

	async def current_decision(self, actor_id: str, target_id: str) -> Optional[SwipeDecision]:
		return await self._repo.get_active(actor_id, target_id)

	def _schedule_detection(self, actor_id: str, target_id: str) -> None:
		if self._detector is None:
			return
		self._tasks.spawn(self._detect(actor_id, target_id), name=f"match-detect:{actor_id}:{target_id}")

	async def _detect(self, actor_id: str, target_id: str) -> Any:
		"""Run match detection; a transient failure is rechecked later with backoff."""
		outcome = await self._detector.on_decision(actor_id, target_id)
		rechecks = 0
		while isinstance(outcome, OperationResult) and outcome.retryable and not self._recheck_policy.exhausted(rechecks):
			rechecks += 1
			delay = self._recheck_policy.delay_for(rechecks)
			logger.warning(
				"match.recheck_scheduled",
				extra={"actor_id": actor_id, "target_id": target_id, "attempt": rechecks, "delay_s": delay},
			)
			await self._clock.sleep(delay)
			outcome = await self._detector.on_decision(actor_id, target_id)
		return outcome

	async def likes_sent(self, actor_id: str) -> List[str]:
		return await self._with_retry(lambda: self._repo.likes_sent(actor_id), operation="swipes.likes_sent")

	async def likes_received(self, target_id: str) -> List[str]:
		return await self._with_retry(lambda: self._repo.likes_received(target_id), operation="swipes.likes_received")

	async def _with_retry(self, func, *, operation: str):
		return await retry_async(func, policy=self._policy, clock=self._clock, operation=operation)

	async def drain(self) -> None:
		await self._tasks.drain()

	async def shutdown(self) -> None:
		await self._tasks.shutdown()
