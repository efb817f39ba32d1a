"""Reciprocal decision detection and match lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from celestia.domain.common.exceptions import Forbidden, NotFound, TransientError
from celestia.domain.common.results import OperationResult, ResultStatus
from celestia.domain.events.bus import EventBus
from celestia.domain.events.models import MatchCreated, MatchDeactivated, event_id_for
from celestia.domain.swipes.models import SwipeAction, SwipeDecision
from celestia.domain.swipes.repo import SwipeRepository
from celestia.infra.clock import Clock, MonotonicTimestamps, SystemClock
from celestia.infra.retry import BackoffPolicy, retry_async
from celestia.obs import metrics as obs_metrics

from .models import DeactivationReason, Match, MatchOutcome, match_id_for
from .repo import MatchRepository

logger = logging.getLogger(__name__)

DEFAULT_WRITE_POLICY = BackoffPolicy(base_delay=0.5, factor=2.0, max_delay=4.0, max_attempts=3)


class MatchDetector:
	"""Creates a match exactly once when both sides hold an active like.

	Creation goes through the store's create-if-absent on the sorted pair key,
	so triggers from both participants, in any order or concurrently, converge
	on one record. The caller that loses the race gets the existing match back
	and reports success.
	"""

	def __init__(
		self,
		*,
		swipes: SwipeRepository,
		matches: MatchRepository,
		events: EventBus | None = None,
		clock: Clock | None = None,
		policy: BackoffPolicy = DEFAULT_WRITE_POLICY,
		timestamps: MonotonicTimestamps | None = None,
	) -> None:
		self._swipes = swipes
		self._matches = matches
		self._events = events
		self._clock = clock or SystemClock()
		self._timestamps = timestamps or MonotonicTimestamps(self._clock)
		self._policy = policy

	async def _retry(self, func, *, operation: str):
		return await retry_async(func, policy=self._policy, clock=self._clock, operation=operation)

	async def on_decision(self, actor_id: str, target_id: str) -> MatchOutcome:
		try:
			forward = await self._retry(lambda: self._swipes.get_active(actor_id, target_id), operation="matches.read_swipe")
			backward = await self._retry(lambda: self._swipes.get_active(target_id, actor_id), operation="matches.read_swipe")
		except TransientError as exc:
			obs_metrics.inc_match("transient")
			logger.warning("match.detect_failed", extra={"actor_id": actor_id, "target_id": target_id, "error": exc.reason})
			return MatchOutcome(status=ResultStatus.TRANSIENT_FAILURE, reason=exc.reason)

		if not self._reciprocal(forward, backward):
			logger.debug("match.not_reciprocal", extra={"actor_id": actor_id, "target_id": target_id})
			return MatchOutcome(status=ResultStatus.SUCCESS)

		candidate = Match.between(actor_id, target_id, created_at=self._clock.now())
		try:
			match, created = await self._retry(
				lambda: self._matches.create_if_absent(candidate),
				operation="matches.create",
			)
		except TransientError as exc:
			obs_metrics.inc_match("transient")
			logger.warning("match.create_failed", extra={"match_id": candidate.match_id, "error": exc.reason})
			return MatchOutcome(status=ResultStatus.TRANSIENT_FAILURE, reason=exc.reason)

		if not created:
			obs_metrics.inc_match("existing")
			logger.debug("match.already_exists", extra={"match_id": match.match_id, "active": match.is_active})
			return MatchOutcome(status=ResultStatus.SUCCESS, match=match, created=False)

		obs_metrics.inc_match("created")
		logger.info("match.created", extra={"match_id": match.match_id})
		if self._events is not None:
			await self._events.publish(
				MatchCreated(
					event_id=event_id_for("match.created", match.match_id),
					occurred_at=match.created_at,
					match_id=match.match_id,
					participant_ids=match.participant_ids,
				)
			)
		return MatchOutcome(status=ResultStatus.SUCCESS, match=match, created=True)

	@staticmethod
	def _reciprocal(forward: Optional[SwipeDecision], backward: Optional[SwipeDecision]) -> bool:
		return forward is not None and backward is not None and forward.is_positive and backward.is_positive

	async def get_match(self, match_id: str) -> Optional[Match]:
		return await self._matches.get(match_id)

	async def has_matched(self, user_one: str, user_two: str) -> bool:
		match = await self._matches.get(match_id_for(user_one, user_two))
		return match is not None and match.is_active

	async def list_matches(self, user_id: str, *, active_only: bool = True) -> List[Match]:
		return await self._matches.list_for_user(user_id, active_only=active_only)

	async def record_message(self, match_id: str, *, body: str, at: datetime) -> Optional[Match]:
		"""Keep the last-message preview on the match current."""
		return await self._matches.touch(match_id, body=body, at=at)

	async def unmatch(self, user_id: str, match_id: str) -> OperationResult:
		return await self._deactivate(user_id, match_id, DeactivationReason.UNMATCH)

	async def block(self, user_id: str, other_id: str) -> OperationResult:
		"""Deactivate any match with `other_id` and hide them from ranking."""
		pass_decision = SwipeDecision(
			actor_id=user_id,
			target_id=other_id,
			action=SwipeAction.PASS,
			created_at=self._timestamps.next(),
		)
		try:
			await self._retry(lambda: self._swipes.upsert(pass_decision), operation="matches.block_swipe")
		except TransientError as exc:
			return OperationResult(status=ResultStatus.TRANSIENT_FAILURE, reason=exc.reason)
		match_id = match_id_for(user_id, other_id)
		existing = await self._matches.get(match_id)
		if existing is None:
			return OperationResult(status=ResultStatus.SUCCESS)
		return await self._deactivate(user_id, match_id, DeactivationReason.BLOCK)

	async def _deactivate(self, user_id: str, match_id: str, reason: DeactivationReason) -> OperationResult:
		existing = await self._matches.get(match_id)
		if existing is None:
			raise NotFound("match_not_found")
		if not existing.involves(user_id):
			raise Forbidden("not_a_participant")
		if not existing.is_active:
			return OperationResult(status=ResultStatus.SUCCESS)
		try:
			updated = await self._retry(
				lambda: self._matches.deactivate(match_id, by=user_id, reason=reason, at=self._clock.now()),
				operation="matches.deactivate",
			)
		except TransientError as exc:
			return OperationResult(status=ResultStatus.TRANSIENT_FAILURE, reason=exc.reason)
		if updated is None or updated.deactivated_by != user_id:
			# another participant deactivated it first
			return OperationResult(status=ResultStatus.SUCCESS)
		obs_metrics.inc_match_deactivated(reason.value)
		logger.info("match.deactivated", extra={"match_id": match_id, "reason": reason.value})
		if self._events is not None:
			await self._events.publish(
				MatchDeactivated(
					event_id=event_id_for("match.deactivated", match_id),
					occurred_at=updated.deactivated_at or self._clock.now(),
					match_id=match_id,
					participant_ids=updated.participant_ids,
					deactivated_by=user_id,
					reason=reason.value,
				)
			)
		return OperationResult(status=ResultStatus.SUCCESS)
