"""Presentation boundary: one authenticated user's engines, wired explicitly.

Nothing here is a module-level singleton. `build_session()` constructs every
engine for one user and hands them to `CelestiaSession`, which owns their
lifecycle.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional

import redis.asyncio as redis

from celestia.domain.chat.models import DisplayedMessage, Message, SendResult
from celestia.domain.chat.repo import InMemoryMessageStore, MessageStore, RedisMessageStore
from celestia.domain.chat.sync import MessageSyncEngine
from celestia.domain.common.exceptions import Forbidden, NotFound, TransientError, ValidationError
from celestia.domain.common.results import OperationResult
from celestia.domain.events.bus import EventBus, EventSubscription, NotificationDispatcher
from celestia.domain.events.models import MessageCreated, event_id_for
from celestia.domain.matches.detector import MatchDetector
from celestia.domain.matches.models import Match
from celestia.domain.matches.repo import InMemoryMatchRepository, MatchRepository, RedisMatchRepository
from celestia.domain.outbox.queue import OfflineQueue
from celestia.domain.outbox.store import InMemoryOutboxStore, OutboxStore, RedisOutboxStore
from celestia.domain.outbox.worker import OutboxWorker
from celestia.domain.profiles.source import ProfileSource
from celestia.domain.quota.guard import RateLimitGuard, RemoteQuotaService
from celestia.domain.quota.models import policies_from_settings
from celestia.domain.ranking.cache import RankingCache
from celestia.domain.ranking.models import RankedCandidate
from celestia.domain.ranking.service import RankingService
from celestia.domain.scoring.engine import ScoringEngine
from celestia.domain.scoring.models import ScoringConfig
from celestia.domain.scoring.ratings import RatingBook
from celestia.domain.swipes.models import SwipeAction, SwipeResult
from celestia.domain.swipes.repo import InMemorySwipeRepository, RedisSwipeRepository, SwipeRepository
from celestia.domain.swipes.service import SwipeProcessor
from celestia.infra.auth import AuthenticatedUser, IdentityProvider
from celestia.infra.clock import Clock, MonotonicTimestamps, SystemClock
from celestia.infra.rate_limit import RedisQuotaService
from celestia.infra.redis import KeySpace
from celestia.infra.retry import BackoffPolicy
from celestia.infra.tasks import TaskGroup
from celestia.obs import logging as obs_logging
from celestia.settings import Settings

logger = logging.getLogger(__name__)


class CelestiaSession:
	def __init__(
		self,
		*,
		user: AuthenticatedUser,
		settings: Settings,
		clock: Clock,
		profiles: ProfileSource,
		ranking: RankingService,
		swipes: SwipeProcessor,
		matches: MatchDetector,
		guard: RateLimitGuard,
		messages: MessageStore,
		queue: OfflineQueue,
		worker: OutboxWorker,
		chat: MessageSyncEngine,
		events: EventBus,
	) -> None:
		self.user = user
		self.settings = settings
		self._clock = clock
		self._profiles = profiles
		self.ranking = ranking
		self.swipes = swipes
		self.matches = matches
		self.guard = guard
		self._messages = messages
		self.queue = queue
		self.worker = worker
		self.chat = chat
		self.events = events
		self._tasks = TaskGroup(f"session:{user.id}")
		self._unsubscribers: List[Callable[[], None]] = []
		self._subscriptions: List[EventSubscription] = []
		self._started = False

	async def start(self, *, run_worker: bool = True) -> None:
		if self._started:
			return
		self._started = True
		await self.queue.load()
		await self.guard.reconcile(self.user.id)
		self._unsubscribers.append(self._profiles.subscribe_edits(self.ranking.on_profile_edited))
		self._unsubscribers.append(self.queue.add_listener(self._on_message_delivered))
		if run_worker:
			self._tasks.spawn(self._run_worker(), name=f"outbox-worker:{self.user.id}")
		logger.info("session.started", extra={"user_id": self.user.id})

	async def _run_worker(self) -> None:
		tokens = obs_logging.bind_context(user_id=self.user.id)
		try:
			await self.worker.run_forever()
		finally:
			obs_logging.reset_context(tokens)

	async def ranked_candidates(
		self,
		*,
		limit: Optional[int] = None,
		include_breakdown: bool = False,
	) -> List[RankedCandidate]:
		return await self.ranking.ranked_candidates(self.user.id, limit=limit, include_breakdown=include_breakdown)

	async def refresh_candidates(self) -> None:
		self.ranking.refresh(self.user.id)

	async def swipe(self, target_id: str, action: SwipeAction | str) -> SwipeResult:
		return await self.swipes.record_decision(self.user.id, target_id, action, premium=self.user.is_premium)

	async def undo_swipe(self, target_id: str) -> SwipeResult:
		return await self.swipes.revoke_decision(self.user.id, target_id)

	async def likes_received(self) -> List[str]:
		"""Users whose like or superlike on this user is still active."""
		return await self.swipes.likes_received(self.user.id)

	async def likes_sent(self) -> List[str]:
		return await self.swipes.likes_sent(self.user.id)

	def match_events(self) -> EventSubscription:
		return self.notifications(kinds=("match.created",))

	def notifications(self, *, kinds: Iterable[str] | None = None) -> EventSubscription:
		subscription = self.events.subscribe(self.user.id, kinds=kinds)
		self._subscriptions.append(subscription)
		return subscription

	async def matches_list(self) -> List[Match]:
		return await self.matches.list_matches(self.user.id)

	async def open_conversation(self, match_id: str) -> List[DisplayedMessage]:
		match = await self.matches.get_match(match_id)
		if match is None:
			raise NotFound("match_not_found")
		if not match.involves(self.user.id):
			raise Forbidden("not_a_participant")
		if not match.is_active:
			raise Forbidden("match_inactive")
		return await self.chat.open(match_id, counterpart_id=match.other(self.user.id))

	async def load_older(self) -> List[Message]:
		return await self.chat.load_older()

	async def send(self, body: str, *, local_id: str | None = None) -> SendResult:
		if self.chat.match_id is None:
			raise ValidationError("no_open_conversation")
		return await self.chat.send(body, local_id=local_id)

	async def retry_send(self, local_id: str) -> SendResult:
		return await self.chat.retry(local_id)

	async def mark_read(self) -> int:
		return await self.chat.mark_read()

	async def unread_count(self) -> int:
		total = 0
		for match in await self.matches.list_matches(self.user.id):
			total += await self._messages.unread_count(match.match_id, self.user.id)
		return total

	async def unmatch(self, match_id: str) -> OperationResult:
		result = await self.matches.unmatch(self.user.id, match_id)
		if result.ok and self.chat.match_id == match_id:
			await self.chat.close()
			self.chat = self._replace_chat()
		return result

	async def block(self, other_id: str) -> OperationResult:
		result = await self.matches.block(self.user.id, other_id)
		if result.ok:
			self.ranking.on_decision(self.user.id)
		return result

	def set_online(self, online: bool) -> None:
		self.queue.set_online(online)

	async def _on_message_delivered(self, message: Message) -> None:
		try:
			await self.matches.record_message(message.match_id, body=message.body, at=message.sent_at)
		except TransientError as exc:
			logger.info("session.match_touch_failed", extra={"match_id": message.match_id, "error": exc.reason})
		await self.events.publish(
			MessageCreated(
				event_id=event_id_for("message.created", message.message_id),
				occurred_at=message.sent_at,
				match_id=message.match_id,
				message_id=message.message_id,
				sender_id=message.sender_id,
				receiver_id=message.receiver_id,
				seq=message.seq,
			)
		)

	def _replace_chat(self) -> MessageSyncEngine:
		return MessageSyncEngine(
			user_id=self.user.id,
			store=self._messages,
			queue=self.queue,
			guard=self.guard,
			clock=self._clock,
			page_size=self.settings.chat_page_size,
			max_body_length=self.settings.chat_max_body_length,
			premium=self.user.is_premium,
		)

	async def close(self) -> None:
		self.worker.stop()
		for unsubscribe in self._unsubscribers:
			unsubscribe()
		self._unsubscribers.clear()
		await self.chat.close()
		await self.swipes.shutdown()
		await self._tasks.shutdown()
		for subscription in self._subscriptions:
			subscription.close()
		self._subscriptions.clear()
		self.ranking.cache.clear()
		logger.info("session.closed", extra={"user_id": self.user.id})


def build_session(
	user: AuthenticatedUser,
	*,
	profiles: ProfileSource,
	settings: Settings | None = None,
	redis_client: redis.Redis | None = None,
	remote_quota: RemoteQuotaService | None = None,
	dispatcher: NotificationDispatcher | None = None,
	events: EventBus | None = None,
	clock: Clock | None = None,
	swipe_repo: SwipeRepository | None = None,
	match_repo: MatchRepository | None = None,
	message_store: MessageStore | None = None,
	outbox_store: OutboxStore | None = None,
	ratings: RatingBook | None = None,
) -> CelestiaSession:
	"""Wire a session for `user`.

	With a Redis client the persistence adapters and the quota authority are
	Redis-backed; otherwise in-memory stores are used and quotas are enforced
	by the local counter alone. Explicit collaborators override either; passing
	one EventBus to several sessions lets them observe each other's events.
	"""
	settings = settings or Settings()
	clock = clock or SystemClock()
	keys = KeySpace(settings.redis_key_prefix)
	timestamps = MonotonicTimestamps(clock)

	if redis_client is not None:
		swipe_repo = swipe_repo or RedisSwipeRepository(redis_client, keys=keys)
		match_repo = match_repo or RedisMatchRepository(redis_client, keys=keys)
		message_store = message_store or RedisMessageStore(redis_client, keys=keys)
		outbox_store = outbox_store or RedisOutboxStore(redis_client, user.id, keys=keys)
		remote_quota = remote_quota or RedisQuotaService(redis_client, keys=keys)
	swipe_repo = swipe_repo or InMemorySwipeRepository()
	match_repo = match_repo or InMemoryMatchRepository()
	message_store = message_store or InMemoryMessageStore()
	outbox_store = outbox_store or InMemoryOutboxStore()
	ratings = ratings or RatingBook()

	write_policy = BackoffPolicy(
		base_delay=settings.write_retry_base_delay_seconds,
		factor=2.0,
		max_delay=settings.write_retry_max_delay_seconds,
		max_attempts=settings.write_retry_attempts,
	)
	outbox_policy = BackoffPolicy(
		base_delay=settings.outbox_base_delay_seconds,
		factor=2.0,
		max_delay=settings.outbox_max_delay_seconds,
		max_attempts=settings.outbox_max_attempts,
	)

	events = events or EventBus(dispatcher, policy=write_policy, clock=clock)
	guard = RateLimitGuard(
		remote=remote_quota,
		policies=policies_from_settings(settings),
		timeout_seconds=settings.quota_remote_timeout_seconds,
	)
	cache = RankingCache(
		score_ttl_seconds=settings.ranking_score_ttl_seconds,
		result_ttl_seconds=settings.ranking_result_ttl_seconds,
		result_capacity=settings.ranking_result_capacity,
		score_capacity=settings.ranking_score_capacity,
	)
	ranking = RankingService(
		profiles=profiles,
		engine=ScoringEngine(ScoringConfig(max_distance_km=settings.match_max_distance_km)),
		cache=cache,
		ratings=ratings,
		decisions=swipe_repo,
		clock=clock,
		chunk_size=settings.ranking_parallel_chunk,
	)
	detector = MatchDetector(
		swipes=swipe_repo,
		matches=match_repo,
		events=events,
		clock=clock,
		policy=write_policy,
		timestamps=timestamps,
	)
	swipes = SwipeProcessor(
		repo=swipe_repo,
		guard=guard,
		detector=detector,
		ratings=ratings,
		ranking=ranking,
		clock=clock,
		policy=write_policy,
		timestamps=timestamps,
		recheck_policy=BackoffPolicy(
			base_delay=settings.match_recheck_delay_seconds,
			factor=2.0,
			max_delay=60.0,
			max_attempts=settings.match_recheck_attempts,
		),
	)
	queue = OfflineQueue(
		store=outbox_store,
		transport=message_store,
		clock=clock,
		policy=outbox_policy,
		max_age_seconds=settings.outbox_max_age_seconds,
	)
	worker = OutboxWorker(queue, clock=clock, poll_interval=settings.outbox_poll_interval_seconds)
	chat = MessageSyncEngine(
		user_id=user.id,
		store=message_store,
		queue=queue,
		guard=guard,
		clock=clock,
		page_size=settings.chat_page_size,
		max_body_length=settings.chat_max_body_length,
		premium=user.is_premium,
	)
	return CelestiaSession(
		user=user,
		settings=settings,
		clock=clock,
		profiles=profiles,
		ranking=ranking,
		swipes=swipes,
		matches=detector,
		guard=guard,
		messages=message_store,
		queue=queue,
		worker=worker,
		chat=chat,
		events=events,
	)


async def open_session(identity: IdentityProvider, *, run_worker: bool = True, **collaborators: Any) -> CelestiaSession:
	"""Resolve the current user through `identity`, then build and start their session."""
	user = await identity.current_user()
	session = build_session(user, **collaborators)
	await session.start(run_worker=run_worker)
	return session
