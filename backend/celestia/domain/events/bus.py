"""At-least-once event emission to the notification dispatcher and in-process streams."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import FrozenSet, Iterable, List, Optional, Protocol

from celestia.domain.common.exceptions import TransientError
from celestia.infra.clock import Clock, SystemClock
from celestia.infra.retry import BackoffPolicy, retry_async
from celestia.obs import metrics as obs_metrics

from .models import NotificationEvent

logger = logging.getLogger(__name__)

DEFAULT_DISPATCH_POLICY = BackoffPolicy(base_delay=0.5, factor=2.0, max_delay=4.0, max_attempts=3)

_CLOSED = object()


class NotificationDispatcher(Protocol):
	async def dispatch(self, event: NotificationEvent) -> None:
		...


class LoggingDispatcher:
	"""Dispatcher used when no push collaborator is wired in."""

	async def dispatch(self, event: NotificationEvent) -> None:
		logger.info("events.dispatched", extra={"kind": event.kind, "event_id": event.event_id})


class EventDeduplicator:
	"""Remembers recently seen event ids; bounded so long sessions stay small."""

	def __init__(self, capacity: int = 4096) -> None:
		self._capacity = max(1, capacity)
		self._seen: "OrderedDict[str, None]" = OrderedDict()

	def first_seen(self, event_id: str) -> bool:
		if event_id in self._seen:
			self._seen.move_to_end(event_id)
			return False
		self._seen[event_id] = None
		while len(self._seen) > self._capacity:
			self._seen.popitem(last=False)
		return True

	def __len__(self) -> int:
		return len(self._seen)


class EventSubscription:
	"""Async iterator over events addressed to one user."""

	def __init__(self, bus: "EventBus", user_id: Optional[str], kinds: Optional[FrozenSet[str]]) -> None:
		self._bus = bus
		self.user_id = user_id
		self.kinds = kinds
		self._queue: asyncio.Queue = asyncio.Queue()
		self._dedup = EventDeduplicator()
		self._closed = False

	def wants(self, event: NotificationEvent) -> bool:
		if self.kinds is not None and event.kind not in self.kinds:
			return False
		return self.user_id is None or self.user_id in event.audience()

	def offer(self, event: NotificationEvent) -> bool:
		if self._closed or not self.wants(event):
			return False
		if not self._dedup.first_seen(event.event_id):
			return False
		self._queue.put_nowait(event)
		return True

	def __aiter__(self) -> "EventSubscription":
		return self

	async def __anext__(self) -> NotificationEvent:
		item = await self._queue.get()
		if item is _CLOSED:
			raise StopAsyncIteration
		return item

	async def get(self, timeout: float | None = None) -> NotificationEvent:
		item = await asyncio.wait_for(self._queue.get(), timeout)
		if item is _CLOSED:
			raise StopAsyncIteration
		return item

	def drain_nowait(self) -> List[NotificationEvent]:
		items: List[NotificationEvent] = []
		while not self._queue.empty():
			item = self._queue.get_nowait()
			if item is _CLOSED:
				self._queue.put_nowait(_CLOSED)
				break
			items.append(item)
		return items

	def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self._bus._detach(self)
		self._queue.put_nowait(_CLOSED)


class EventBus:
	"""Fans events out to session streams and hands them to the dispatcher.

	Dispatch is retried with backoff; events that still fail are kept and
	re-sent by `redeliver()`. Consumers may see an event more than once.
	"""

	def __init__(
		self,
		dispatcher: NotificationDispatcher | None = None,
		*,
		policy: BackoffPolicy = DEFAULT_DISPATCH_POLICY,
		clock: Clock | None = None,
	) -> None:
		self._dispatcher = dispatcher or LoggingDispatcher()
		self._policy = policy
		self._clock = clock or SystemClock()
		self._subscriptions: List[EventSubscription] = []
		self._undelivered: "OrderedDict[str, NotificationEvent]" = OrderedDict()

	@property
	def undelivered(self) -> List[NotificationEvent]:
		return list(self._undelivered.values())

	def subscribe(self, user_id: Optional[str] = None, *, kinds: Iterable[str] | None = None) -> EventSubscription:
		subscription = EventSubscription(self, user_id, frozenset(kinds) if kinds is not None else None)
		self._subscriptions.append(subscription)
		return subscription

	def _detach(self, subscription: EventSubscription) -> None:
		if subscription in self._subscriptions:
			self._subscriptions.remove(subscription)

	async def publish(self, event: NotificationEvent) -> bool:
		for subscription in list(self._subscriptions):
			subscription.offer(event)
		return await self._dispatch(event)

	async def _dispatch(self, event: NotificationEvent) -> bool:
		try:
			await retry_async(
				lambda: self._dispatcher.dispatch(event),
				policy=self._policy,
				clock=self._clock,
				operation="events.dispatch",
			)
		except TransientError as exc:
			self._undelivered[event.event_id] = event
			obs_metrics.inc_event(event.kind, "deferred")
			logger.warning("events.dispatch_deferred", extra={"event_id": event.event_id, "error": exc.reason})
			return False
		except Exception:
			self._undelivered[event.event_id] = event
			obs_metrics.inc_event(event.kind, "failed")
			logger.exception("events.dispatch_failed", extra={"event_id": event.event_id})
			return False
		self._undelivered.pop(event.event_id, None)
		obs_metrics.inc_event(event.kind, "dispatched")
		return True

	async def redeliver(self) -> int:
		delivered = 0
		for event in list(self._undelivered.values()):
			if await self._dispatch(event):
				delivered += 1
		return delivered

	def close(self) -> None:
		for subscription in list(self._subscriptions):
			subscription.close()
