"""Offline outbound message queue."""

from .models import OutboxEntry, OutboxStatus
from .queue import DEFAULT_OUTBOX_POLICY, OfflineQueue, new_local_id
from .store import InMemoryOutboxStore, OutboxStore, RedisOutboxStore
from .worker import OutboxWorker

__all__ = [
	"DEFAULT_OUTBOX_POLICY",
	"InMemoryOutboxStore",
	"OfflineQueue",
	"OutboxEntry",
	"OutboxStatus",
	"OutboxStore",
	"OutboxWorker",
	"RedisOutboxStore",
	"new_local_id",
]
