"""Match and message events."""

from .bus import EventBus, EventDeduplicator, EventSubscription, LoggingDispatcher, NotificationDispatcher
from .models import (
	MatchCreated,
	MatchDeactivated,
	MessageCreated,
	NotificationEvent,
	event_id_for,
	parse_event,
)

__all__ = [
	"EventBus",
	"EventDeduplicator",
	"EventSubscription",
	"LoggingDispatcher",
	"MatchCreated",
	"MatchDeactivated",
	"MessageCreated",
	"NotificationDispatcher",
	"NotificationEvent",
	"event_id_for",
	"parse_event",
]
