"""Match conversations."""

from .models import DisplayedMessage, DisplayStatus, Message, SendResult, SyncState
from .repo import InMemoryMessageStore, MessageStore, RedisMessageStore

__all__ = [
	"DisplayStatus",
	"DisplayedMessage",
	"InMemoryMessageStore",
	"Message",
	"MessageStore",
	"RedisMessageStore",
	"SendResult",
	"SyncState",
]
