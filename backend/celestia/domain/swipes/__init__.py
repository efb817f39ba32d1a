"""Swipe decisions."""

from .models import SwipeAction, SwipeDecision, SwipeResult
from .repo import InMemorySwipeRepository, RedisSwipeRepository, SwipeRepository
from .service import SwipeProcessor

__all__ = [
	"InMemorySwipeRepository",
	"RedisSwipeRepository",
	"SwipeAction",
	"SwipeDecision",
	"SwipeProcessor",
	"SwipeRepository",
	"SwipeResult",
]
