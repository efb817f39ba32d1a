"""Profile projections and the profile source collaborator."""

from .models import BehavioralProfile, EngagementCounters, GeoPoint, Profile, VerificationFlags
from .source import InMemoryProfileStore, ProfileSource

__all__ = [
	"BehavioralProfile",
	"EngagementCounters",
	"GeoPoint",
	"InMemoryProfileStore",
	"Profile",
	"ProfileSource",
	"VerificationFlags",
]
