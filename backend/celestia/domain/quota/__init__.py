"""Per-user action quotas."""

from .guard import RateLimitGuard, RemoteQuotaService
from .local import LocalQuotaCounter
from .models import DEFAULT_POLICIES, QuotaDecision, QuotaPolicy, policies_from_settings

__all__ = [
	"DEFAULT_POLICIES",
	"LocalQuotaCounter",
	"QuotaDecision",
	"QuotaPolicy",
	"RateLimitGuard",
	"RemoteQuotaService",
	"policies_from_settings",
]
