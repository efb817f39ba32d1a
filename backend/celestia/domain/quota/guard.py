"""Dual-layer quota enforcement: remote authority first, local fallback second."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol

from celestia.domain.common.exceptions import QuotaExceeded, TransientError, ValidationError
from celestia.infra.rate_limit import QuotaWindow
from celestia.obs import metrics as obs_metrics

from .local import LocalQuotaCounter
from .models import DEFAULT_POLICIES, QuotaDecision, QuotaPolicy

logger = logging.getLogger(__name__)


class RemoteQuotaService(Protocol):
	async def increment(self, kind: str, actor_id: str, *, window_seconds: int, now: Optional[float] = None) -> QuotaWindow:
		...

	async def peek(self, kind: str, actor_id: str, *, window_seconds: int, now: Optional[float] = None) -> QuotaWindow:
		...


class RateLimitGuard:
	"""Enforces per-user action quotas.

	The remote service is asked first under a short timeout. On timeout or
	transport failure the local counter enforces the same numeric limit, so
	an outage degrades to local enforcement instead of failing open.
	"""

	def __init__(
		self,
		*,
		remote: RemoteQuotaService | None,
		local: LocalQuotaCounter | None = None,
		policies: Mapping[str, QuotaPolicy] | None = None,
		timeout_seconds: float = 2.5,
		time_fn: Callable[[], float] = time.time,
	) -> None:
		self._remote = remote
		self._local = local or LocalQuotaCounter()
		self._policies: Dict[str, QuotaPolicy] = dict(policies or DEFAULT_POLICIES)
		self._timeout = timeout_seconds
		self._time = time_fn

	@property
	def local(self) -> LocalQuotaCounter:
		return self._local

	def policy(self, action: str) -> QuotaPolicy:
		try:
			return self._policies[action]
		except KeyError:
			raise ValidationError(f"unknown_quota_action:{action}") from None

	async def _remote_call(self, call) -> Optional[QuotaWindow]:
		if self._remote is None:
			return None
		try:
			return await asyncio.wait_for(call(), timeout=self._timeout)
		except asyncio.TimeoutError:
			obs_metrics.inc_quota_fallback("timeout")
			logger.warning("quota.fallback_local", extra={"cause": "timeout", "timeout_s": self._timeout})
		except TransientError as exc:
			obs_metrics.inc_quota_fallback("transport")
			logger.warning("quota.fallback_local", extra={"cause": exc.reason})
		return None

	async def check(self, user_id: str, action: str, *, premium: bool = False) -> QuotaDecision:
		"""Consume one unit of `action` and report whether it was within quota."""
		policy = self.policy(action)
		if premium and policy.premium_exempt:
			obs_metrics.inc_quota_check(action, "exempt", "allowed")
			return QuotaDecision(action=action, allowed=True, limit=policy.limit, used=0, source="exempt")

		now = self._time()
		window = await self._remote_call(
			lambda: self._remote.increment(action, user_id, window_seconds=policy.window_seconds, now=now)
		)
		if window is not None:
			source = "remote"
			self._local.overwrite(user_id, action, count=window.count, window_start=window.window_start)
			used, started = window.count, window.window_start
		else:
			source = "local"
			counter = self._local.increment(user_id, action, now=now, window_seconds=policy.window_seconds)
			used, started = counter.count, counter.window_start

		reset_ts = started + policy.window_seconds
		allowed = used <= policy.limit
		decision = QuotaDecision(
			action=action,
			allowed=allowed,
			limit=policy.limit,
			used=used,
			source=source,
			reset_at=datetime.fromtimestamp(reset_ts, tz=timezone.utc),
			retry_after=None if allowed else max(0.0, reset_ts - now),
		)
		obs_metrics.inc_quota_check(action, source, "allowed" if allowed else "denied")
		if not allowed:
			logger.info(
				"quota.denied",
				extra={"user_id": user_id, "action": action, "limit": policy.limit, "source": source},
			)
		return decision

	async def enforce(self, user_id: str, action: str, *, premium: bool = False) -> QuotaDecision:
		decision = await self.check(user_id, action, premium=premium)
		if not decision.allowed:
			raise QuotaExceeded(
				action,
				limit=decision.limit,
				retry_after=decision.retry_after,
				reset_at=decision.reset_at,
			)
		return decision

	async def remaining(self, user_id: str, action: str) -> int:
		policy = self.policy(action)
		now = self._time()
		window = await self._remote_call(
			lambda: self._remote.peek(action, user_id, window_seconds=policy.window_seconds, now=now)
		)
		if window is not None:
			self._local.overwrite(user_id, action, count=window.count, window_start=window.window_start)
			used = window.count
		else:
			used = self._local.peek(user_id, action, now=now, window_seconds=policy.window_seconds).count
		return max(0, policy.limit - used)

	async def reconcile(self, user_id: str, actions: Iterable[str] | None = None) -> Dict[str, int]:
		"""Pull server counts into the local mirror; the server value wins."""
		synced: Dict[str, int] = {}
		if self._remote is None:
			return synced
		now = self._time()
		for action in actions or self._policies.keys():
			policy = self.policy(action)
			window = await self._remote_call(
				lambda: self._remote.peek(action, user_id, window_seconds=policy.window_seconds, now=now)
			)
			if window is None:
				continue
			self._local.overwrite(user_id, action, count=window.count, window_start=window.window_start)
			synced[action] = window.count
		logger.debug("quota.reconciled", extra={"user_id": user_id, "actions": sorted(synced)})
		return synced
