"""Backoff policy and retry helper shared by every retrying path."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from celestia.domain.common.exceptions import TransientError
from celestia.infra.clock import Clock

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
	"""Exponential backoff: base * factor ** (attempt - 1), capped at max_delay."""

	base_delay: float = 2.0
	factor: float = 2.0
	max_delay: float = 60.0
	max_attempts: int = 5
	jitter: float = 0.0

	def delay_for(self, attempt: int, *, rng: Optional[random.Random] = None) -> float:
		"""Delay to wait after the given (1-based) failed attempt."""
		attempt = max(1, int(attempt))
		delay = self.base_delay * (self.factor ** (attempt - 1))
		if self.jitter > 0:
			delay += (rng or random).uniform(0.0, self.jitter)
		return min(delay, self.max_delay)

	def exhausted(self, attempts: int) -> bool:
		return attempts >= self.max_attempts


async def retry_async(
	func: Callable[[], Awaitable[T]],
	*,
	policy: BackoffPolicy,
	clock: Clock,
	retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
	operation: str = "operation",
) -> T:
	"""Run `func` until it succeeds or the policy is exhausted.

	Only exceptions listed in `retry_on` are retried; anything else propagates
	on the first occurrence. The last retryable error is re-raised once the
	attempt budget is spent.
	"""
	attempt = 0
	while True:
		attempt += 1
		try:
			return await func()
		except retry_on as exc:
			if policy.exhausted(attempt):
				logger.warning(
					"retry.exhausted",
					extra={"operation": operation, "attempts": attempt, "error": str(exc)},
				)
				raise
			delay = policy.delay_for(attempt)
			logger.info(
				"retry.scheduled",
				extra={"operation": operation, "attempt": attempt, "delay_s": delay, "error": str(exc)},
			)
			await clock.sleep(delay)
