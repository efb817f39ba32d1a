"""Redis connection management.

Clients are created explicitly and handed to the adapters that need them, so
tests can pass a FakeRedis instance without patching module state.
"""

from __future__ import annotations

from redis.exceptions import RedisError

from celestia.domain.common.exceptions import TransientError

TRANSPORT_ERRORS = (RedisError, OSError)


def as_transient(exc: RedisError | OSError) -> TransientError:
	"""Translate a transport failure into the core's retryable error."""
	return TransientError(f"redis:{type(exc).__name__}")


class KeySpace:
	"""Builds namespaced keys so several deployments can share one Redis."""

	def __init__(self, prefix: str | None = None) -> None:
		self._prefix = f"{prefix}:" if prefix else ""

	def __call__(self, *parts: object) -> str:
		return self._prefix + ":".join(str(part) for part in parts)


__all__ = ["KeySpace", "RedisError", "TRANSPORT_ERRORS", "as_transient"]
