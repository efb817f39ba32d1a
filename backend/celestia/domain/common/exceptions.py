"""Error taxonomy shared by the matching core."""

from __future__ import annotations

from datetime import datetime


class CelestiaError(Exception):
    """Base class for matching core errors."""

    reason: str = "unknown"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason


class ValidationError(CelestiaError, ValueError):
    """Malformed input; rejected immediately and never retried."""

    reason = "invalid"


class TransientError(CelestiaError):
    """Backend or network unavailable; safe to retry with backoff."""

    reason = "unavailable"


class QuotaExceeded(CelestiaError):
    """Policy violation from the rate limit guard; never retried."""

    reason = "quota_exceeded"

    def __init__(
        self,
        action: str,
        *,
        limit: int,
        retry_after: float | None = None,
        reset_at: datetime | None = None,
    ) -> None:
        super().__init__(f"{action}:limit={limit}")
        self.reason = "quota_exceeded"
        self.action = action
        self.limit = limit
        self.retry_after = retry_after
        self.reset_at = reset_at


class PermanentDeliveryError(CelestiaError):
    """Delivery rejected for good (retries exhausted or refused by the backend)."""

    reason = "permanent_failure"


class NotFound(CelestiaError):
    reason = "not_found"


class Forbidden(CelestiaError):
    reason = "forbidden"
