"""Typed results returned by user-facing operations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ResultStatus(str, Enum):
	SUCCESS = "success"
	QUOTA_EXCEEDED = "quota_exceeded"
	TRANSIENT_FAILURE = "transient_failure"
	PERMANENT_FAILURE = "permanent_failure"


@dataclass(slots=True)
class OperationResult:
	"""Outcome envelope; `reason` carries the error reason for non-success results."""

	status: ResultStatus
	reason: Optional[str] = None
	retry_after: Optional[float] = None

	@property
	def ok(self) -> bool:
		return self.status is ResultStatus.SUCCESS

	@property
	def retryable(self) -> bool:
		return self.status is ResultStatus.TRANSIENT_FAILURE
