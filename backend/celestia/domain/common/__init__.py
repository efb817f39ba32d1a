"""Shared error taxonomy and result types."""

from .exceptions import (
	CelestiaError,
	Forbidden,
	NotFound,
	PermanentDeliveryError,
	QuotaExceeded,
	TransientError,
	ValidationError,
)
from .results import OperationResult, ResultStatus

__all__ = [
	"CelestiaError",
	"Forbidden",
	"NotFound",
	"OperationResult",
	"PermanentDeliveryError",
	"QuotaExceeded",
	"ResultStatus",
	"TransientError",
	"ValidationError",
]
