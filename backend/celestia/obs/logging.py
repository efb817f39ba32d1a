"""Structured logging helpers for the observability package."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from celestia.settings import Settings

_CONTEXT: ContextVar[Dict[str, str]] = ContextVar("obs_context", default={})

_LOGGER_NAME = "celestia"

# message text, credentials and position never reach the log stream
_SENSITIVE_KEYWORDS = ("body", "text", "token", "secret", "password", "email", "location", "bio")

_MAX_STRING_LENGTH = 256

_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "taskName"}


def bind_context(*, user_id: Optional[str] = None, match_id: Optional[str] = None) -> Token:
	"""Attach user/match identifiers to every record logged by the current task."""
	fields = dict(_CONTEXT.get())
	if user_id is not None:
		fields["user_id"] = user_id
	if match_id is not None:
		fields["match_id"] = match_id
	return _CONTEXT.set(fields)


def reset_context(token: Token) -> None:
	_CONTEXT.reset(token)


def _clean(key: str, value: Any) -> Any:
	if any(keyword in key.lower() for keyword in _SENSITIVE_KEYWORDS):
		return "[redacted]"
	if isinstance(value, str) and len(value) > _MAX_STRING_LENGTH:
		return value[:_MAX_STRING_LENGTH] + "..."
	if isinstance(value, datetime):
		return value.isoformat()
	return value


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per record: fixed envelope, bound context, then `extra` fields."""

	def __init__(self, *, service: str, environment: str, commit: str) -> None:
		super().__init__()
		self._envelope = {"service": service, "env": environment, "commit": commit}

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			**self._envelope,
			**_CONTEXT.get(),
		}
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key not in _RECORD_ATTRS and key not in payload:
				payload[key] = _clean(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample info records at `rate`; other levels always pass."""

	def __init__(self, rate: float) -> None:
		super().__init__()
		self.rate = max(0.0, min(1.0, rate))

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO or self.rate >= 1.0:
			return True
		return random.random() < self.rate


def configure_logging(settings: Settings) -> logging.Logger:
	"""Route the root logger through the JSON formatter at the configured level."""
	handler = logging.StreamHandler()
	handler.setFormatter(
		JSONLogFormatter(
			service=settings.service_name,
			environment=settings.environment,
			commit=settings.git_commit,
		)
	)
	handler.addFilter(InfoSamplingFilter(settings.obs_log_sampling_rate_info))
	root = logging.getLogger()
	root.handlers[:] = [handler]
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)
