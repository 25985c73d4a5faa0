"""JSON logging for the moderation service.

Every record is emitted as one JSON object carrying the service identity and
whatever request context the middleware bound (request id, route template, the
acting user). Fields passed through ``extra=`` are copied into the payload after
redaction, so security events can log their ``details`` mapping verbatim.
"""

from __future__ import annotations

import json
import logging
import random
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from app.settings import settings

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	name: ContextVar(f"mod_log_{name}", default=None)
	for name in ("request_id", "route", "actor_id", "action_id")
}

_ROOT_LOGGER = "app.moderation"

# Credentials and contact data never reach the log sink.
_REDACTED_KEYWORDS = ("token", "secret", "authorization", "password", "cookie", "email", "phone")

# Moderator-entered text is kept but clipped.
_FREE_TEXT_KEYS = frozenset({"reason", "description", "internal_notes", "reversal_reason", "message"})
_FREE_TEXT_LIMIT = 200
_MAX_STRING_LENGTH = 512
_MAX_COLLECTION_ITEMS = 25

_RESERVED_ATTRS = frozenset(
	logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind request-scoped fields (request_id, route, actor_id, action_id)."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if value is None:
			continue
		var = _CONTEXT.get(name)
		if var is None:
			raise KeyError(f"unknown log context field: {name}")
		tokens[name] = var.set(value)
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
	tokens = bind_context(**fields)
	try:
		yield
	finally:
		reset_context(tokens)


def current_request_id() -> Optional[str]:
	return _CONTEXT["request_id"].get()


def _clip(text: str, limit: int) -> str:
	return text if len(text) <= limit else f"{text[:limit]}…"


def _scrub(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(keyword in lowered for keyword in _REDACTED_KEYWORDS):
		return "[redacted]"
	if isinstance(value, str) and key in _FREE_TEXT_KEYS:
		return _clip(value, _FREE_TEXT_LIMIT)
	return _scrub_value(value)


def _scrub_value(value: Any) -> Any:
	if isinstance(value, str):
		return _clip(value, _MAX_STRING_LENGTH)
	if isinstance(value, datetime):
		return value.isoformat()
	if isinstance(value, dict):
		items = list(value.items())
		scrubbed = {str(key): _scrub(str(key), nested) for key, nested in items[:_MAX_COLLECTION_ITEMS]}
		if len(items) > _MAX_COLLECTION_ITEMS:
			scrubbed["…"] = f"+{len(items) - _MAX_COLLECTION_ITEMS} keys"
		return scrubbed
	if isinstance(value, (list, tuple, set)):
		values = [_scrub_value(item) for item in list(value)[:_MAX_COLLECTION_ITEMS]]
		if len(value) > _MAX_COLLECTION_ITEMS:
			values.append("…")
		return values
	return value


class JSONLogFormatter(logging.Formatter):
	"""Render a record as a single-line JSON document."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for name, var in _CONTEXT.items():
			bound = var.get()
			if bound:
				payload[name] = bound
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _RESERVED_ATTRS or key.startswith("_"):
				continue
			payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample INFO records; audit lines and anything louder always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO or record.name.startswith("audit."):
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_ROOT_LOGGER)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _ROOT_LOGGER)
