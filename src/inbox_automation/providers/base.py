from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, List, Optional, TypeVar

from ..errors import (
	AuthError,
	MessageNotFoundError,
	PermanentProviderError,
	ProviderError,
	RateLimitedError,
	TransientProviderError,
)
from ..models import HistoryDelta, ParsedMessage, Thread, WatchResult
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parse_retry_after(value: Optional[str], default_seconds: float = 30.0) -> datetime:
	"""Turn a Retry-After header (seconds or HTTP date) into an absolute time."""
	now = datetime.now(timezone.utc)
	if value:
		value = value.strip()
		if value.isdigit():
			return now + timedelta(seconds=int(value))
		try:
			parsed = parsedate_to_datetime(value)
			if parsed.tzinfo is None:
				parsed = parsed.replace(tzinfo=timezone.utc)
			return parsed
		except (TypeError, ValueError):
			pass
	return now + timedelta(seconds=default_seconds)


_REPLY_PREFIX_RE = re.compile(r"^\s*((re|aw|sv|antw|fwd?|wg)\s*:\s*)+", re.IGNORECASE)


def reply_subject(subject: str) -> str:
	stripped = _REPLY_PREFIX_RE.sub("", subject or "").strip()
	return f"Re: {stripped}" if stripped else "Re:"


def forward_subject(subject: str) -> str:
	stripped = _REPLY_PREFIX_RE.sub("", subject or "").strip()
	return f"Fwd: {stripped}" if stripped else "Fwd:"


def classify_status(status: int, message: str, retry_after: Optional[str] = None) -> ProviderError:
	"""Map an HTTP status from any provider onto the error taxonomy."""
	lowered = message.lower()
	if status == 401 or "invalid_grant" in lowered:
		return AuthError(message, status=status)
	if status == 429 or "ratelimitexceeded" in lowered or "userratelimitexceeded" in lowered:
		return RateLimitedError(message, retry_at=parse_retry_after(retry_after), status=status)
	if status == 403 and "quota" in lowered:
		return RateLimitedError(message, retry_at=parse_retry_after(retry_after), status=status)
	if status == 404:
		return MessageNotFoundError(message, status=status)
	if status >= 500 or status in (408, 409):
		return TransientProviderError(message, status=status)
	return PermanentProviderError(message, status=status)


class EmailProvider(ABC):
	"""Uniform mailbox interface. Gmail and Outlook implement it; nothing else
	in the package knows which one it is talking to."""

	name: str = "base"

	def __init__(self, retry_policy: Optional[RetryPolicy] = None) -> None:
		self.retry_policy = retry_policy or RetryPolicy()

	def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
		return self.retry_policy.call(fn, *args, **kwargs)

	# --- reads ---

	@abstractmethod
	def get_message(self, message_id: str) -> ParsedMessage:
		...

	@abstractmethod
	def get_thread(self, thread_id: str) -> Thread:
		...

	@abstractmethod
	def get_history_since(self, cursor: Optional[str]) -> HistoryDelta:
		...

	@abstractmethod
	def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
		"""The draft's message, or None when it was sent or deleted."""

	# --- mutations ---

	@abstractmethod
	def get_or_create_label(self, name: str) -> str:
		...

	@abstractmethod
	def apply_labels(self, message_id: str, add: List[str], remove: Optional[List[str]] = None) -> None:
		"""Add/remove labels by name (Gmail labels, Outlook categories)."""

	@abstractmethod
	def archive(self, thread_id: str) -> None:
		...

	@abstractmethod
	def mark_read(self, thread_id: str) -> None:
		...

	@abstractmethod
	def mark_spam(self, thread_id: str) -> None:
		...

	@abstractmethod
	def trash(self, thread_id: str) -> None:
		...

	@abstractmethod
	def move_to_folder(self, thread_id: str, folder_name: str) -> None:
		...

	@abstractmethod
	def create_draft(self, message: ParsedMessage, content: str, to: Optional[str] = None, subject: Optional[str] = None) -> str:
		"""Create a reply draft in the message's thread and return the draft id."""

	@abstractmethod
	def delete_draft(self, draft_id: str) -> None:
		...

	@abstractmethod
	def send_reply(self, message: ParsedMessage, content: str, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		...

	@abstractmethod
	def forward(self, message: ParsedMessage, to: str, content: Optional[str] = None, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		...

	@abstractmethod
	def send_email(self, to: str, subject: str, content: str, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		...

	# --- push notifications ---

	@abstractmethod
	def watch(self) -> WatchResult:
		...

	@abstractmethod
	def unwatch(self, subscription_id: Optional[str] = None) -> None:
		...
