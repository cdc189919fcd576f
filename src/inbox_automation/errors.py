from __future__ import annotations

from datetime import datetime
from typing import Optional


class AutomationError(Exception):
	"""Base class for all errors raised by the automation core."""


class ConfigError(AutomationError):
	pass


class ProviderError(AutomationError):
	"""A provider API call failed.

	``attempts`` is filled in by the retry policy once it gives up, so the
	executor can report how many tries an action took.
	"""

	def __init__(self, message: str, status: Optional[int] = None) -> None:
		super().__init__(message)
		self.status = status
		self.attempts = 1


class TransientProviderError(ProviderError):
	"""Timeouts, connection resets and 5xx responses. Safe to retry."""


class RateLimitedError(TransientProviderError):
	"""The provider is throttling this mailbox (HTTP 429 / quota exceeded)."""

	def __init__(self, message: str, retry_at: Optional[datetime] = None, status: Optional[int] = 429) -> None:
		super().__init__(message, status=status)
		self.retry_at = retry_at


class PermanentProviderError(ProviderError):
	"""400-class failures that will not succeed on retry."""


class MessageNotFoundError(PermanentProviderError):
	pass


class AuthError(ProviderError):
	"""The grant for the mailbox is expired or revoked. Fatal for the mailbox."""


class ClassifierError(AutomationError):
	pass


class ClassifierSchemaError(ClassifierError):
	"""The model answered with something that does not fit the response schema."""


class WatchRenewalError(AutomationError):
	"""A Gmail watch or Graph subscription could not be renewed."""

	def __init__(self, mailbox_id: str, message: str) -> None:
		super().__init__(f"{mailbox_id}: {message}")
		self.mailbox_id = mailbox_id


class HistoryExpiredError(PermanentProviderError):
	"""The stored history cursor is too old for the provider to replay."""


class LockTimeoutError(AutomationError):
	"""A mailbox-scoped lock could not be acquired in time."""
