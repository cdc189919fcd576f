from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from .cursor import CursorTracker
from .errors import AuthError, ConfigError, ProviderError, WatchRenewalError
from .health import MailboxHealth
from .models import HistoryCursor, Mailbox
from .providers.base import EmailProvider
from .storage import SqliteStore

logger = logging.getLogger(__name__)


class WatchRenewer:
	"""Keeps Gmail watches and Graph subscriptions alive."""

	def __init__(
		self,
		store: SqliteStore,
		cursors: CursorTracker,
		provider_factory: Callable[[Mailbox], EmailProvider],
		health: MailboxHealth,
		window_hours: int = 24,
		clock: Callable[[], float] = time.time,
	) -> None:
		self.store = store
		self.cursors = cursors
		self.provider_factory = provider_factory
		self.health = health
		self.window_seconds = window_hours * 3600
		self._clock = clock

	def needs_renewal(self, cursor: HistoryCursor) -> bool:
		if cursor.watch_expires_at is None:
			return True
		return cursor.watch_expires_at - self._clock() <= self.window_seconds

	def renew_all(self) -> Dict[str, str]:
		"""Renew every mailbox whose watch expires inside the window.

		Returns ``{mailbox_id: "renewed" | "skipped" | "failed"}``; one
		mailbox failing does not stop the others.
		"""
		results: Dict[str, str] = {}
		for mailbox in self.store.list_mailboxes():
			if self.health.is_disabled(mailbox.id) or not self.needs_renewal(self.cursors.get(mailbox.id)):
				results[mailbox.id] = "skipped"
				continue
			try:
				self.renew(mailbox)
				results[mailbox.id] = "renewed"
			except WatchRenewalError as e:
				logger.critical("Watch renewal failed: %s", e)
				results[mailbox.id] = "failed"
		return results

	def renew(self, mailbox: Mailbox, provider: Optional[EmailProvider] = None) -> HistoryCursor:
		previous = self.cursors.get(mailbox.id)
		try:
			provider = provider or self.provider_factory(mailbox)
			result = provider.watch()
		except AuthError as e:
			self.health.mark_auth_failed(mailbox.id, str(e))
			raise WatchRenewalError(mailbox.id, f"auth failed: {e}") from e
		except (ProviderError, ConfigError) as e:
			raise WatchRenewalError(mailbox.id, str(e)) from e
		record = self.cursors.set_watch(mailbox.id, result)
		if previous.subscription_id and previous.subscription_id != result.subscription_id:
			try:
				provider.unwatch(previous.subscription_id)
			except ProviderError as e:
				logger.info("Could not remove old subscription %s: %s", previous.subscription_id, e)
		logger.info("Watch for mailbox %s renewed until %s", mailbox.id, int(result.expires_at))
		return record
