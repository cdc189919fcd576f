from __future__ import annotations

import logging
from typing import Optional

import redis

from .errors import HistoryExpiredError
from .guard import MailboxLock
from .models import CursorState, HistoryCursor, HistoryDelta, WatchResult
from .providers.base import EmailProvider

logger = logging.getLogger(__name__)


def is_numeric_cursor(value: Optional[str]) -> bool:
	return value is not None and str(value).isdigit()


class CursorTracker:
	"""Per-mailbox history cursor and watch bookkeeping in Redis.

	The cursor record (``cursor:{id}``) is only written while holding the
	mailbox lock. The state machine lives in its own key so reads and state
	transitions never race a commit.
	"""

	def __init__(self, client: redis.Redis, lock: MailboxLock, max_gap: int = 500) -> None:
		self.client = client
		self.lock = lock
		self.max_gap = max_gap

	# --- storage ---

	def get(self, mailbox_id: str) -> HistoryCursor:
		raw = self.client.get(f"cursor:{mailbox_id}")
		cursor = HistoryCursor.from_json(raw) if raw else HistoryCursor(mailbox_id=mailbox_id)
		state = self.client.get(f"cursor-state:{mailbox_id}")
		cursor.state = CursorState(state) if state else CursorState.WATCHING
		return cursor

	def _save(self, cursor: HistoryCursor) -> None:
		self.client.set(f"cursor:{cursor.mailbox_id}", cursor.to_json())

	def set_state(self, mailbox_id: str, state: CursorState) -> None:
		self.client.set(f"cursor-state:{mailbox_id}", state.value)

	def mailbox_for_subscription(self, subscription_id: str) -> Optional[str]:
		return self.client.get(f"subscription:{subscription_id}")

	# --- deltas ---

	def get_new_message_ids(self, mailbox_id: str, provider: EmailProvider, change_token: Optional[str] = None) -> HistoryDelta:
		"""Fetch what changed since the stored cursor.

		``change_token`` is the history id carried by a Gmail notification. It
		bounds how far back we look, and becomes the new cursor when the stored
		one has expired.
		"""
		self.set_state(mailbox_id, CursorState.FETCHING_DELTA)
		current = self.get(mailbox_id).cursor
		start = current
		if is_numeric_cursor(change_token):
			floor = max(int(change_token) - self.max_gap, 0)
			start = str(max(int(current) if is_numeric_cursor(current) else 0, floor))

		try:
			try:
				delta = provider.get_history_since(start)
			except HistoryExpiredError:
				logger.warning("History cursor %s for mailbox %s expired, resetting", start, mailbox_id)
				if is_numeric_cursor(change_token):
					fresh = HistoryDelta(items=[], new_cursor=str(change_token))
				else:
					fresh = provider.get_history_since(None)
				self.commit_cursor(mailbox_id, fresh.new_cursor, started_from=current, force=True)
				return HistoryDelta(items=[], new_cursor=fresh.new_cursor, started_from=current)
		except Exception:
			self.set_state(mailbox_id, CursorState.WATCHING)
			raise

		self.set_state(mailbox_id, CursorState.DISPATCHING)
		logger.debug("Mailbox %s: %d new item(s) since %s", mailbox_id, len(delta.items), start)
		return HistoryDelta(items=delta.items, new_cursor=delta.new_cursor, started_from=current)

	def commit_cursor(self, mailbox_id: str, new_cursor: Optional[str], started_from: Optional[str] = None, force: bool = False) -> bool:
		"""Store ``new_cursor`` unless it would move the cursor backwards.

		Numeric cursors only ever increase. Opaque cursors (delta links) only
		replace the cursor the delta was started from, so a slow worker holding
		an older delta cannot overwrite a newer one. Returns whether the cursor
		changed.
		"""
		with self.lock.hold(mailbox_id):
			record = self.get(mailbox_id)
			current = record.cursor
			changed = False
			if new_cursor and new_cursor != current:
				if force or current is None:
					changed = True
				elif is_numeric_cursor(new_cursor) and is_numeric_cursor(current):
					changed = int(new_cursor) > int(current)
				else:
					changed = started_from is None or started_from == current
			if changed:
				record.cursor = new_cursor
				self._save(record)
			else:
				logger.debug("Mailbox %s keeps cursor %s (offered %s)", mailbox_id, current, new_cursor)
			self.set_state(mailbox_id, CursorState.WATCHING)
			return changed

	# --- watches ---

	def set_watch(self, mailbox_id: str, result: WatchResult) -> HistoryCursor:
		with self.lock.hold(mailbox_id):
			record = self.get(mailbox_id)
			if record.subscription_id and record.subscription_id != result.subscription_id:
				self.client.delete(f"subscription:{record.subscription_id}")
			record.watch_expires_at = result.expires_at
			record.subscription_id = result.subscription_id
			if record.cursor is None and result.history_id:
				record.cursor = result.history_id
			if result.subscription_id:
				self.client.set(f"subscription:{result.subscription_id}", mailbox_id)
			self._save(record)
			return record
