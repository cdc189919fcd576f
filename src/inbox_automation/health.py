from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

import redis

from .models import HistoryItem

logger = logging.getLogger(__name__)

RETRY_AT_BUFFER_SECONDS = 5


class MailboxHealth:
	"""Per-mailbox disable flag and provider cooldown, shared across workers."""

	def __init__(self, client: redis.Redis, default_cooldown_seconds: int = 30, clock: Callable[[], float] = time.time) -> None:
		self.client = client
		self.default_cooldown_seconds = default_cooldown_seconds
		self._clock = clock

	def mark_auth_failed(self, mailbox_id: str, reason: str) -> None:
		self.client.set(f"mailbox-disabled:{mailbox_id}", reason or "auth error")
		logger.error("Mailbox %s disabled until re-consent: %s", mailbox_id, reason)

	def enable(self, mailbox_id: str) -> None:
		self.client.delete(f"mailbox-disabled:{mailbox_id}")

	def is_disabled(self, mailbox_id: str) -> bool:
		return self.client.get(f"mailbox-disabled:{mailbox_id}") is not None

	def record_rate_limit(self, mailbox_id: str, retry_at: Optional[datetime] = None) -> float:
		"""Pause the mailbox until ``retry_at``; an existing longer pause wins."""
		now = self._clock()
		until = retry_at.timestamp() if retry_at else now + self.default_cooldown_seconds
		current = self.rate_limited_until(mailbox_id)
		if current and current >= until:
			return current
		ttl = max(1, int(until - now) + RETRY_AT_BUFFER_SECONDS)
		self.client.set(f"rate-limit:{mailbox_id}", str(until), ex=ttl)
		logger.warning("Mailbox %s rate limited for %ss", mailbox_id, int(until - now))
		return until

	def rate_limited_until(self, mailbox_id: str) -> Optional[float]:
		value = self.client.get(f"rate-limit:{mailbox_id}")
		return float(value) if value else None

	def is_rate_limited(self, mailbox_id: str) -> bool:
		until = self.rate_limited_until(mailbox_id)
		return until is not None and until > self._clock()


class DeferredQueue:
	"""Messages set aside while a mailbox cools down. Nothing here is dropped:
	``take`` moves items onto a per-mailbox processing list and they leave it
	only when ``ack`` is called, so a worker that dies mid-drain leaves its
	items for the next ``take``."""

	def __init__(self, client: redis.Redis, prefix: str = "deferred") -> None:
		self.client = client
		self.prefix = prefix

	def _key(self, mailbox_id: str) -> str:
		return f"{self.prefix}:{mailbox_id}"

	def _processing_key(self, mailbox_id: str) -> str:
		return f"{self.prefix}-processing:{mailbox_id}"

	@staticmethod
	def _encode(item: HistoryItem) -> str:
		return json.dumps({"message_id": item.message_id, "thread_id": item.thread_id, "label_ids": item.label_ids})

	@staticmethod
	def _decode(raw: str) -> HistoryItem:
		data = json.loads(raw)
		return HistoryItem(message_id=data["message_id"], thread_id=data.get("thread_id"), label_ids=data.get("label_ids") or [])

	def push(self, mailbox_id: str, items: List[HistoryItem]) -> None:
		if not items:
			return
		self.client.rpush(self._key(mailbox_id), *[self._encode(i) for i in items])
		logger.info("Deferred %d message(s) for mailbox %s", len(items), mailbox_id)

	def take(self, mailbox_id: str) -> List[HistoryItem]:
		key, processing = self._key(mailbox_id), self._processing_key(mailbox_id)
		recovered = 0
		# leftovers of an earlier drain that never acked go back to the front
		while self.client.lmove(processing, key, "RIGHT", "LEFT") is not None:
			recovered += 1
		if recovered:
			logger.warning("Recovered %d unfinished deferred message(s) for mailbox %s", recovered, mailbox_id)
		items: List[HistoryItem] = []
		while True:
			raw = self.client.lmove(key, processing, "LEFT", "RIGHT")
			if raw is None:
				return items
			items.append(self._decode(raw))

	def ack(self, mailbox_id: str, item: HistoryItem) -> None:
		self.client.lrem(self._processing_key(mailbox_id), 1, self._encode(item))

	def size(self, mailbox_id: str) -> int:
		return int(self.client.llen(self._key(mailbox_id))) + int(self.client.llen(self._processing_key(mailbox_id)))

	def mailboxes(self) -> List[str]:
		found = set()
		for prefix in (f"{self.prefix}:", f"{self.prefix}-processing:"):
			found.update(key[len(prefix):] for key in self.client.scan_iter(match=f"{prefix}*"))
		return sorted(found)
