from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator

import redis

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)

# Delete the key only if it still holds our token, so a worker whose lock
# already expired cannot release a lock another worker has since taken.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
	return redis.call("del", KEYS[1])
end
return 0
"""

EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
	return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""


def redis_client(url: str) -> redis.Redis:
	return redis.Redis.from_url(url, decode_responses=True)


class ProcessingGuard:
	"""At most one worker per (mailbox, message) at a time.

	Claims are ``SET key token NX EX ttl``; a crashed worker's claim expires
	on its own after ``ttl_seconds``.
	"""

	def __init__(self, client: redis.Redis, ttl_seconds: int = 180, prefix: str = "processing") -> None:
		self.client = client
		self.ttl_seconds = ttl_seconds
		self.prefix = prefix
		self._tokens: Dict[str, str] = {}
		self._lock = threading.Lock()

	def _key(self, mailbox_id: str, message_id: str) -> str:
		return f"{self.prefix}:{mailbox_id}:{message_id}"

	def try_claim(self, mailbox_id: str, message_id: str) -> bool:
		key = self._key(mailbox_id, message_id)
		token = uuid.uuid4().hex
		if not self.client.set(key, token, nx=True, ex=self.ttl_seconds):
			logger.debug("Claim lost for %s", key)
			return False
		with self._lock:
			self._tokens[key] = token
		return True

	def extend(self, mailbox_id: str, message_id: str) -> bool:
		"""Push our claim's expiry out by another ``ttl_seconds``.

		Returns False when the claim is no longer ours, in which case another
		worker may already be handling the message.
		"""
		key = self._key(mailbox_id, message_id)
		with self._lock:
			token = self._tokens.get(key)
		if token is None:
			return False
		if not self.client.eval(EXTEND_SCRIPT, 1, key, token, self.ttl_seconds):
			logger.warning("Claim on %s expired before it could be extended", key)
			return False
		return True

	def release(self, mailbox_id: str, message_id: str) -> None:
		key = self._key(mailbox_id, message_id)
		with self._lock:
			token = self._tokens.pop(key, None)
		if token is None:
			return
		self.client.eval(RELEASE_SCRIPT, 1, key, token)


class MailboxLock:
	"""Mailbox-scoped mutex used to keep cursor commits single-writer."""

	def __init__(
		self,
		client: redis.Redis,
		ttl_seconds: int = 120,
		wait_timeout: float = 30.0,
		poll_interval: float = 0.1,
		sleep: Callable[[float], None] = time.sleep,
		prefix: str = "mailbox-lock",
	) -> None:
		self.client = client
		self.ttl_seconds = ttl_seconds
		self.wait_timeout = wait_timeout
		self.poll_interval = poll_interval
		self._sleep = sleep
		self.prefix = prefix

	@contextmanager
	def hold(self, mailbox_id: str) -> Iterator[None]:
		key = f"{self.prefix}:{mailbox_id}"
		token = uuid.uuid4().hex
		deadline = time.monotonic() + self.wait_timeout
		while not self.client.set(key, token, nx=True, ex=self.ttl_seconds):
			if time.monotonic() >= deadline:
				raise LockTimeoutError(f"could not lock mailbox {mailbox_id} within {self.wait_timeout}s")
			self._sleep(self.poll_interval)
		try:
			yield
		finally:
			self.client.eval(RELEASE_SCRIPT, 1, key, token)
