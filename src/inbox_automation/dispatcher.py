from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, Tuple

logger = logging.getLogger(__name__)

_Task = Tuple[Future, Callable[..., Any], Tuple[Any, ...], Dict[str, Any]]


class _Lane:
	"""A thread pool that runs at most ``limit`` tasks per mailbox at once.

	Tasks beyond the limit wait in a per-mailbox queue instead of occupying
	a pool thread, so a busy mailbox never starves the others.
	"""

	def __init__(self, pool: ThreadPoolExecutor, limit: int) -> None:
		self.pool = pool
		self.limit = max(1, limit)
		self._queued: Dict[str, Deque[_Task]] = defaultdict(deque)
		self._running: Dict[str, int] = defaultdict(int)
		self._lock = threading.Lock()

	def submit(self, mailbox_id: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
		future: Future = Future()
		with self._lock:
			self._queued[mailbox_id].append((future, fn, args, kwargs))
		self._pump(mailbox_id)
		return future

	def _pump(self, mailbox_id: str) -> None:
		with self._lock:
			queue = self._queued[mailbox_id]
			while queue and self._running[mailbox_id] < self.limit:
				task = queue.popleft()
				if not task[0].set_running_or_notify_cancel():
					continue
				self._running[mailbox_id] += 1
				self.pool.submit(self._run, mailbox_id, task)

	def _run(self, mailbox_id: str, task: _Task) -> None:
		future, fn, args, kwargs = task
		try:
			future.set_result(fn(*args, **kwargs))
		except BaseException as e:
			future.set_exception(e)
		finally:
			with self._lock:
				self._running[mailbox_id] -= 1
			self._pump(mailbox_id)

	def cancel(self, mailbox_id: str) -> int:
		with self._lock:
			queue = self._queued.pop(mailbox_id, deque())
		cancelled = 0
		for future, _, _, _ in queue:
			if future.cancel():
				cancelled += 1
		return cancelled

	def pending(self, mailbox_id: str) -> int:
		with self._lock:
			return len(self._queued.get(mailbox_id, ()))


class Dispatcher:
	"""Owns all background work.

	Notification jobs (one delta fetch per mailbox at a time) and message
	tasks (up to ``mailbox_concurrency`` per mailbox) run on separate pools,
	so a job waiting on its messages can never block them.
	"""

	def __init__(self, worker_count: int = 8, mailbox_concurrency: int = 3) -> None:
		self._job_pool = ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="mailbox-job")
		self._message_pool = ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="message")
		self.jobs = _Lane(self._job_pool, 1)
		self.messages = _Lane(self._message_pool, mailbox_concurrency)

	def submit_job(self, mailbox_id: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
		future = self.jobs.submit(mailbox_id, fn, *args, **kwargs)
		future.add_done_callback(lambda f: _log_failure(mailbox_id, f))
		return future

	def submit_message(self, mailbox_id: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
		return self.messages.submit(mailbox_id, fn, *args, **kwargs)

	def cancel_mailbox(self, mailbox_id: str) -> int:
		"""Drop everything still queued for a mailbox. Running tasks finish."""
		cancelled = self.messages.cancel(mailbox_id) + self.jobs.cancel(mailbox_id)
		if cancelled:
			logger.warning("Cancelled %d queued task(s) for mailbox %s", cancelled, mailbox_id)
		return cancelled

	def shutdown(self, wait: bool = True) -> None:
		self._job_pool.shutdown(wait=wait)
		self._message_pool.shutdown(wait=wait)


def _log_failure(mailbox_id: str, future: Future) -> None:
	if future.cancelled():
		return
	error = future.exception()
	if error is not None:
		logger.error("Job for mailbox %s failed: %s", mailbox_id, error, exc_info=error)
