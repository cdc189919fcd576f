import threading
import time
from collections import deque
from typing import Callable, Deque, Optional


class RateLimiter:
	"""Sliding-window limiter shared by every worker that calls the model."""

	def __init__(
		self,
		max_requests: int = 60,
		time_window: float = 60,
		clock: Callable[[], float] = time.monotonic,
		sleep: Callable[[float], None] = time.sleep,
	) -> None:
		self.max_requests = max_requests
		self.time_window = time_window
		self._clock = clock
		self._sleep = sleep
		self._timestamps: Deque[float] = deque()
		self._lock = threading.Lock()

	def add_request(self) -> None:
		with self._lock:
			self._prune()
			self._timestamps.append(self._clock())

	def get_wait_time(self) -> float:
		with self._lock:
			return self._wait_time_locked()

	def acquire(self, timeout: Optional[float] = None) -> bool:
		"""Block until a slot is free, then take it.

		With a ``timeout``, gives up and returns False rather than wait longer
		than that many seconds in total.
		"""
		waited = 0.0
		while True:
			with self._lock:
				wait_seconds = self._wait_time_locked()
				if wait_seconds <= 0:
					self._timestamps.append(self._clock())
					return True
			if timeout is not None and waited + wait_seconds > timeout:
				return False
			self._sleep(wait_seconds)
			waited += wait_seconds

	def _wait_time_locked(self) -> float:
		self._prune()
		if len(self._timestamps) < self.max_requests:
			return 0.0
		elapsed = self._clock() - self._timestamps[0]
		return max(0.0, self.time_window - elapsed)

	def _prune(self) -> None:
		cutoff = self._clock() - self.time_window
		while self._timestamps and self._timestamps[0] <= cutoff:
			self._timestamps.popleft()
