from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from .errors import ProviderError, TransientProviderError

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
	return isinstance(error, TransientProviderError)


@dataclass
class RetryPolicy:
	"""How many times, how fast, and for which errors a provider call is retried.

	The provider adapters only ever go through ``call``; tests pass a policy
	with a no-op ``sleep`` to exercise retries without waiting.
	"""

	max_attempts: int = 3
	initial_delay: float = 0.5
	max_delay: float = 8.0
	retryable: Callable[[BaseException], bool] = is_transient
	sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

	def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
		retrying = Retrying(
			stop=stop_after_attempt(self.max_attempts),
			wait=wait_exponential_jitter(initial=self.initial_delay, max=self.max_delay),
			retry=retry_if_exception(self.retryable),
			sleep=self.sleep,
			reraise=True,
		)
		try:
			return retrying(fn, *args, **kwargs)
		except ProviderError as e:
			e.attempts = retrying.statistics.get("attempt_number", 1)
			raise


NO_RETRY = RetryPolicy(max_attempts=1)
