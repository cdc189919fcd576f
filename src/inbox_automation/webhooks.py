from __future__ import annotations

import hashlib
import hmac
import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional

import requests

from .models import ExecutedRule, ParsedMessage

logger = logging.getLogger(__name__)


def sign_payload(secret: str, body: bytes) -> str:
	return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_payload(message: ParsedMessage, executed: ExecutedRule) -> Dict[str, Any]:
	return {
		"email": {
			"threadId": message.thread_id,
			"messageId": message.id,
			"subject": message.subject,
			"from": message.sender,
			"cc": message.header("cc"),
			"bcc": message.header("bcc"),
			"headerMessageId": message.header("message-id"),
		},
		"executedRule": {
			"id": executed.id,
			"ruleId": executed.rule_id,
			"reason": executed.reason,
			"automated": executed.automated,
			"createdAt": executed.created_at,
		},
	}


class WebhookSender:
	"""Best-effort outbound webhook calls on a small background pool.

	``send`` returns as soon as the request is queued; failures end up in the
	log and nowhere else.
	"""

	def __init__(self, timeout: float = 10.0, max_workers: int = 4, session: Optional[requests.Session] = None) -> None:
		self.timeout = timeout
		self.session = session or requests.Session()
		self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")

	def send(self, url: str, payload: Dict[str, Any], secret: Optional[str] = None) -> Future:
		body = json.dumps(payload).encode("utf-8")
		headers = {"Content-Type": "application/json"}
		if secret:
			headers["X-Webhook-Secret"] = secret
			headers["X-Webhook-Signature"] = sign_payload(secret, body)
		return self._pool.submit(self._post, url, body, headers)

	def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> Optional[int]:
		try:
			resp = self.session.post(url, data=body, headers=headers, timeout=self.timeout)
		except requests.RequestException as e:
			logger.warning("Webhook %s failed: %s", url, e)
			return None
		if resp.status_code >= 400:
			logger.warning("Webhook %s answered %s", url, resp.status_code)
		return resp.status_code

	def shutdown(self, wait: bool = True) -> None:
		self._pool.shutdown(wait=wait)
