import fnmatch
import threading
from typing import Dict, List, Optional

import pytest

from inbox_automation.errors import MessageNotFoundError
from inbox_automation.health import DeferredQueue, MailboxHealth
from inbox_automation.models import (
	Action,
	ActionType,
	HistoryDelta,
	Mailbox,
	ParsedMessage,
	ProviderKind,
	Rule,
	Thread,
	WatchResult,
)
from inbox_automation.providers.base import EmailProvider
from inbox_automation.retry import RetryPolicy
from inbox_automation.storage import SqliteStore


class FakeRedis:
	"""Just enough of redis.Redis (decode_responses=True) for the guard, cursor and health code."""

	def __init__(self):
		self.data: Dict[str, str] = {}
		self.lists: Dict[str, List[str]] = {}
		self.ttls: Dict[str, int] = {}
		self._lock = threading.Lock()

	def set(self, key, value, nx=False, ex=None):
		with self._lock:
			if nx and key in self.data:
				return None
			self.data[key] = str(value)
			if ex is not None:
				self.ttls[key] = ex
			return True

	def get(self, key):
		return self.data.get(key)

	def delete(self, *keys):
		with self._lock:
			removed = 0
			for key in keys:
				if self.data.pop(key, None) is not None or self.lists.pop(key, None) is not None:
					removed += 1
			return removed

	def eval(self, script, numkeys, key, token, *args):
		with self._lock:
			if self.data.get(key) != token:
				return 0
			if "expire" in script:
				self.ttls[key] = int(args[0])
				return 1
			del self.data[key]
			return 1

	def rpush(self, key, *values):
		with self._lock:
			self.lists.setdefault(key, []).extend(values)
			return len(self.lists[key])

	def lpop(self, key):
		with self._lock:
			items = self.lists.get(key)
			if not items:
				return None
			return items.pop(0)

	def lmove(self, source, destination, src="LEFT", dest="RIGHT"):
		with self._lock:
			items = self.lists.get(source)
			if not items:
				return None
			value = items.pop(0) if src == "LEFT" else items.pop()
			target = self.lists.setdefault(destination, [])
			if dest == "LEFT":
				target.insert(0, value)
			else:
				target.append(value)
			return value

	def lrem(self, key, count, value):
		with self._lock:
			items = self.lists.get(key, [])
			if value in items:
				items.remove(value)
				return 1
			return 0

	def lrange(self, key, start, end):
		items = self.lists.get(key, [])
		return list(items[start:] if end == -1 else items[start : end + 1])

	def llen(self, key):
		return len(self.lists.get(key, []))

	def scan_iter(self, match=None):
		keys = [k for k in list(self.data) + [k for k, v in self.lists.items() if v]]
		return [k for k in keys if match is None or fnmatch.fnmatch(k, match)]

	def ping(self):
		return True


FAST_RETRY = RetryPolicy(max_attempts=3, sleep=lambda s: None)


class FakeProvider(EmailProvider):
	"""In-memory mailbox. ``failures`` maps an operation name to an exception
	raised on every attempt; each attempt is recorded in ``calls``."""

	name = "fake"

	def __init__(self, messages: Optional[List[ParsedMessage]] = None, retry_policy: RetryPolicy = FAST_RETRY):
		super().__init__(retry_policy)
		self.messages: Dict[str, ParsedMessage] = {m.id: m for m in messages or []}
		self.failures: Dict[str, Exception] = {}
		self.calls: List[tuple] = []
		self.labels: Dict[str, set] = {}
		self.archived: set = set()
		self.read: set = set()
		self.spam: set = set()
		self.folders: Dict[str, str] = {}
		self.drafts: Dict[str, ParsedMessage] = {}
		self.sent: List[dict] = []
		self.history: HistoryDelta = HistoryDelta(items=[], new_cursor=None)
		self.history_starts: List[Optional[str]] = []
		self.history_error: Optional[Exception] = None
		self.watch_result = WatchResult(expires_at=0.0)
		self.unwatched: List[Optional[str]] = []
		self._next_draft = 0

	def add(self, message: ParsedMessage) -> None:
		self.messages[message.id] = message

	def _op(self, name, *args):
		def attempt():
			self.calls.append((name,) + args)
			if name in self.failures:
				raise self.failures[name]
		self._call(attempt)

	def attempts(self, name):
		return sum(1 for c in self.calls if c[0] == name)

	def get_message(self, message_id):
		self._op("get_message", message_id)
		if message_id not in self.messages:
			raise MessageNotFoundError(f"{message_id} not found", status=404)
		return self.messages[message_id]

	def get_thread(self, thread_id):
		self._op("get_thread", thread_id)
		return Thread(id=thread_id, messages=[m for m in self.messages.values() if m.thread_id == thread_id])

	def get_history_since(self, cursor):
		self.history_starts.append(cursor)
		if self.history_error is not None:
			error, self.history_error = self.history_error, None
			raise error
		return self.history

	def get_draft(self, draft_id):
		self._op("get_draft", draft_id)
		return self.drafts.get(draft_id)

	def get_or_create_label(self, name):
		self._op("get_or_create_label", name)
		return name

	def apply_labels(self, message_id, add, remove=None):
		self._op("apply_labels", message_id, tuple(add))
		current = self.labels.setdefault(message_id, set())
		current.update(add)
		current.difference_update(remove or [])

	def archive(self, thread_id):
		self._op("archive", thread_id)
		self.archived.add(thread_id)
		for m in self.messages.values():
			if m.thread_id == thread_id and "INBOX" in m.label_ids:
				m.label_ids.remove("INBOX")

	def mark_read(self, thread_id):
		self._op("mark_read", thread_id)
		self.read.add(thread_id)

	def mark_spam(self, thread_id):
		self._op("mark_spam", thread_id)
		self.spam.add(thread_id)

	def trash(self, thread_id):
		self._op("trash", thread_id)

	def move_to_folder(self, thread_id, folder_name):
		self._op("move_to_folder", thread_id, folder_name)
		self.folders[thread_id] = folder_name

	def create_draft(self, message, content, to=None, subject=None):
		self._op("create_draft", message.id)
		self._next_draft += 1
		draft_id = f"draft-{self._next_draft}"
		self.drafts[draft_id] = ParsedMessage(id=f"{draft_id}-msg", thread_id=message.thread_id, text_plain=content, label_ids=["DRAFT"])
		return draft_id

	def delete_draft(self, draft_id):
		self._op("delete_draft", draft_id)
		self.drafts.pop(draft_id, None)

	def send_reply(self, message, content, cc=None, bcc=None):
		self._op("send_reply", message.id)
		self.sent.append({"kind": "reply", "to_message": message.id, "content": content, "cc": cc, "bcc": bcc})

	def forward(self, message, to, content=None, cc=None, bcc=None):
		self._op("forward", message.id, to)
		self.sent.append({"kind": "forward", "to": to, "content": content})

	def send_email(self, to, subject, content, cc=None, bcc=None):
		self._op("send_email", to)
		self.sent.append({"kind": "new", "to": to, "subject": subject, "content": content})

	def watch(self):
		self._op("watch")
		return self.watch_result

	def unwatch(self, subscription_id=None):
		self._op("unwatch", subscription_id)
		self.unwatched.append(subscription_id)


class FakeClassifier:
	"""Stands in for EmailClassifier; returns a preset Classification."""

	def __init__(self, result=None):
		self.result = result
		self.calls = []

	def classify(self, message, candidate_rules, user_context=""):
		from inbox_automation.classifier import no_match
		self.calls.append(("classify", message.id, [r.id for r in candidate_rules]))
		return self.result if self.result is not None else no_match("nothing fits")

	def fill_action_args(self, message, rule, user_context=""):
		from inbox_automation.classifier import Classification
		self.calls.append(("fill", message.id, rule.id))
		if self.result is not None:
			return self.result
		return Classification(rule_id=rule.id, confidence=1.0)


class RecordingWebhookSender:
	def __init__(self):
		self.sent = []

	def send(self, url, payload, secret=None):
		self.sent.append((url, payload, secret))

	def shutdown(self, wait=True):
		pass


def make_message(
	message_id="m1",
	thread_id=None,
	sender="Newsletter <newsletter@service.com>",
	to="me@example.com",
	subject="Weekly digest",
	body="Hello there",
	labels=None,
):
	return ParsedMessage(
		id=message_id,
		thread_id=thread_id or f"t-{message_id}",
		headers={"from": sender, "to": to, "subject": subject, "message-id": f"<{message_id}@mail>"},
		text_plain=body,
		label_ids=list(labels if labels is not None else ["INBOX", "UNREAD"]),
	)


def make_rule(rule_id="r1", name="Rule", actions=None, mailbox_id="mb1", **kwargs):
	return Rule(id=rule_id, mailbox_id=mailbox_id, name=name, actions=actions or [], **kwargs)


def action(kind, **params):
	return Action(type=ActionType(kind), id=params.pop("id", None) or f"a-{kind.lower()}", **params)


@pytest.fixture
def mailbox():
	return Mailbox(id="mb1", email="me@example.com", provider=ProviderKind.GOOGLE, about="I run a small bakery.", webhook_secret="s3cret")


@pytest.fixture
def store(mailbox):
	s = SqliteStore(":memory:")
	s.save_mailbox(mailbox)
	yield s
	s.close()


@pytest.fixture
def fake_redis():
	return FakeRedis()


@pytest.fixture
def health(fake_redis):
	return MailboxHealth(fake_redis, default_cooldown_seconds=30)


@pytest.fixture
def deferred(fake_redis):
	return DeferredQueue(fake_redis)
