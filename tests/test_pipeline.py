import pytest

from inbox_automation.classifier import Classification
from inbox_automation.cursor import CursorTracker
from inbox_automation.dispatcher import Dispatcher
from inbox_automation.errors import ClassifierError, RateLimitedError, TransientProviderError
from inbox_automation.executor import ActionExecutor
from inbox_automation.guard import MailboxLock, ProcessingGuard
from inbox_automation.health import DeferredQueue, MailboxHealth
from inbox_automation.models import (
	ActionStatus,
	ExecutedRuleStatus,
	Group,
	GroupItem,
	GroupItemType,
	HistoryDelta,
	HistoryItem,
	Mailbox,
	ProviderKind,
)
from inbox_automation.pipeline import HistoryProcessor, MessageProcessor

from conftest import FakeClassifier, FakeProvider, FakeRedis, action, make_message, make_rule


class Clock:
	def __init__(self, now=1_000_000.0):
		self.now = now

	def __call__(self):
		return self.now


class RateLimitingProvider(FakeProvider):
	def __init__(self, messages, limited_ids):
		super().__init__(messages)
		self.limited_ids = set(limited_ids)

	def get_message(self, message_id):
		if message_id in self.limited_ids:
			self.calls.append(("get_message", message_id))
			raise RateLimitedError("429 too many requests")
		return super().get_message(message_id)


class Harness:
	def __init__(self, store, classifier=None):
		self.redis = FakeRedis()
		self.clock = Clock()
		self.store = store
		self.providers = {}
		self.health = MailboxHealth(self.redis, default_cooldown_seconds=30, clock=self.clock)
		self.deferred = DeferredQueue(self.redis)
		self.guard = ProcessingGuard(self.redis)
		self.cursors = CursorTracker(self.redis, MailboxLock(self.redis, wait_timeout=1.0, sleep=lambda s: None))
		self.dispatcher = Dispatcher(worker_count=2, mailbox_concurrency=1)
		self.classifier = classifier or FakeClassifier()
		self.processor = MessageProcessor(
			store,
			self.guard,
			ActionExecutor(store, self.health),
			self.provider_for,
			classifier=self.classifier,
		)
		self.history = HistoryProcessor(
			store, self.cursors, self.processor, self.dispatcher, self.health, self.deferred, self.provider_for
		)

	def provider_for(self, mailbox):
		return self.providers[mailbox.id]


@pytest.fixture
def harness(store):
	h = Harness(store)
	yield h
	h.dispatcher.shutdown()


def newsletter_rule():
	return make_rule(
		"archive-newsletters",
		name="Archive newsletters",
		from_pattern="newsletter@service.com",
		actions=[action("ARCHIVE"), action("LABEL", label="Newsletter")],
	)


def test_archive_newsletter_end_to_end(harness, store, mailbox):
	message = make_message("m1", sender="Service <newsletter@service.com>")
	provider = FakeProvider([message])
	harness.providers[mailbox.id] = provider
	store.save_rule(newsletter_rule())

	executed = harness.processor.process_message(mailbox, "m1")

	assert executed.status == ExecutedRuleStatus.APPLIED
	assert executed.rule_id == "archive-newsletters"
	assert "INBOX" not in message.label_ids
	assert "Newsletter" in provider.labels["m1"]
	assert harness.classifier.calls == []
	assert harness.redis.get("processing:mb1:m1") is None


def test_duplicate_delivery_runs_actions_once(harness, store, mailbox):
	provider = FakeProvider([make_message("m1")])
	harness.providers[mailbox.id] = provider
	store.save_rule(newsletter_rule())

	assert harness.processor.process_message(mailbox, "m1") is not None
	assert harness.processor.process_message(mailbox, "m1") is None
	assert store.count_executed_rules(mailbox.id, "m1") == 1
	assert provider.attempts("archive") == 1


def test_duplicate_notifications_through_history(harness, store, mailbox):
	provider = FakeProvider([make_message("m1")])
	provider.history = HistoryDelta(items=[HistoryItem("m1", "t-m1", ["INBOX"])], new_cursor="20")
	harness.providers[mailbox.id] = provider
	harness.cursors.commit_cursor(mailbox.id, "10")
	store.save_rule(newsletter_rule())

	first = harness.history.process_notification(mailbox, "20")
	second = harness.history.process_notification(mailbox, "20")

	assert first.processed == 1
	assert second.processed == 0 and second.skipped == 1
	assert store.count_executed_rules(mailbox.id, "m1") == 1
	assert provider.attempts("archive") == 1
	assert harness.cursors.get(mailbox.id).cursor == "20"


def test_message_claimed_elsewhere_is_left_alone(harness, store, mailbox):
	provider = FakeProvider([make_message("m1")])
	harness.providers[mailbox.id] = provider
	store.save_rule(newsletter_rule())
	other_worker = ProcessingGuard(harness.redis)
	assert other_worker.try_claim(mailbox.id, "m1")

	assert harness.processor.process_message(mailbox, "m1") is None
	assert provider.calls == []


def test_unknown_rule_from_classifier_is_skipped(store, mailbox):
	harness = Harness(store, classifier=FakeClassifier(Classification(rule_id="ghost", explanation="felt right", confidence=0.9)))
	try:
		provider = FakeProvider([make_message("m1")])
		harness.providers[mailbox.id] = provider
		store.save_rule(make_rule("real", name="Invoices", instructions="Invoices from suppliers", actions=[action("ARCHIVE")]))

		executed = harness.processor.process_message(mailbox, "m1")

		assert executed.status == ExecutedRuleStatus.SKIPPED
		assert executed.rule_id is None
		assert "ghost" in executed.reason
		assert provider.attempts("archive") == 0
		assert harness.classifier.calls == [("classify", "m1", ["real"])]
	finally:
		harness.dispatcher.shutdown()


def test_classifier_choice_is_executed_with_generated_args(store, mailbox):
	rule = make_rule(
		"support",
		name="Support",
		instructions="Customer questions",
		actions=[action("LABEL", label="Support"), action("DRAFT_EMAIL", id="a-draft", content="{{answer the question}}")],
	)
	result = Classification(rule_id="support", explanation="asks a question", confidence=0.9, action_args={"a-draft": {"content": "We open at 8."}})
	harness = Harness(store, classifier=FakeClassifier(result))
	try:
		provider = FakeProvider([make_message("m1", sender="Ann <ann@example.org>", subject="Opening hours?")])
		harness.providers[mailbox.id] = provider
		store.save_rule(rule)

		executed = harness.processor.process_message(mailbox, "m1")

		assert executed.status == ExecutedRuleStatus.APPLIED
		assert executed.reason == "asks a question"
		draft = executed.actions[1]
		assert draft.status == ActionStatus.APPLIED
		assert provider.drafts[draft.draft_id].text_plain == "We open at 8."
	finally:
		harness.dispatcher.shutdown()


def test_no_matching_rule_records_a_skip(harness, store, mailbox):
	harness.providers[mailbox.id] = FakeProvider([make_message("m1", sender="friend@example.org")])
	store.save_rule(newsletter_rule())
	executed = harness.processor.process_message(mailbox, "m1")
	assert executed.status == ExecutedRuleStatus.SKIPPED
	assert harness.processor.process_message(mailbox, "m1") is None


def test_rerun_creates_a_second_record(harness, store, mailbox):
	provider = FakeProvider([make_message("m1")])
	harness.providers[mailbox.id] = provider
	store.save_rule(make_rule("label", name="Label news", from_pattern="newsletter@", actions=[action("LABEL", label="News")]))

	original = harness.processor.process_message(mailbox, "m1")
	rerun = harness.processor.process_message(mailbox, "m1", rerun_id="rerun-1")
	again = harness.processor.process_message(mailbox, "m1", rerun_id="rerun-1")

	assert original.run_key == ""
	assert rerun.run_key == "rerun-1"
	assert rerun.id != original.id
	assert again is None
	assert store.count_executed_rules(mailbox.id, "m1") == 2
	assert provider.attempts("apply_labels") == 2


def test_missing_message_is_skipped(harness, mailbox):
	harness.providers[mailbox.id] = FakeProvider([])
	assert harness.processor.process_message(mailbox, "gone") is None


def test_ignored_sender_and_non_inbox_messages(harness, store, mailbox):
	mailbox.ignored_senders = ["newsletter@service.com"]
	archived = make_message("m2", labels=["CATEGORY_PROMOTIONS"])
	harness.providers[mailbox.id] = FakeProvider([make_message("m1"), archived])
	store.save_rule(newsletter_rule())
	assert harness.processor.process_message(mailbox, "m1") is None
	assert harness.processor.process_message(mailbox, "m2") is None
	assert store.count_executed_rules(mailbox.id, "m1") == 0


def test_sent_message_records_draft_send(harness, store, mailbox):
	incoming = make_message("m1", thread_id="t1")
	provider = FakeProvider([incoming])
	harness.providers[mailbox.id] = provider
	store.save_rule(make_rule("drafts", name="Draft replies", from_pattern="newsletter@", actions=[action("DRAFT_EMAIL", content="Thanks, see you Friday")]))
	executed = harness.processor.process_message(mailbox, "m1")
	draft_action = executed.actions[0]

	# the user sends the draft: it leaves the drafts folder and shows up as SENT
	provider.drafts.pop(draft_action.draft_id)
	provider.add(make_message("m2", thread_id="t1", sender="me@example.com", body="Thanks, see you Friday!", labels=["SENT"]))

	assert harness.processor.process_message(mailbox, "m2") is None
	log = store.get_draft_send_log(draft_action.id)
	assert log.sent_message_id == "m2"
	assert log.similarity_score > 0.9
	assert store.latest_unsent_draft(mailbox.id, "t1") is None


def test_rate_limit_mid_batch_defers_the_rest(harness, store, mailbox):
	other = Mailbox(id="mb2", email="other@example.com", provider=ProviderKind.MICROSOFT)
	store.save_mailbox(other)
	for owner in (mailbox.id, other.id):
		store.save_rule(make_rule(f"label-{owner}", mailbox_id=owner, name="Label all", from_pattern="*", actions=[action("LABEL", label="Seen")]))

	items = [HistoryItem(f"m{i}", f"t-m{i}", ["INBOX"]) for i in (1, 2, 3)]
	limited = RateLimitingProvider([make_message(f"m{i}") for i in (1, 2, 3)], limited_ids={"m2"})
	limited.history = HistoryDelta(items=items, new_cursor="200")
	healthy = FakeProvider([make_message("x1")])
	healthy.history = HistoryDelta(items=[HistoryItem("x1", "t-x1", ["INBOX"])], new_cursor="delta-2")
	harness.providers.update({mailbox.id: limited, other.id: healthy})
	harness.cursors.commit_cursor(mailbox.id, "100")

	result = harness.history.process_notification(mailbox, "200")
	other_result = harness.history.process_notification(other)

	assert (result.processed, result.deferred) == (1, 2)
	assert [i.message_id for i in harness.deferred.take(mailbox.id)] == ["m2", "m3"]
	assert harness.health.is_rate_limited(mailbox.id)
	assert harness.cursors.get(mailbox.id).cursor == "200"
	assert other_result.processed == 1
	assert not harness.health.is_rate_limited(other.id)


def test_deferred_messages_drain_after_cooldown(harness, store, mailbox):
	store.save_rule(make_rule("label", name="Label all", from_pattern="*", actions=[action("LABEL", label="Seen")]))
	provider = FakeProvider([make_message("m2"), make_message("m3")])
	harness.providers[mailbox.id] = provider
	harness.health.record_rate_limit(mailbox.id)
	harness.deferred.push(mailbox.id, [HistoryItem("m2", "t-m2"), HistoryItem("m3", "t-m3")])

	assert harness.history.drain_deferred(mailbox).processed == 0
	assert harness.deferred.size(mailbox.id) == 2

	harness.clock.now += 31
	result = harness.history.drain_deferred(mailbox)
	assert result.processed == 2
	assert harness.deferred.size(mailbox.id) == 0
	assert provider.labels == {"m2": {"Seen"}, "m3": {"Seen"}}


def test_disabled_mailbox_ignores_notifications(harness, mailbox):
	provider = FakeProvider([])
	harness.providers[mailbox.id] = provider
	harness.health.mark_auth_failed(mailbox.id, "invalid_grant")
	result = harness.history.process_notification(mailbox, "5")
	assert result.processed == 0
	assert provider.history_starts == []


class BrokenClassifier(FakeClassifier):
	def classify(self, message, candidate_rules, user_context=""):
		self.calls.append(("classify", message.id, [r.id for r in candidate_rules]))
		raise ClassifierError("model call failed: 500 internal")


def test_classifier_failure_is_recorded_and_cursor_moves_on(store, mailbox):
	harness = Harness(store, classifier=BrokenClassifier())
	try:
		provider = FakeProvider([make_message("m1")])
		provider.history = HistoryDelta(items=[HistoryItem("m1", "t-m1", ["INBOX"])], new_cursor="20")
		harness.providers[mailbox.id] = provider
		harness.cursors.commit_cursor(mailbox.id, "10")
		store.save_rule(make_rule("support", name="Support", instructions="Customer questions", actions=[action("ARCHIVE")]))

		result = harness.history.process_notification(mailbox, "20")

		assert result.errors == 1
		recorded = store.find_executed_rule(mailbox.id, "m1")
		assert recorded.status == ExecutedRuleStatus.ERROR
		assert recorded.reason.startswith("ClassifierError")
		assert harness.cursors.get(mailbox.id).cursor == "20"
		assert provider.attempts("archive") == 0
	finally:
		harness.dispatcher.shutdown()


def test_thread_fetch_failure_is_recorded(harness, store, mailbox):
	provider = FakeProvider([make_message("m1")])
	provider.failures["get_thread"] = TransientProviderError("503 backend", status=503)
	harness.providers[mailbox.id] = provider
	store.save_rule(newsletter_rule())

	executed = harness.processor.process_message(mailbox, "m1")

	assert executed.status == ExecutedRuleStatus.ERROR
	assert "503 backend" in executed.reason
	assert provider.attempts("get_thread") == 3
	assert provider.attempts("archive") == 0
	assert harness.redis.get("processing:mb1:m1") is None


def test_transient_fetch_failure_defers_the_message(harness, store, mailbox):
	provider = FakeProvider([make_message("m1")])
	provider.failures["get_message"] = TransientProviderError("502 bad gateway", status=502)
	provider.history = HistoryDelta(items=[HistoryItem("m1", "t-m1", ["INBOX"])], new_cursor="20")
	harness.providers[mailbox.id] = provider
	harness.cursors.commit_cursor(mailbox.id, "10")
	store.save_rule(newsletter_rule())

	result = harness.history.process_notification(mailbox, "20")

	assert result.deferred == 1
	assert harness.deferred.size(mailbox.id) == 1
	assert store.count_executed_rules(mailbox.id, "m1") == 0
	assert harness.cursors.get(mailbox.id).cursor == "20"

	del provider.failures["get_message"]
	assert harness.history.drain_deferred(mailbox).processed == 1
	assert harness.deferred.size(mailbox.id) == 0


class WorkerDied(BaseException):
	pass


def test_crash_during_drain_keeps_unfinished_messages(harness, store, mailbox):
	store.save_rule(make_rule("label", name="Label all", from_pattern="*", actions=[action("LABEL", label="Seen")]))
	provider = FakeProvider([make_message("m2"), make_message("m3")])
	harness.providers[mailbox.id] = provider
	harness.deferred.push(mailbox.id, [HistoryItem("m2", "t-m2"), HistoryItem("m3", "t-m3")])
	process_message = harness.processor.process_message

	def die_on_m3(mb, message_id, **kwargs):
		if message_id == "m3":
			raise WorkerDied()
		return process_message(mb, message_id, **kwargs)

	harness.processor.process_message = die_on_m3
	with pytest.raises(WorkerDied):
		harness.history.drain_deferred(mailbox)
	assert harness.deferred.size(mailbox.id) == 1
	assert harness.deferred.mailboxes() == [mailbox.id]

	harness.processor.process_message = process_message
	result = harness.history.drain_deferred(mailbox)
	assert result.processed == 1
	assert harness.deferred.size(mailbox.id) == 0
	assert provider.labels == {"m2": {"Seen"}, "m3": {"Seen"}}


def test_learned_pattern_decides_without_the_classifier(harness, store, mailbox):
	provider = FakeProvider([make_message("m1", sender="Orders <orders@flour.example>")])
	harness.providers[mailbox.id] = provider
	store.save_group(Group(id="g1", mailbox_id=mailbox.id, name="Suppliers", items=[GroupItem(GroupItemType.FROM, "@flour.example")]))
	store.save_rule(
		make_rule("suppliers", name="Suppliers", instructions="Supplier mail", group_id="g1", actions=[action("LABEL", label="Suppliers")])
	)
	store.save_rule(make_rule("other", name="Other", instructions="Anything else", actions=[action("ARCHIVE")]))

	executed = harness.processor.process_message(mailbox, "m1")

	assert executed.rule_id == "suppliers"
	assert executed.reason == 'matched learned pattern "FROM: @flour.example"'
	assert harness.classifier.calls == []
	assert provider.labels["m1"] == {"Suppliers"}
