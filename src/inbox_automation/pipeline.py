from __future__ import annotations

import logging
from concurrent.futures import wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .classifier import Classification, EmailClassifier
from .cursor import CursorTracker
from .dispatcher import Dispatcher
from .draft_tracking import DraftTracker
from .errors import AuthError, ClassifierError, MessageNotFoundError, ProviderError, RateLimitedError, TransientProviderError
from .executor import ActionExecutor
from .guard import ProcessingGuard
from .health import DeferredQueue, MailboxHealth
from .models import ExecutedRule, ExecutedRuleStatus, HistoryItem, Mailbox, ParsedMessage, Rule, Thread
from .parsing import extract_email_address
from .providers.base import EmailProvider
from .rules import CandidateSet, choose_rule, select_candidate_rules
from .storage import SqliteStore

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Mailbox], EmailProvider]


def is_reply_in_thread(message: ParsedMessage, thread: Thread) -> bool:
	ids = [m.id for m in thread.messages]
	if message.id in ids:
		return ids.index(message.id) > 0
	return len(ids) > 0


class MessageProcessor:
	"""Handles one message end to end: claim, fetch, match, classify, execute."""

	def __init__(
		self,
		store: SqliteStore,
		guard: ProcessingGuard,
		executor: ActionExecutor,
		provider_factory: ProviderFactory,
		classifier: Optional[EmailClassifier] = None,
		draft_tracker: Optional[DraftTracker] = None,
	) -> None:
		self.store = store
		self.guard = guard
		self.executor = executor
		self.provider_factory = provider_factory
		self.classifier = classifier
		self.draft_tracker = draft_tracker or DraftTracker(store)

	def process_message(
		self,
		mailbox: Mailbox,
		message_id: str,
		rerun_id: Optional[str] = None,
		provider: Optional[EmailProvider] = None,
	) -> Optional[ExecutedRule]:
		"""Run the rules on a message once.

		Returns the new ExecutedRule, or None when the message was skipped
		without a record (duplicate, not found, outbound, ignored sender).
		``rerun_id`` requests an explicit rerun, which gets its own record.
		Rate-limit and auth errors propagate, as do transient failures to
		fetch the message; any other classifier or provider failure after the
		fetch is recorded as an ERROR ExecutedRule.
		"""
		run_key = rerun_id or ""
		if not self.guard.try_claim(mailbox.id, message_id):
			logger.info("Message %s (mailbox %s) is being processed elsewhere", message_id, mailbox.id)
			return None
		try:
			if self.store.find_executed_rule(mailbox.id, message_id, run_key) is not None:
				logger.debug("Message %s already processed (run_key=%r)", message_id, run_key)
				return None
			provider = provider or self.provider_factory(mailbox)
			try:
				message = provider.get_message(message_id)
			except MessageNotFoundError:
				logger.info("Message %s not found in mailbox %s, skipping", message_id, mailbox.id)
				return None
			try:
				return self._process(mailbox, provider, message, run_key)
			except (RateLimitedError, AuthError):
				raise
			except (ClassifierError, ProviderError) as e:
				logger.warning("Message %s (mailbox %s) failed: %s", message_id, mailbox.id, e)
				return self._record(mailbox, message, run_key, ExecutedRuleStatus.ERROR, f"{type(e).__name__}: {e}")
		finally:
			self.guard.release(mailbox.id, message_id)

	def _process(self, mailbox: Mailbox, provider: EmailProvider, message: ParsedMessage, run_key: str) -> Optional[ExecutedRule]:
		if message.is_draft or not (message.is_inbox or message.is_sent):
			logger.debug("Message %s is neither inbox nor sent, skipping", message.id)
			return None
		if message.is_sent:
			self.draft_tracker.track_outbound(mailbox, provider, message)
			return None
		sender = extract_email_address(message.sender)
		if sender and sender in {s.lower() for s in mailbox.ignored_senders}:
			logger.debug("Ignoring message %s from %s", message.id, sender)
			return None

		thread = provider.get_thread(message.thread_id)
		self._keep_claim(mailbox, message)
		previous = self.store.applied_rule_ids_in_thread(mailbox.id, message.thread_id, exclude_message_id=message.id)
		rules = self.store.get_rules(mailbox.id)
		groups = {g.id: g for g in self.store.get_groups(mailbox.id)} if any(r.group_id for r in rules) else {}
		candidates = select_candidate_rules(
			message,
			rules,
			previous_rule_ids=previous,
			is_thread=is_reply_in_thread(message, thread),
			rerun=bool(run_key),
			groups=groups,
		)

		classification: Optional[Classification] = None
		ai_rule: Optional[Rule] = None
		if candidates.ai_candidates:
			if self.classifier is None:
				logger.warning("No classifier configured; AI rules ignored for message %s", message.id)
			else:
				classification = self.classifier.classify(message, candidates.all, mailbox.about)
				self._keep_claim(mailbox, message)
				if classification.rule_id is not None:
					ai_rule = _find_rule(candidates, classification.rule_id)
					if ai_rule is None:
						return self._record(
							mailbox,
							message,
							run_key,
							ExecutedRuleStatus.SKIPPED,
							f"classifier chose unknown rule {classification.rule_id!r}: {classification.explanation}",
						)

		rule = choose_rule(candidates.static_matches, ai_rule)
		if rule is None:
			reason = classification.explanation if classification and classification.explanation else "no matching rule"
			return self._record(mailbox, message, run_key, ExecutedRuleStatus.SKIPPED, reason)

		if (classification is None or ai_rule is None) and any(a.fields_needing_ai() for a in rule.actions):
			if self.classifier is not None:
				classification = self.classifier.fill_action_args(message, rule, mailbox.about)
				self._keep_claim(mailbox, message)
		if classification and ai_rule is not None:
			reason = classification.explanation
		else:
			reason = candidates.reasons.get(rule.id, "matched static conditions")
		return self.executor.execute(
			mailbox,
			provider,
			message,
			rule,
			reason=reason,
			action_args=classification.action_args if classification else None,
			run_key=run_key,
			skip_action_ids=classification.skip_action_ids if classification else (),
			on_progress=lambda: self._keep_claim(mailbox, message),
		)

	def _keep_claim(self, mailbox: Mailbox, message: ParsedMessage) -> None:
		self.guard.extend(mailbox.id, message.id)

	def _record(
		self, mailbox: Mailbox, message: ParsedMessage, run_key: str, status: ExecutedRuleStatus, reason: str
	) -> Optional[ExecutedRule]:
		executed = ExecutedRule(
			mailbox_id=mailbox.id,
			message_id=message.id,
			thread_id=message.thread_id,
			status=status,
			reason=reason,
			run_key=run_key,
		)
		logger.info("Message %s (mailbox %s) %s: %s", message.id, mailbox.id, status.value.lower(), reason)
		return self.store.create_executed_rule(executed)


def _find_rule(candidates: CandidateSet, rule_id: str) -> Optional[Rule]:
	return next((r for r in candidates.all if r.id == rule_id), None)


@dataclass
class BatchResult:
	mailbox_id: str
	processed: int = 0
	skipped: int = 0
	deferred: int = 0
	errors: int = 0
	executed: List[ExecutedRule] = field(default_factory=list)

	def add(self, outcome: str, executed: Optional[ExecutedRule] = None) -> None:
		setattr(self, outcome, getattr(self, outcome) + 1)
		if executed is not None:
			self.executed.append(executed)


class HistoryProcessor:
	"""Turns a push notification into per-message tasks and commits the cursor."""

	def __init__(
		self,
		store: SqliteStore,
		cursors: CursorTracker,
		processor: MessageProcessor,
		dispatcher: Dispatcher,
		health: MailboxHealth,
		deferred: DeferredQueue,
		provider_factory: ProviderFactory,
	) -> None:
		self.store = store
		self.cursors = cursors
		self.processor = processor
		self.dispatcher = dispatcher
		self.health = health
		self.deferred = deferred
		self.provider_factory = provider_factory

	def process_notification(self, mailbox: Mailbox, change_token: Optional[str] = None) -> BatchResult:
		if self.health.is_disabled(mailbox.id):
			logger.info("Mailbox %s is disabled, ignoring notification", mailbox.id)
			return BatchResult(mailbox.id)
		if not self.health.is_rate_limited(mailbox.id) and self.deferred.size(mailbox.id):
			self.drain_deferred(mailbox)

		provider = self.provider_factory(mailbox)
		try:
			delta = self.cursors.get_new_message_ids(mailbox.id, provider, change_token)
		except AuthError as e:
			self._auth_failed(mailbox, e)
			return BatchResult(mailbox.id, errors=1)
		except RateLimitedError as e:
			# the cursor stays put, so the next notification replays this delta
			self.health.record_rate_limit(mailbox.id, e.retry_at)
			return BatchResult(mailbox.id, errors=1)

		result = self._dispatch(mailbox, delta.items)
		self.cursors.commit_cursor(mailbox.id, delta.new_cursor, started_from=delta.started_from)
		logger.info(
			"Mailbox %s: processed=%d skipped=%d deferred=%d errors=%d",
			mailbox.id,
			result.processed,
			result.skipped,
			result.deferred,
			result.errors,
		)
		return result

	def drain_deferred(self, mailbox: Mailbox) -> BatchResult:
		"""Re-dispatch messages set aside by a rate limit, once it has passed."""
		if self.health.is_rate_limited(mailbox.id):
			logger.info("Mailbox %s still cooling down, leaving %d deferred", mailbox.id, self.deferred.size(mailbox.id))
			return BatchResult(mailbox.id)
		return self._dispatch(mailbox, self.deferred.take(mailbox.id), task=self._process_deferred)

	def drain_all(self) -> Dict[str, BatchResult]:
		results: Dict[str, BatchResult] = {}
		for mailbox_id in self.deferred.mailboxes():
			mailbox = self.store.get_mailbox(mailbox_id)
			if mailbox is None:
				logger.warning("Deferred messages for unknown mailbox %s", mailbox_id)
				continue
			results[mailbox_id] = self.drain_deferred(mailbox)
		return results

	def _dispatch(self, mailbox: Mailbox, items: List[HistoryItem], task: Optional[Callable] = None) -> BatchResult:
		result = BatchResult(mailbox.id)
		task = task or self._process_item
		futures = [self.dispatcher.submit_message(mailbox.id, task, mailbox, item) for item in items]
		wait(futures)
		for future in futures:
			if future.cancelled():
				result.add("skipped")
				continue
			outcome, executed = future.result()
			result.add(outcome, executed)
		return result

	def _process_deferred(self, mailbox: Mailbox, item: HistoryItem):
		# a worker that dies before this point leaves the item for the next drain
		outcome = self._process_item(mailbox, item)
		self.deferred.ack(mailbox.id, item)
		return outcome

	def _process_item(self, mailbox: Mailbox, item: HistoryItem):
		if self.health.is_disabled(mailbox.id):
			return "skipped", None
		if self.health.is_rate_limited(mailbox.id):
			self.deferred.push(mailbox.id, [item])
			return "deferred", None
		try:
			executed = self.processor.process_message(mailbox, item.message_id)
		except RateLimitedError as e:
			self.health.record_rate_limit(mailbox.id, e.retry_at)
			self.deferred.push(mailbox.id, [item])
			return "deferred", None
		except AuthError as e:
			self._auth_failed(mailbox, e)
			return "errors", None
		except TransientProviderError as e:
			logger.warning("Could not fetch message %s in mailbox %s, deferring: %s", item.message_id, mailbox.id, e)
			self.deferred.push(mailbox.id, [item])
			return "deferred", None
		except Exception:
			logger.exception("Failed to process message %s in mailbox %s", item.message_id, mailbox.id)
			return "errors", None
		if self.health.is_disabled(mailbox.id):
			# an action hit an auth error; nothing else queued for this mailbox can succeed
			self.dispatcher.cancel_mailbox(mailbox.id)
		if executed is None:
			return "skipped", None
		if executed.status == ExecutedRuleStatus.ERROR:
			return "errors", executed
		return "processed", executed

	def _auth_failed(self, mailbox: Mailbox, error: AuthError) -> None:
		self.health.mark_auth_failed(mailbox.id, str(error))
		self.dispatcher.cancel_mailbox(mailbox.id)
