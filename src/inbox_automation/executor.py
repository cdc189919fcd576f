from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from .errors import AuthError, MessageNotFoundError, ProviderError, RateLimitedError
from .health import MailboxHealth
from .models import (
	PLACEHOLDER_RE,
	TEMPLATE_FIELDS,
	Action,
	ActionStatus,
	ActionType,
	ExecutedAction,
	ExecutedRule,
	ExecutedRuleStatus,
	Mailbox,
	ParsedMessage,
	Rule,
)
from .providers.base import EmailProvider
from .storage import SqliteStore
from .webhooks import WebhookSender, build_payload

logger = logging.getLogger(__name__)

# Highest consequence first. The first action of this list present in a rule
# decides whether the whole rule counts as applied.
CONSEQUENCE_ORDER: List[ActionType] = [
	ActionType.REPLY,
	ActionType.SEND_EMAIL,
	ActionType.FORWARD,
	ActionType.DRAFT_EMAIL,
	ActionType.ARCHIVE,
	ActionType.MOVE_FOLDER,
	ActionType.MARK_SPAM,
	ActionType.LABEL,
	ActionType.MARK_READ,
	ActionType.TRACK_THREAD,
	ActionType.DIGEST,
	ActionType.CALL_WEBHOOK,
]
_RANK = {t: i for i, t in enumerate(CONSEQUENCE_ORDER)}


def primary_action(actions: Iterable[ExecutedAction]) -> Optional[ExecutedAction]:
	"""Highest-consequence action; the earlier one wins a tie."""
	best: Optional[ExecutedAction] = None
	for action in actions:
		if best is None or _RANK[action.type] < _RANK[best.type]:
			best = action
	return best


def fill_action(action: Action, executed_rule_id: str, args: Optional[Dict[str, str]]) -> ExecutedAction:
	"""Copy the action's parameters, replacing templated fields with generated values."""
	executed = ExecutedAction.from_action(action, executed_rule_id)
	for name, value in (args or {}).items():
		if name in TEMPLATE_FIELDS and getattr(action, name) and PLACEHOLDER_RE.search(getattr(action, name)):
			setattr(executed, name, value)
	return executed


def unfilled_fields(action: ExecutedAction) -> List[str]:
	return [name for name in TEMPLATE_FIELDS if getattr(action, name) and PLACEHOLDER_RE.search(getattr(action, name))]


class ActionExecutor:
	"""Runs a rule's actions as independent steps and records each outcome."""

	def __init__(
		self,
		store: SqliteStore,
		health: MailboxHealth,
		webhook_sender: Optional[WebhookSender] = None,
		dry_run: bool = False,
	) -> None:
		self.store = store
		self.health = health
		self.webhooks = webhook_sender
		self.dry_run = dry_run
		self._handlers: Dict[ActionType, Callable[..., None]] = {
			ActionType.ARCHIVE: self._archive,
			ActionType.LABEL: self._label,
			ActionType.DRAFT_EMAIL: self._draft,
			ActionType.REPLY: self._reply,
			ActionType.FORWARD: self._forward,
			ActionType.SEND_EMAIL: self._send_email,
			ActionType.MARK_READ: self._mark_read,
			ActionType.MARK_SPAM: self._mark_spam,
			ActionType.CALL_WEBHOOK: self._call_webhook,
			ActionType.MOVE_FOLDER: self._move_folder,
			ActionType.TRACK_THREAD: self._track_thread,
			ActionType.DIGEST: self._digest,
		}

	def execute(
		self,
		mailbox: Mailbox,
		provider: EmailProvider,
		message: ParsedMessage,
		rule: Rule,
		reason: str = "",
		action_args: Optional[Dict[str, Dict[str, str]]] = None,
		run_key: str = "",
		skip_action_ids: Iterable[str] = (),
		automated: bool = True,
		on_progress: Optional[Callable[[], None]] = None,
	) -> Optional[ExecutedRule]:
		"""Record the rule as PENDING, run every action, then finalize.

		Returns None when this message already has a record for ``run_key``.
		``on_progress`` is called before each action runs.
		"""
		executed = ExecutedRule(
			mailbox_id=mailbox.id,
			message_id=message.id,
			thread_id=message.thread_id,
			rule_id=rule.id,
			reason=reason,
			run_key=run_key,
			automated=automated,
		)
		args = action_args or {}
		executed.actions = [fill_action(a, executed.id, args.get(a.id)) for a in rule.actions]
		if self.store.create_executed_rule(executed) is None:
			return None

		skip_ids = set(skip_action_ids)
		deliberately_skipped: Set[str] = set()
		for action in executed.actions:
			if self.health.is_disabled(mailbox.id):
				action.status = ActionStatus.SKIPPED
				action.error = "mailbox disabled"
			elif action.action_id in skip_ids:
				self._skip(action, "confidence below draft threshold", deliberately_skipped)
			elif unfilled_fields(action):
				self._skip(action, "no generated value for " + ", ".join(unfilled_fields(action)), deliberately_skipped)
			elif self.dry_run:
				self._skip(action, "dry run", deliberately_skipped)
			else:
				if on_progress is not None:
					on_progress()
				self._run_action(mailbox, provider, message, executed, action)
			self.store.update_executed_action(action)

		executed.status = self._final_status(executed.actions, deliberately_skipped)
		self.store.update_executed_rule(executed)
		logger.info(
			"Rule %s on message %s (mailbox %s): %s", rule.id, message.id, mailbox.id, executed.status.value
		)
		return executed

	def _skip(self, action: ExecutedAction, why: str, skipped: Set[str]) -> None:
		action.status = ActionStatus.SKIPPED
		action.error = why
		skipped.add(action.id)

	def _final_status(self, actions: List[ExecutedAction], deliberately_skipped: Set[str]) -> ExecutedRuleStatus:
		if not actions:
			return ExecutedRuleStatus.APPLIED
		eligible = [a for a in actions if a.id not in deliberately_skipped]
		if not eligible:
			return ExecutedRuleStatus.SKIPPED
		primary = primary_action(eligible)
		return ExecutedRuleStatus.APPLIED if primary.status == ActionStatus.APPLIED else ExecutedRuleStatus.ERROR

	def _run_action(self, mailbox: Mailbox, provider: EmailProvider, message: ParsedMessage, executed: ExecutedRule, action: ExecutedAction) -> None:
		handler = self._handlers[action.type]
		try:
			handler(mailbox, provider, message, executed, action)
		except AuthError as e:
			self._fail(action, e, e.attempts)
			self.health.mark_auth_failed(mailbox.id, str(e))
		except RateLimitedError as e:
			self._fail(action, e, e.attempts)
			self.health.record_rate_limit(mailbox.id, e.retry_at)
		except ProviderError as e:
			self._fail(action, e, e.attempts)
		except Exception as e:
			logger.exception("Action %s failed on message %s", action.type.value, message.id)
			self._fail(action, e, 1)
		else:
			action.status = ActionStatus.APPLIED
			action.error = None
			action.attempts = max(action.attempts, 1)

	def _fail(self, action: ExecutedAction, error: Exception, attempts: int) -> None:
		action.status = ActionStatus.ERROR
		action.error = f"{type(error).__name__}: {error}"
		action.attempts = attempts
		logger.warning("Action %s failed after %d attempt(s): %s", action.type.value, attempts, error)

	# --- handlers ---

	def _archive(self, mailbox, provider, message, executed, action):
		provider.archive(message.thread_id)

	def _label(self, mailbox, provider, message, executed, action):
		if not action.label:
			raise ValueError("LABEL action has no label")
		provider.apply_labels(message.id, [action.label])

	def _draft(self, mailbox, provider, message, executed, action):
		previous = self.store.latest_unsent_draft(mailbox.id, message.thread_id)
		if previous is not None and previous.id != action.id:
			try:
				provider.delete_draft(previous.draft_id)
			except MessageNotFoundError:
				logger.debug("Previous draft %s already gone", previous.draft_id)
			self.store.mark_draft_not_sent(previous.id)
		action.draft_id = provider.create_draft(message, action.content or "", to=action.to, subject=action.subject)

	def _reply(self, mailbox, provider, message, executed, action):
		provider.send_reply(message, action.content or "", cc=action.cc, bcc=action.bcc)

	def _forward(self, mailbox, provider, message, executed, action):
		if not action.to:
			raise ValueError("FORWARD action has no recipient")
		provider.forward(message, action.to, content=action.content, cc=action.cc, bcc=action.bcc)

	def _send_email(self, mailbox, provider, message, executed, action):
		if not action.to:
			raise ValueError("SEND_EMAIL action has no recipient")
		provider.send_email(action.to, action.subject or "", action.content or "", cc=action.cc, bcc=action.bcc)

	def _mark_read(self, mailbox, provider, message, executed, action):
		provider.mark_read(message.thread_id)

	def _mark_spam(self, mailbox, provider, message, executed, action):
		provider.mark_spam(message.thread_id)

	def _move_folder(self, mailbox, provider, message, executed, action):
		if not action.folder_name:
			raise ValueError("MOVE_FOLDER action has no folder")
		provider.move_to_folder(message.thread_id, action.folder_name)

	def _call_webhook(self, mailbox, provider, message, executed, action):
		if not action.url:
			raise ValueError("CALL_WEBHOOK action has no url")
		if self.webhooks is None:
			raise RuntimeError("no webhook sender configured")
		self.webhooks.send(action.url, build_payload(message, executed), mailbox.webhook_secret)

	def _track_thread(self, mailbox, provider, message, executed, action):
		self.store.track_thread(mailbox.id, message.thread_id, executed.rule_id)

	def _digest(self, mailbox, provider, message, executed, action):
		self.store.add_digest_item(mailbox.id, message.id, executed.id)
