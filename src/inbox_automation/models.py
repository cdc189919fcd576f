from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dataclasses_json import dataclass_json


class ProviderKind(str, Enum):
	GOOGLE = "google"
	MICROSOFT = "microsoft"


class ActionType(str, Enum):
	ARCHIVE = "ARCHIVE"
	LABEL = "LABEL"
	DRAFT_EMAIL = "DRAFT_EMAIL"
	REPLY = "REPLY"
	FORWARD = "FORWARD"
	SEND_EMAIL = "SEND_EMAIL"
	MARK_READ = "MARK_READ"
	MARK_SPAM = "MARK_SPAM"
	CALL_WEBHOOK = "CALL_WEBHOOK"
	MOVE_FOLDER = "MOVE_FOLDER"
	TRACK_THREAD = "TRACK_THREAD"
	DIGEST = "DIGEST"


class SystemType(str, Enum):
	COLD_EMAIL = "COLD_EMAIL"
	NEWSLETTER = "NEWSLETTER"
	MARKETING = "MARKETING"
	RECEIPT = "RECEIPT"
	NOTIFICATION = "NOTIFICATION"
	CALENDAR = "CALENDAR"
	TO_REPLY = "TO_REPLY"
	FYI = "FYI"
	AWAITING_REPLY = "AWAITING_REPLY"
	ACTIONED = "ACTIONED"


# Canonical precedence of built-in rules. Cold email handling runs before
# newsletter handling, which runs before the generic conversation rules.
SYSTEM_RULE_ORDER: List[SystemType] = [
	SystemType.COLD_EMAIL,
	SystemType.NEWSLETTER,
	SystemType.MARKETING,
	SystemType.RECEIPT,
	SystemType.NOTIFICATION,
	SystemType.CALENDAR,
	SystemType.TO_REPLY,
	SystemType.FYI,
	SystemType.AWAITING_REPLY,
	SystemType.ACTIONED,
]


# Rules that track where a conversation stands rather than what a message is.
CONVERSATION_STATUS_TYPES = frozenset(
	{SystemType.TO_REPLY, SystemType.FYI, SystemType.AWAITING_REPLY, SystemType.ACTIONED}
)


class GroupItemType(str, Enum):
	FROM = "FROM"
	SUBJECT = "SUBJECT"
	BODY = "BODY"


class LogicalOperator(str, Enum):
	AND = "AND"
	OR = "OR"


class ExecutedRuleStatus(str, Enum):
	PENDING = "PENDING"
	APPLIED = "APPLIED"
	SKIPPED = "SKIPPED"
	ERROR = "ERROR"


class ActionStatus(str, Enum):
	PENDING = "PENDING"
	APPLIED = "APPLIED"
	SKIPPED = "SKIPPED"
	ERROR = "ERROR"


class CursorState(str, Enum):
	WATCHING = "WATCHING"
	FETCHING_DELTA = "FETCHING_DELTA"
	DISPATCHING = "DISPATCHING"


def new_id() -> str:
	return uuid.uuid4().hex


def utcnow_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


PLACEHOLDER_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)

TEMPLATE_FIELDS = ("label", "to", "cc", "bcc", "subject", "content", "url", "folder_name")


@dataclass_json
@dataclass
class Action:
	type: ActionType
	id: str = field(default_factory=new_id)
	label: Optional[str] = None
	to: Optional[str] = None
	cc: Optional[str] = None
	bcc: Optional[str] = None
	subject: Optional[str] = None
	content: Optional[str] = None
	url: Optional[str] = None
	folder_name: Optional[str] = None

	def params(self) -> Dict[str, Optional[str]]:
		return {name: getattr(self, name) for name in TEMPLATE_FIELDS}

	def fields_needing_ai(self) -> List[str]:
		"""Names of parameters that still contain ``{{...}}`` placeholders."""
		return [name for name, value in self.params().items() if value and PLACEHOLDER_RE.search(value)]


@dataclass_json
@dataclass
class Rule:
	id: str
	mailbox_id: str
	name: str
	actions: List[Action] = field(default_factory=list)
	instructions: Optional[str] = None
	priority: int = 0
	enabled: bool = True
	from_pattern: Optional[str] = None
	to_pattern: Optional[str] = None
	subject_pattern: Optional[str] = None
	body_pattern: Optional[str] = None
	conditional_operator: LogicalOperator = LogicalOperator.AND
	run_on_threads: bool = False
	system_type: Optional[SystemType] = None
	group_id: Optional[str] = None

	@property
	def has_static_conditions(self) -> bool:
		return any([self.from_pattern, self.to_pattern, self.subject_pattern, self.body_pattern])

	@property
	def has_ai_condition(self) -> bool:
		return bool(self.instructions and self.instructions.strip())


@dataclass_json
@dataclass
class Mailbox:
	id: str
	email: str
	provider: ProviderKind
	credentials: Dict[str, Any] = field(default_factory=dict)
	about: str = ""
	webhook_secret: Optional[str] = None
	ignored_senders: List[str] = field(default_factory=list)


@dataclass_json
@dataclass
class GroupItem:
	type: GroupItemType
	value: str
	exclude: bool = False


@dataclass_json
@dataclass
class Group:
	"""Learned patterns attached to a rule: senders or subjects the user
	has already sorted under it, plus patterns that must never match it."""

	id: str
	mailbox_id: str
	name: str
	items: List[GroupItem] = field(default_factory=list)


@dataclass_json
@dataclass
class ParsedMessage:
	id: str
	thread_id: str
	headers: Dict[str, str] = field(default_factory=dict)
	text_plain: str = ""
	text_html: str = ""
	snippet: str = ""
	label_ids: List[str] = field(default_factory=list)
	internal_date: Optional[str] = None
	attachment_names: List[str] = field(default_factory=list)
	attachment_types: List[str] = field(default_factory=list)

	def header(self, name: str) -> str:
		return self.headers.get(name.lower(), "")

	@property
	def sender(self) -> str:
		return self.header("from")

	@property
	def recipient(self) -> str:
		return self.header("to")

	@property
	def subject(self) -> str:
		return self.header("subject")

	@property
	def is_inbox(self) -> bool:
		return "INBOX" in self.label_ids

	@property
	def is_sent(self) -> bool:
		return "SENT" in self.label_ids

	@property
	def is_draft(self) -> bool:
		return "DRAFT" in self.label_ids

	@property
	def has_ics_attachment(self) -> bool:
		return "text/calendar" in (t.lower() for t in self.attachment_types) or any(
			name.lower().endswith(".ics") for name in self.attachment_names
		)


@dataclass_json
@dataclass
class Thread:
	id: str
	messages: List[ParsedMessage] = field(default_factory=list)


@dataclass_json
@dataclass
class ExecutedAction:
	type: ActionType
	executed_rule_id: str
	id: str = field(default_factory=new_id)
	action_id: Optional[str] = None
	label: Optional[str] = None
	to: Optional[str] = None
	cc: Optional[str] = None
	bcc: Optional[str] = None
	subject: Optional[str] = None
	content: Optional[str] = None
	url: Optional[str] = None
	folder_name: Optional[str] = None
	status: ActionStatus = ActionStatus.PENDING
	error: Optional[str] = None
	attempts: int = 0
	draft_id: Optional[str] = None
	was_draft_sent: Optional[bool] = None

	@classmethod
	def from_action(cls, action: Action, executed_rule_id: str) -> "ExecutedAction":
		return cls(type=action.type, executed_rule_id=executed_rule_id, action_id=action.id, **action.params())


@dataclass_json
@dataclass
class ExecutedRule:
	mailbox_id: str
	message_id: str
	thread_id: str
	id: str = field(default_factory=new_id)
	rule_id: Optional[str] = None
	status: ExecutedRuleStatus = ExecutedRuleStatus.PENDING
	reason: str = ""
	run_key: str = ""
	automated: bool = True
	created_at: str = field(default_factory=utcnow_iso)
	actions: List[ExecutedAction] = field(default_factory=list)


@dataclass_json
@dataclass
class DraftSendLog:
	executed_action_id: str
	sent_message_id: str
	similarity_score: float
	id: str = field(default_factory=new_id)
	created_at: str = field(default_factory=utcnow_iso)


@dataclass_json
@dataclass
class HistoryCursor:
	mailbox_id: str
	cursor: Optional[str] = None
	state: CursorState = CursorState.WATCHING
	watch_expires_at: Optional[float] = None
	subscription_id: Optional[str] = None


@dataclass
class HistoryItem:
	message_id: str
	thread_id: Optional[str] = None
	label_ids: List[str] = field(default_factory=list)


@dataclass
class HistoryDelta:
	items: List[HistoryItem]
	new_cursor: Optional[str]
	started_from: Optional[str] = None


@dataclass
class WatchResult:
	expires_at: float
	subscription_id: Optional[str] = None
	history_id: Optional[str] = None
