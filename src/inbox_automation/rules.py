from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .models import (
	CONVERSATION_STATUS_TYPES,
	SYSTEM_RULE_ORDER,
	Group,
	GroupItem,
	GroupItemType,
	LogicalOperator,
	ParsedMessage,
	Rule,
	SystemType,
)
from .parsing import email_body_text, extract_email_address

logger = logging.getLogger(__name__)

_SYSTEM_RANK = {system_type: index for index, system_type in enumerate(SYSTEM_RULE_ORDER)}
_EMAIL_PATTERN_SEPARATOR = re.compile(r"\s+or\s+|\s*[|,]\s*", re.IGNORECASE)


def rule_sort_key(rule: Rule) -> Tuple:
	system_rank = _SYSTEM_RANK.get(rule.system_type, len(SYSTEM_RULE_ORDER)) if rule.system_type else len(SYSTEM_RULE_ORDER)
	return (
		0 if rule.enabled else 1,
		system_rank,
		rule.name.casefold(),
		(rule.instructions or "").casefold(),
		rule.id,
	)


def sort_rules(rules: Iterable[Rule]) -> List[Rule]:
	"""Total order used everywhere rules are listed.

	Enabled rules first, then built-in rules in their canonical sequence,
	then user rules; ties fall back to name, instructions and finally id so
	the same rule set always produces the same order.
	"""
	return sorted(rules, key=rule_sort_key)


def split_email_patterns(pattern: str) -> List[str]:
	"""``"@a.com|@b.com"``, ``"@a.com, @b.com"`` and ``"@a.com OR @b.com"`` all mean either."""
	return [p.strip() for p in _EMAIL_PATTERN_SEPARATOR.split(pattern) if p.strip()]


def _pattern_to_regex(pattern: str) -> re.Pattern:
	escaped = ".*".join(re.escape(part) for part in pattern.split("*"))
	return re.compile(escaped, re.IGNORECASE | re.DOTALL)


def _matches(pattern: str, text: str, allow_alternatives: bool = False) -> bool:
	patterns = split_email_patterns(pattern) if allow_alternatives else [pattern]
	for p in patterns:
		if _pattern_to_regex(p).search(text or ""):
			return True
	return False


def matches_static_rule(rule: Rule, message: ParsedMessage) -> bool:
	"""True when every configured static condition matches. A rule with no
	static conditions never matches statically."""
	if not rule.has_static_conditions:
		return False
	if rule.from_pattern and not _matches(rule.from_pattern, message.sender, allow_alternatives=True):
		return False
	if rule.to_pattern and not _matches(rule.to_pattern, message.recipient, allow_alternatives=True):
		return False
	if rule.subject_pattern and not _matches(rule.subject_pattern, message.subject):
		return False
	if rule.body_pattern and not _matches(rule.body_pattern, email_body_text(message)):
		return False
	return True


def evaluate_rule_conditions(rule: Rule, message: ParsedMessage) -> Tuple[bool, bool]:
	"""Returns ``(matched, potential_ai_match)``.

	``matched`` means the static conditions alone decide the rule applies;
	``potential_ai_match`` means the rule is still possible but only the
	classifier can decide.
	"""
	static_match = matches_static_rule(rule, message) if rule.has_static_conditions else False

	if rule.conditional_operator == LogicalOperator.OR:
		if static_match:
			return True, False
		return False, rule.has_ai_condition

	if rule.has_static_conditions and not static_match:
		return False, False
	if rule.has_ai_condition:
		return False, True
	return static_match, False


NO_REPLY_PREFIXES = (
	"noreply@",
	"no-reply@",
	"notifications@",
	"notif@",
	"info@",
	"newsletter@",
	"updates@",
	"account@",
)


def _group_item_text(item: GroupItem, message: ParsedMessage) -> str:
	if item.type == GroupItemType.FROM:
		return message.sender
	if item.type == GroupItemType.SUBJECT:
		return message.subject
	return email_body_text(message)


def find_matching_group_item(group: Group, message: ParsedMessage) -> Optional[GroupItem]:
	"""First item of ``group`` found in the message. Exclusions are checked
	before inclusions, so one exclusion overrides any number of includes."""
	matching = [
		item
		for item in group.items
		if item.value.strip() and item.value.strip().casefold() in (_group_item_text(item, message) or "").casefold()
	]
	for item in matching:
		if item.exclude:
			return item
	return matching[0] if matching else None


def _is_automated_sender(message: ParsedMessage) -> bool:
	return extract_email_address(message.sender).startswith(NO_REPLY_PREFIXES)


@dataclass
class CandidateSet:
	static_matches: List[Rule] = field(default_factory=list)
	ai_candidates: List[Rule] = field(default_factory=list)
	reasons: Dict[str, str] = field(default_factory=dict)

	@property
	def all(self) -> List[Rule]:
		return sort_rules(self.static_matches + self.ai_candidates)

	def __bool__(self) -> bool:
		return bool(self.static_matches or self.ai_candidates)


def select_candidate_rules(
	message: ParsedMessage,
	rules: Sequence[Rule],
	previous_rule_ids: Optional[Set[str]] = None,
	is_thread: bool = False,
	rerun: bool = False,
	groups: Optional[Mapping[str, Group]] = None,
) -> CandidateSet:
	"""Discard rules that cannot match ``message``, keeping the sorted order.

	Never drops a rule the full matcher could select; rules that need the
	classifier come back as ``ai_candidates``. A learned pattern match
	decides the message on its own, so the classifier is then skipped.
	"""
	previous = previous_rule_ids or set()
	groups = groups or {}
	candidates = CandidateSet()
	learned_match = False
	for rule in sort_rules(rules):
		if not rule.enabled:
			continue
		if rule.system_type == SystemType.CALENDAR and message.has_ics_attachment:
			candidates.static_matches.append(rule)
			candidates.reasons[rule.id] = "matched a calendar invitation"
			continue
		group = groups.get(rule.group_id) if rule.group_id else None
		if group is not None:
			item = find_matching_group_item(group, message)
			if item is not None and item.exclude:
				logger.debug("Rule %s excluded for message %s by %s %r", rule.id, message.id, item.type.value, item.value)
				continue
			if item is not None:
				learned_match = True
				candidates.static_matches.append(rule)
				candidates.reasons[rule.id] = f'matched learned pattern "{item.type.value}: {item.value}"'
				continue
		if is_thread and not rerun:
			if rule.run_on_threads and rule.id in previous:
				logger.debug("Rule %s already applied in thread %s", rule.id, message.thread_id)
				continue
			if not rule.run_on_threads and rule.id not in previous:
				continue
		matched, potential_ai_match = evaluate_rule_conditions(rule, message)
		if matched:
			candidates.static_matches.append(rule)
			candidates.reasons[rule.id] = "matched static conditions"
		elif potential_ai_match:
			candidates.ai_candidates.append(rule)

	if learned_match:
		candidates.ai_candidates = []
	elif _is_automated_sender(message) and any(r.system_type == SystemType.TO_REPLY for r in candidates.ai_candidates):
		candidates.ai_candidates = [r for r in candidates.ai_candidates if r.system_type not in CONVERSATION_STATUS_TYPES]
	return candidates


def choose_rule(static_matches: Sequence[Rule], ai_choice: Optional[Rule] = None) -> Optional[Rule]:
	"""Pick the single rule to run.

	The classifier's choice wins when it made one; otherwise the first static
	match in sorted order.
	"""
	if ai_choice is not None:
		return ai_choice
	ordered = sort_rules(static_matches)
	return ordered[0] if ordered else None
