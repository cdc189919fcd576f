from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Set

from .models import (
	ActionStatus,
	ActionType,
	DraftSendLog,
	ExecutedAction,
	ExecutedRule,
	ExecutedRuleStatus,
	Group,
	Mailbox,
	Rule,
	new_id,
	utcnow_iso,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS mailboxes (
	id TEXT PRIMARY KEY,
	email TEXT NOT NULL UNIQUE,
	data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS rules (
	id TEXT PRIMARY KEY,
	mailbox_id TEXT NOT NULL,
	enabled INTEGER NOT NULL DEFAULT 1,
	data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rules_mailbox ON rules(mailbox_id);
CREATE TABLE IF NOT EXISTS groups (
	id TEXT PRIMARY KEY,
	mailbox_id TEXT NOT NULL,
	data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS executed_rules (
	id TEXT PRIMARY KEY,
	mailbox_id TEXT NOT NULL,
	message_id TEXT NOT NULL,
	thread_id TEXT NOT NULL,
	rule_id TEXT,
	status TEXT NOT NULL,
	reason TEXT NOT NULL DEFAULT '',
	run_key TEXT NOT NULL DEFAULT '',
	automated INTEGER NOT NULL DEFAULT 1,
	created_at TEXT NOT NULL,
	UNIQUE (mailbox_id, message_id, run_key)
);
CREATE INDEX IF NOT EXISTS idx_executed_rules_thread ON executed_rules(mailbox_id, thread_id);
CREATE TABLE IF NOT EXISTS executed_actions (
	id TEXT PRIMARY KEY,
	executed_rule_id TEXT NOT NULL REFERENCES executed_rules(id),
	position INTEGER NOT NULL,
	action_id TEXT,
	type TEXT NOT NULL,
	label TEXT, "to" TEXT, cc TEXT, bcc TEXT, subject TEXT, content TEXT, url TEXT, folder_name TEXT,
	status TEXT NOT NULL,
	error TEXT,
	attempts INTEGER NOT NULL DEFAULT 0,
	draft_id TEXT,
	was_draft_sent INTEGER
);
CREATE TABLE IF NOT EXISTS draft_send_logs (
	id TEXT PRIMARY KEY,
	executed_action_id TEXT NOT NULL UNIQUE REFERENCES executed_actions(id),
	sent_message_id TEXT NOT NULL,
	similarity_score REAL NOT NULL,
	created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS digest_items (
	id TEXT PRIMARY KEY,
	mailbox_id TEXT NOT NULL,
	message_id TEXT NOT NULL,
	executed_rule_id TEXT NOT NULL,
	created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS tracked_threads (
	mailbox_id TEXT NOT NULL,
	thread_id TEXT NOT NULL,
	rule_id TEXT,
	created_at TEXT NOT NULL,
	PRIMARY KEY (mailbox_id, thread_id)
);
"""

ACTION_COLUMNS = ("label", "to", "cc", "bcc", "subject", "content", "url", "folder_name")


def _bool_or_none(value: Optional[int]) -> Optional[bool]:
	return None if value is None else bool(value)


class SqliteStore:
	"""Relational store for rules and the execution audit trail.

	One connection shared by all worker threads, serialized by a lock.
	"""

	def __init__(self, path: str = ":memory:") -> None:
		self.path = path
		self._conn = sqlite3.connect(path, check_same_thread=False)
		self._conn.row_factory = sqlite3.Row
		self._lock = threading.RLock()
		with self._lock:
			self._conn.executescript(SCHEMA)

	def close(self) -> None:
		with self._lock:
			self._conn.close()

	@contextmanager
	def _tx(self) -> Iterator[sqlite3.Connection]:
		with self._lock:
			with self._conn:
				yield self._conn

	# --- mailboxes ---

	def save_mailbox(self, mailbox: Mailbox) -> None:
		with self._tx() as conn:
			conn.execute(
				"INSERT INTO mailboxes (id, email, data) VALUES (?, ?, ?) "
				"ON CONFLICT(id) DO UPDATE SET email = excluded.email, data = excluded.data",
				(mailbox.id, mailbox.email.lower(), mailbox.to_json()),
			)

	def get_mailbox(self, mailbox_id: str) -> Optional[Mailbox]:
		with self._lock:
			row = self._conn.execute("SELECT data FROM mailboxes WHERE id = ?", (mailbox_id,)).fetchone()
		return Mailbox.from_json(row["data"]) if row else None

	def find_mailbox_by_email(self, email: str) -> Optional[Mailbox]:
		with self._lock:
			row = self._conn.execute("SELECT data FROM mailboxes WHERE email = ?", (email.lower(),)).fetchone()
		return Mailbox.from_json(row["data"]) if row else None

	def list_mailboxes(self) -> List[Mailbox]:
		with self._lock:
			rows = self._conn.execute("SELECT data FROM mailboxes ORDER BY id").fetchall()
		return [Mailbox.from_json(r["data"]) for r in rows]

	# --- rules ---

	def save_rule(self, rule: Rule) -> None:
		with self._tx() as conn:
			conn.execute(
				"INSERT INTO rules (id, mailbox_id, enabled, data) VALUES (?, ?, ?, ?) "
				"ON CONFLICT(id) DO UPDATE SET enabled = excluded.enabled, data = excluded.data",
				(rule.id, rule.mailbox_id, int(rule.enabled), rule.to_json()),
			)

	def get_rules(self, mailbox_id: str) -> List[Rule]:
		"""All rules of a mailbox, disabled ones included."""
		with self._lock:
			rows = self._conn.execute("SELECT data FROM rules WHERE mailbox_id = ? ORDER BY id", (mailbox_id,)).fetchall()
		return [Rule.from_json(r["data"]) for r in rows]

	def get_rule(self, rule_id: str) -> Optional[Rule]:
		with self._lock:
			row = self._conn.execute("SELECT data FROM rules WHERE id = ?", (rule_id,)).fetchone()
		return Rule.from_json(row["data"]) if row else None

	def disable_rule(self, rule_id: str) -> None:
		rule = self.get_rule(rule_id)
		if rule is None:
			return
		rule.enabled = False
		self.save_rule(rule)

	# --- learned pattern groups ---

	def save_group(self, group: Group) -> None:
		with self._tx() as conn:
			conn.execute(
				"INSERT INTO groups (id, mailbox_id, data) VALUES (?, ?, ?) "
				"ON CONFLICT(id) DO UPDATE SET data = excluded.data",
				(group.id, group.mailbox_id, group.to_json()),
			)

	def get_groups(self, mailbox_id: str) -> List[Group]:
		with self._lock:
			rows = self._conn.execute("SELECT data FROM groups WHERE mailbox_id = ? ORDER BY id", (mailbox_id,)).fetchall()
		return [Group.from_json(r["data"]) for r in rows]

	# --- execution history ---

	def create_executed_rule(self, executed: ExecutedRule) -> Optional[ExecutedRule]:
		"""Insert the record and its actions atomically.

		Returns None when a record for the same (mailbox, message, run_key)
		already exists.
		"""
		try:
			with self._tx() as conn:
				conn.execute(
					"INSERT INTO executed_rules (id, mailbox_id, message_id, thread_id, rule_id, status, reason, run_key, automated, created_at) "
					"VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
					(
						executed.id,
						executed.mailbox_id,
						executed.message_id,
						executed.thread_id,
						executed.rule_id,
						executed.status.value,
						executed.reason,
						executed.run_key,
						int(executed.automated),
						executed.created_at,
					),
				)
				for position, action in enumerate(executed.actions):
					self._insert_action(conn, action, position)
		except sqlite3.IntegrityError:
			logger.info("Executed rule already recorded for message %s (run_key=%r)", executed.message_id, executed.run_key)
			return None
		return executed

	def _insert_action(self, conn: sqlite3.Connection, action: ExecutedAction, position: int) -> None:
		conn.execute(
			'INSERT INTO executed_actions (id, executed_rule_id, position, action_id, type, label, "to", cc, bcc, subject, content, url, folder_name, '
			"status, error, attempts, draft_id, was_draft_sent) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
			(
				action.id,
				action.executed_rule_id,
				position,
				action.action_id,
				action.type.value,
				*[getattr(action, c) for c in ACTION_COLUMNS],
				action.status.value,
				action.error,
				action.attempts,
				action.draft_id,
				None if action.was_draft_sent is None else int(action.was_draft_sent),
			),
		)

	def update_executed_rule(self, executed: ExecutedRule) -> None:
		with self._tx() as conn:
			conn.execute(
				"UPDATE executed_rules SET status = ?, reason = ?, rule_id = ? WHERE id = ?",
				(executed.status.value, executed.reason, executed.rule_id, executed.id),
			)

	def update_executed_action(self, action: ExecutedAction) -> None:
		with self._tx() as conn:
			conn.execute(
				'UPDATE executed_actions SET label = ?, "to" = ?, cc = ?, bcc = ?, subject = ?, content = ?, url = ?, folder_name = ?, '
				"status = ?, error = ?, attempts = ?, draft_id = ?, was_draft_sent = ? WHERE id = ?",
				(
					*[getattr(action, c) for c in ACTION_COLUMNS],
					action.status.value,
					action.error,
					action.attempts,
					action.draft_id,
					None if action.was_draft_sent is None else int(action.was_draft_sent),
					action.id,
				),
			)

	def _row_to_action(self, row: sqlite3.Row) -> ExecutedAction:
		return ExecutedAction(
			id=row["id"],
			executed_rule_id=row["executed_rule_id"],
			action_id=row["action_id"],
			type=ActionType(row["type"]),
			**{c: row[c] for c in ACTION_COLUMNS},
			status=ActionStatus(row["status"]),
			error=row["error"],
			attempts=row["attempts"],
			draft_id=row["draft_id"],
			was_draft_sent=_bool_or_none(row["was_draft_sent"]),
		)

	def _row_to_executed(self, row: sqlite3.Row) -> ExecutedRule:
		with self._lock:
			action_rows = self._conn.execute(
				"SELECT * FROM executed_actions WHERE executed_rule_id = ? ORDER BY position", (row["id"],)
			).fetchall()
		return ExecutedRule(
			id=row["id"],
			mailbox_id=row["mailbox_id"],
			message_id=row["message_id"],
			thread_id=row["thread_id"],
			rule_id=row["rule_id"],
			status=ExecutedRuleStatus(row["status"]),
			reason=row["reason"],
			run_key=row["run_key"],
			automated=bool(row["automated"]),
			created_at=row["created_at"],
			actions=[self._row_to_action(r) for r in action_rows],
		)

	def find_executed_rule(self, mailbox_id: str, message_id: str, run_key: str = "") -> Optional[ExecutedRule]:
		with self._lock:
			row = self._conn.execute(
				"SELECT * FROM executed_rules WHERE mailbox_id = ? AND message_id = ? AND run_key = ?",
				(mailbox_id, message_id, run_key),
			).fetchone()
		return self._row_to_executed(row) if row else None

	def count_executed_rules(self, mailbox_id: str, message_id: str) -> int:
		with self._lock:
			row = self._conn.execute(
				"SELECT COUNT(*) AS n FROM executed_rules WHERE mailbox_id = ? AND message_id = ?", (mailbox_id, message_id)
			).fetchone()
		return int(row["n"])

	def recent_executed_rules(self, mailbox_id: str, limit: int = 20) -> List[ExecutedRule]:
		with self._lock:
			rows = self._conn.execute(
				"SELECT * FROM executed_rules WHERE mailbox_id = ? ORDER BY created_at DESC LIMIT ?", (mailbox_id, limit)
			).fetchall()
		return [self._row_to_executed(r) for r in rows]

	def applied_rule_ids_in_thread(self, mailbox_id: str, thread_id: str, exclude_message_id: Optional[str] = None) -> Set[str]:
		with self._lock:
			rows = self._conn.execute(
				"SELECT DISTINCT rule_id FROM executed_rules WHERE mailbox_id = ? AND thread_id = ? AND status = ? "
				"AND rule_id IS NOT NULL AND message_id != ?",
				(mailbox_id, thread_id, ExecutedRuleStatus.APPLIED.value, exclude_message_id or ""),
			).fetchall()
		return {r["rule_id"] for r in rows}

	# --- drafts ---

	def latest_unsent_draft(self, mailbox_id: str, thread_id: str) -> Optional[ExecutedAction]:
		"""Most recent AI draft in the thread whose fate is not yet known."""
		with self._lock:
			row = self._conn.execute(
				"SELECT a.* FROM executed_actions a JOIN executed_rules r ON r.id = a.executed_rule_id "
				"LEFT JOIN draft_send_logs d ON d.executed_action_id = a.id "
				"WHERE r.mailbox_id = ? AND r.thread_id = ? AND a.type = ? AND a.draft_id IS NOT NULL "
				"AND a.was_draft_sent IS NULL AND d.id IS NULL "
				"ORDER BY r.created_at DESC, a.position DESC LIMIT 1",
				(mailbox_id, thread_id, ActionType.DRAFT_EMAIL.value),
			).fetchone()
		return self._row_to_action(row) if row else None

	def record_draft_send(self, log: DraftSendLog) -> None:
		with self._tx() as conn:
			conn.execute(
				"INSERT OR IGNORE INTO draft_send_logs (id, executed_action_id, sent_message_id, similarity_score, created_at) "
				"VALUES (?, ?, ?, ?, ?)",
				(log.id, log.executed_action_id, log.sent_message_id, log.similarity_score, log.created_at),
			)
			conn.execute("UPDATE executed_actions SET was_draft_sent = 1 WHERE id = ?", (log.executed_action_id,))

	def get_draft_send_log(self, executed_action_id: str) -> Optional[DraftSendLog]:
		with self._lock:
			row = self._conn.execute("SELECT * FROM draft_send_logs WHERE executed_action_id = ?", (executed_action_id,)).fetchone()
		if not row:
			return None
		return DraftSendLog(
			id=row["id"],
			executed_action_id=row["executed_action_id"],
			sent_message_id=row["sent_message_id"],
			similarity_score=row["similarity_score"],
			created_at=row["created_at"],
		)

	def mark_draft_not_sent(self, executed_action_id: str) -> None:
		with self._tx() as conn:
			conn.execute("UPDATE executed_actions SET was_draft_sent = 0 WHERE id = ?", (executed_action_id,))

	# --- digest / tracking ---

	def add_digest_item(self, mailbox_id: str, message_id: str, executed_rule_id: str) -> None:
		with self._tx() as conn:
			conn.execute(
				"INSERT INTO digest_items (id, mailbox_id, message_id, executed_rule_id, created_at) VALUES (?, ?, ?, ?, ?)",
				(new_id(), mailbox_id, message_id, executed_rule_id, utcnow_iso()),
			)

	def digest_message_ids(self, mailbox_id: str) -> List[str]:
		with self._lock:
			rows = self._conn.execute(
				"SELECT message_id FROM digest_items WHERE mailbox_id = ? ORDER BY created_at", (mailbox_id,)
			).fetchall()
		return [r["message_id"] for r in rows]

	def track_thread(self, mailbox_id: str, thread_id: str, rule_id: Optional[str]) -> None:
		with self._tx() as conn:
			conn.execute(
				"INSERT OR IGNORE INTO tracked_threads (mailbox_id, thread_id, rule_id, created_at) VALUES (?, ?, ?, ?)",
				(mailbox_id, thread_id, rule_id, utcnow_iso()),
			)

	def is_thread_tracked(self, mailbox_id: str, thread_id: str) -> bool:
		with self._lock:
			row = self._conn.execute(
				"SELECT 1 FROM tracked_threads WHERE mailbox_id = ? AND thread_id = ?", (mailbox_id, thread_id)
			).fetchone()
		return row is not None
