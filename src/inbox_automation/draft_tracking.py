from __future__ import annotations

import logging
from typing import Optional

from .errors import MessageNotFoundError
from .models import DraftSendLog, Mailbox, ParsedMessage
from .parsing import email_body_text, similarity
from .providers.base import EmailProvider
from .storage import SqliteStore

logger = logging.getLogger(__name__)

UNMODIFIED_DRAFT_SIMILARITY = 0.95


class DraftTracker:
	"""Works out what became of an AI draft once the user sends something in its thread."""

	def __init__(self, store: SqliteStore) -> None:
		self.store = store

	def track_outbound(self, mailbox: Mailbox, provider: EmailProvider, message: ParsedMessage) -> Optional[DraftSendLog]:
		pending = self.store.latest_unsent_draft(mailbox.id, message.thread_id)
		if pending is None or not pending.draft_id:
			return None

		try:
			draft = provider.get_draft(pending.draft_id)
		except MessageNotFoundError:
			draft = None

		if draft is None:
			# the draft left the drafts folder, so this outbound message is it
			score = similarity(pending.content, email_body_text(message))
			log = DraftSendLog(executed_action_id=pending.id, sent_message_id=message.id, similarity_score=score)
			self.store.record_draft_send(log)
			logger.info("Draft %s sent as %s (similarity %.2f)", pending.draft_id, message.id, score)
			return log

		self.store.mark_draft_not_sent(pending.id)
		if similarity(pending.content, email_body_text(draft)) >= UNMODIFIED_DRAFT_SIMILARITY:
			try:
				provider.delete_draft(pending.draft_id)
			except MessageNotFoundError:
				pass
			logger.info("User replied without draft %s; removed the untouched draft", pending.draft_id)
		return None
