from __future__ import annotations

import base64
import logging
import socket
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import httplib2
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..errors import (
	AuthError,
	HistoryExpiredError,
	MessageNotFoundError,
	ProviderError,
	TransientProviderError,
)
from ..models import HistoryDelta, HistoryItem, ParsedMessage, Thread, WatchResult
from ..parsing import parse_gmail_message
from ..retry import RetryPolicy
from .base import EmailProvider, classify_status, forward_subject, reply_subject

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]

INBOX = "INBOX"
SENT = "SENT"
DRAFT = "DRAFT"
UNREAD = "UNREAD"
SPAM = "SPAM"
SYSTEM_LABELS = {INBOX, SENT, DRAFT, UNREAD, SPAM, "TRASH", "STARRED", "IMPORTANT"}


@dataclass
class GmailLabel:
	id: str
	name: str


def _translate(error: Exception) -> ProviderError:
	if isinstance(error, HttpError):
		status = int(error.resp.status)
		return classify_status(status, str(error), error.resp.get("retry-after"))
	if isinstance(error, RefreshError):
		return AuthError(str(error), status=401)
	return TransientProviderError(str(error))


def _raw(msg: EmailMessage) -> str:
	return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")


class GmailProvider(EmailProvider):
	"""Gmail API adapter. One instance per mailbox; never shared."""

	name = "google"

	def __init__(
		self,
		creds: Credentials,
		email: str = "",
		retry_policy: Optional[RetryPolicy] = None,
		timeout: float = 8.0,
		topic_name: str = "",
		service: Any = None,
	) -> None:
		super().__init__(retry_policy)
		self.creds = creds
		self.email = email
		self.timeout = timeout
		self.topic_name = topic_name
		self._service = service
		self._label_cache_by_name: Dict[str, GmailLabel] = {}

	@classmethod
	def from_token_info(cls, info: Dict[str, Any], **kwargs: Any) -> "GmailProvider":
		"""Build from an authorized-user token dict (the one ``creds.to_json()`` writes)."""
		return cls(Credentials.from_authorized_user_info(info, SCOPES), **kwargs)

	@property
	def service(self):
		if self._service is None:
			if not self.creds.valid:
				try:
					self.creds.refresh(Request())
				except RefreshError as e:
					raise AuthError(str(e), status=401) from e
			http = AuthorizedHttp(self.creds, http=httplib2.Http(timeout=self.timeout))
			self._service = build("gmail", "v1", http=http, cache_discovery=False)
		return self._service

	def _execute(self, request) -> Dict[str, Any]:
		try:
			return request.execute()
		except (HttpError, RefreshError, socket.timeout, TimeoutError, ConnectionError, httplib2.HttpLib2Error) as e:
			raise _translate(e) from e

	def _run(self, request) -> Dict[str, Any]:
		return self._call(self._execute, request)

	# --- reads ---

	def get_message(self, message_id: str) -> ParsedMessage:
		resp = self._run(self.service.users().messages().get(userId="me", id=message_id, format="full"))
		return parse_gmail_message(resp)

	def get_thread(self, thread_id: str) -> Thread:
		resp = self._run(self.service.users().threads().get(userId="me", id=thread_id, format="full"))
		return Thread(id=thread_id, messages=[parse_gmail_message(m) for m in resp.get("messages", []) or []])

	def get_history_since(self, cursor: Optional[str]) -> HistoryDelta:
		if not cursor:
			profile = self._run(self.service.users().getProfile(userId="me"))
			return HistoryDelta(items=[], new_cursor=str(profile.get("historyId")))

		items: List[HistoryItem] = []
		seen = set()
		new_cursor: Optional[str] = cursor
		page_token: Optional[str] = None
		while True:
			request = self.service.users().history().list(
				userId="me",
				startHistoryId=cursor,
				historyTypes=["messageAdded"],
				maxResults=500,
				pageToken=page_token,
			)
			try:
				resp = self._run(request)
			except MessageNotFoundError as e:
				raise HistoryExpiredError(f"historyId {cursor} expired", status=404) from e
			for record in resp.get("history", []) or []:
				for added in record.get("messagesAdded", []) or []:
					message = added.get("message") or {}
					labels = message.get("labelIds") or []
					relevant = (INBOX in labels and DRAFT not in labels) or SENT in labels
					if not relevant or message.get("id") in seen:
						continue
					seen.add(message["id"])
					items.append(HistoryItem(message_id=message["id"], thread_id=message.get("threadId"), label_ids=list(labels)))
			new_cursor = str(resp.get("historyId", new_cursor))
			page_token = resp.get("nextPageToken")
			if not page_token:
				break
		return HistoryDelta(items=items, new_cursor=new_cursor)

	def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
		try:
			resp = self._run(self.service.users().drafts().get(userId="me", id=draft_id, format="full"))
		except MessageNotFoundError:
			return None
		return parse_gmail_message(resp["message"])

	# --- labels ---

	def get_or_create_label(self, name: str) -> str:
		if name.upper() in SYSTEM_LABELS:
			return name.upper()
		if name in self._label_cache_by_name:
			return self._label_cache_by_name[name].id
		labels = self._run(self.service.users().labels().list(userId="me")).get("labels", [])
		for lab in labels:
			self._label_cache_by_name[lab["name"]] = GmailLabel(id=lab["id"], name=lab["name"])
		if name in self._label_cache_by_name:
			return self._label_cache_by_name[name].id
		created = self._run(
			self.service.users().labels().create(
				userId="me",
				body={
					"name": name,
					"labelListVisibility": "labelShow",
					"messageListVisibility": "show",
				},
			)
		)
		label = GmailLabel(id=created["id"], name=created["name"])
		self._label_cache_by_name[name] = label
		logger.info("Created Gmail label %s (%s)", name, label.id)
		return label.id

	def apply_labels(self, message_id: str, add: List[str], remove: Optional[List[str]] = None) -> None:
		body = {
			"addLabelIds": [self.get_or_create_label(n) for n in add],
			"removeLabelIds": [self.get_or_create_label(n) for n in remove or []],
		}
		self._run(self.service.users().messages().modify(userId="me", id=message_id, body=body))

	def _modify_thread(self, thread_id: str, add: List[str], remove: List[str]) -> None:
		body = {"addLabelIds": add, "removeLabelIds": remove}
		self._run(self.service.users().threads().modify(userId="me", id=thread_id, body=body))

	def archive(self, thread_id: str) -> None:
		self._modify_thread(thread_id, [], [INBOX])

	def mark_read(self, thread_id: str) -> None:
		self._modify_thread(thread_id, [], [UNREAD])

	def mark_spam(self, thread_id: str) -> None:
		self._modify_thread(thread_id, [SPAM], [INBOX])

	def trash(self, thread_id: str) -> None:
		self._run(self.service.users().threads().trash(userId="me", id=thread_id))

	def move_to_folder(self, thread_id: str, folder_name: str) -> None:
		# Gmail has no folders: a label plus leaving the inbox is the equivalent.
		self._modify_thread(thread_id, [self.get_or_create_label(folder_name)], [INBOX])

	# --- sending ---

	def _reply_mime(self, message: ParsedMessage, content: str, to: Optional[str] = None, subject: Optional[str] = None) -> EmailMessage:
		mime = EmailMessage()
		mime["To"] = to or message.header("reply-to") or message.sender
		mime["Subject"] = subject or reply_subject(message.subject)
		if self.email:
			mime["From"] = self.email
		message_id = message.header("message-id")
		if message_id:
			mime["In-Reply-To"] = message_id
			mime["References"] = f"{message.header('references')} {message_id}".strip()
		mime.set_content(content)
		return mime

	def create_draft(self, message: ParsedMessage, content: str, to: Optional[str] = None, subject: Optional[str] = None) -> str:
		mime = self._reply_mime(message, content, to=to, subject=subject)
		body = {"message": {"raw": _raw(mime), "threadId": message.thread_id}}
		resp = self._run(self.service.users().drafts().create(userId="me", body=body))
		return resp["id"]

	def delete_draft(self, draft_id: str) -> None:
		try:
			self._run(self.service.users().drafts().delete(userId="me", id=draft_id))
		except MessageNotFoundError:
			logger.info("Draft %s already gone", draft_id)

	def _send(self, mime: EmailMessage, thread_id: Optional[str] = None) -> None:
		body: Dict[str, Any] = {"raw": _raw(mime)}
		if thread_id:
			body["threadId"] = thread_id
		self._run(self.service.users().messages().send(userId="me", body=body))

	def send_reply(self, message: ParsedMessage, content: str, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		mime = self._reply_mime(message, content)
		if cc:
			mime["Cc"] = cc
		if bcc:
			mime["Bcc"] = bcc
		self._send(mime, thread_id=message.thread_id)

	def forward(self, message: ParsedMessage, to: str, content: Optional[str] = None, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		mime = EmailMessage()
		mime["To"] = to
		mime["Subject"] = forward_subject(message.subject)
		if cc:
			mime["Cc"] = cc
		if bcc:
			mime["Bcc"] = bcc
		quoted = (
			"---------- Forwarded message ---------\n"
			f"From: {message.sender}\n"
			f"Date: {message.header('date')}\n"
			f"Subject: {message.subject}\n"
			f"To: {message.recipient}\n\n"
			f"{message.text_plain or message.snippet}"
		)
		mime.set_content(f"{content}\n\n{quoted}" if content else quoted)
		self._send(mime)

	def send_email(self, to: str, subject: str, content: str, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		mime = EmailMessage()
		mime["To"] = to
		mime["Subject"] = subject
		if cc:
			mime["Cc"] = cc
		if bcc:
			mime["Bcc"] = bcc
		mime.set_content(content)
		self._send(mime)

	# --- push notifications ---

	def watch(self) -> WatchResult:
		body = {"topicName": self.topic_name, "labelIds": [INBOX, SENT], "labelFilterBehavior": "include"}
		resp = self._run(self.service.users().watch(userId="me", body=body))
		return WatchResult(expires_at=int(resp["expiration"]) / 1000.0, history_id=str(resp.get("historyId")))

	def unwatch(self, subscription_id: Optional[str] = None) -> None:
		self._run(self.service.users().stop(userId="me"))
