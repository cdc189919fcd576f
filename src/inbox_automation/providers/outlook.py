from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import msal
import requests

from ..errors import (
	AuthError,
	HistoryExpiredError,
	MessageNotFoundError,
	PermanentProviderError,
	TransientProviderError,
)
from ..models import HistoryDelta, HistoryItem, ParsedMessage, Thread, WatchResult
from ..parsing import parse_graph_message
from ..retry import RetryPolicy
from .base import EmailProvider, classify_status

logger = logging.getLogger(__name__)

GRAPH_API_ENDPOINT = "https://graph.microsoft.com/v1.0"
AUTHORITY = "https://login.microsoftonline.com/common"
SCOPES = ["https://graph.microsoft.com/Mail.ReadWrite", "https://graph.microsoft.com/Mail.Send"]

# Microsoft Graph JSON batching accepts at most 20 requests per call.
GRAPH_BATCH_LIMIT = 20
# Graph caps mail subscriptions at 4230 minutes; renew a little before that.
SUBSCRIPTION_MINUTES = 4200

# Folders read by the delta query, with the label their messages carry.
DELTA_FOLDERS = (("inbox", "INBOX"), ("sentitems", "SENT"))

MESSAGE_FIELDS = (
	"id,conversationId,subject,from,toRecipients,ccRecipients,body,bodyPreview,"
	"receivedDateTime,internetMessageId,categories,isRead,isDraft,parentFolderId"
)


def _delta_links(cursor: Optional[str]) -> Dict[str, Optional[str]]:
	if not cursor:
		return {}
	try:
		links = json.loads(cursor)
	except ValueError:
		return {"inbox": cursor}
	return links if isinstance(links, dict) else {"inbox": cursor}


def _recipients(value: Optional[str]) -> List[Dict[str, Any]]:
	return [{"emailAddress": {"address": a.strip()}} for a in (value or "").split(",") if a.strip()]


def acquire_token(client_id: str, client_secret: str, refresh_token: str) -> str:
	app = msal.ConfidentialClientApplication(client_id, client_credential=client_secret, authority=AUTHORITY)
	result = app.acquire_token_by_refresh_token(refresh_token, scopes=SCOPES)
	if "access_token" not in result:
		raise AuthError(result.get("error_description") or result.get("error") or "token refresh failed", status=401)
	return result["access_token"]


class OutlookProvider(EmailProvider):
	"""Microsoft Graph adapter. Labels map to categories, threads to conversations."""

	name = "microsoft"

	def __init__(
		self,
		token_provider: Callable[[], str],
		email: str = "",
		retry_policy: Optional[RetryPolicy] = None,
		timeout: float = 8.0,
		notification_url: str = "",
		client_state: str = "",
		session: Optional[requests.Session] = None,
	) -> None:
		super().__init__(retry_policy)
		self._token_provider = token_provider
		self.email = email
		self.timeout = timeout
		self.notification_url = notification_url
		self.client_state = client_state
		self._session = session
		self._folder_ids: Dict[str, str] = {}
		self._categories: Optional[set] = None

	@classmethod
	def from_refresh_token(cls, client_id: str, client_secret: str, refresh_token: str, **kwargs: Any) -> "OutlookProvider":
		return cls(lambda: acquire_token(client_id, client_secret, refresh_token), **kwargs)

	@property
	def session(self) -> requests.Session:
		if self._session is None:
			session = requests.Session()
			session.headers.update({"Authorization": f"Bearer {self._token_provider()}"})
			self._session = session
		return self._session

	def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
		url = path if path.startswith("http") else GRAPH_API_ENDPOINT + path
		try:
			resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
		except (requests.Timeout, requests.ConnectionError) as e:
			raise TransientProviderError(f"{method} {path}: {e}") from e
		if resp.status_code >= 400:
			raise classify_status(
				resp.status_code,
				f"{method} {path}: {resp.status_code} {resp.text[:300]}",
				resp.headers.get("Retry-After"),
			)
		if resp.status_code == 204 or not resp.content:
			return {}
		return resp.json()

	def _graph(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
		return self._call(self._request, method, path, **kwargs)

	# --- batching ---

	def _batch_attempt(self, pending: List[Dict[str, Any]]) -> None:
		resp = self._request("POST", "/$batch", json={"requests": pending})
		by_id = {r.get("id"): r for r in resp.get("responses", []) or []}
		failed = []
		errors = []
		for req in pending:
			res = by_id.get(req["id"], {"status": 500})
			status = int(res.get("status", 500))
			if status >= 400:
				failed.append(req)
				retry_after = (res.get("headers") or {}).get("Retry-After")
				errors.append(classify_status(status, f"batch {req['method']} {req['url']}: {status}", retry_after))
		# only the failed sub-requests are sent again on the next attempt
		pending[:] = failed
		if errors:
			permanent = [e for e in errors if not isinstance(e, TransientProviderError)]
			raise permanent[0] if permanent else errors[0]

	def _send_batch(self, requests_: List[Dict[str, Any]]) -> None:
		for start in range(0, len(requests_), GRAPH_BATCH_LIMIT):
			pending = list(requests_[start:start + GRAPH_BATCH_LIMIT])
			self._call(self._batch_attempt, pending)

	# --- folders ---

	def _folder_id(self, well_known: str) -> str:
		if well_known not in self._folder_ids:
			self._folder_ids[well_known] = self._graph("GET", f"/me/mailFolders/{well_known}")["id"]
		return self._folder_ids[well_known]

	def _folder_labels(self, parent_folder_id: Optional[str]) -> List[str]:
		for well_known, label in (("inbox", "INBOX"), ("sentitems", "SENT"), ("drafts", "DRAFT")):
			if parent_folder_id and parent_folder_id == self._folder_id(well_known):
				return [label]
		return []

	def _folder_by_name(self, name: str) -> str:
		key = f"name:{name.lower()}"
		if key in self._folder_ids:
			return self._folder_ids[key]
		escaped = name.replace("'", "''")
		found = self._graph("GET", "/me/mailFolders", params={"$filter": f"displayName eq '{escaped}'"}).get("value", [])
		if found:
			folder_id = found[0]["id"]
		else:
			folder_id = self._graph("POST", "/me/mailFolders", json={"displayName": name})["id"]
			logger.info("Created Outlook folder %s", name)
		self._folder_ids[key] = folder_id
		return folder_id

	# --- reads ---

	def _parse(self, resp: Dict[str, Any]) -> ParsedMessage:
		return parse_graph_message(resp, self._folder_labels(resp.get("parentFolderId")))

	def get_message(self, message_id: str) -> ParsedMessage:
		return self._parse(self._graph("GET", f"/me/messages/{message_id}", params={"$select": MESSAGE_FIELDS}))

	def _conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
		escaped = conversation_id.replace("'", "''")
		resp = self._graph(
			"GET",
			"/me/messages",
			params={"$filter": f"conversationId eq '{escaped}'", "$select": MESSAGE_FIELDS, "$top": 50},
		)
		return resp.get("value", []) or []

	def get_thread(self, thread_id: str) -> Thread:
		messages = sorted(self._conversation(thread_id), key=lambda m: m.get("receivedDateTime") or "")
		return Thread(id=thread_id, messages=[self._parse(m) for m in messages])

	def get_history_since(self, cursor: Optional[str]) -> HistoryDelta:
		"""Changes in the inbox and sent items since ``cursor``.

		The cursor is a JSON object holding one delta link per folder. A bare
		delta link is read as the inbox link.
		"""
		links = _delta_links(cursor)
		items: List[HistoryItem] = []
		seen: set = set()
		new_links: Dict[str, Optional[str]] = {}
		for folder, label in DELTA_FOLDERS:
			start = links.get(folder) or f"/me/mailFolders/{folder}/messages/delta?$deltatoken=latest"
			new_links[folder] = self._folder_delta(start, label, items, seen) or links.get(folder)
		return HistoryDelta(items=items, new_cursor=json.dumps(new_links, sort_keys=True))

	def _folder_delta(self, url: str, label: str, items: List[HistoryItem], seen: set) -> Optional[str]:
		while True:
			try:
				resp = self._graph("GET", url, headers={"Prefer": "odata.maxpagesize=50"})
			except PermanentProviderError as e:
				if e.status in (404, 410):
					raise HistoryExpiredError("delta token expired", status=e.status) from e
				raise
			for entry in resp.get("value", []) or []:
				if "@removed" in entry or entry.get("isDraft") or entry["id"] in seen:
					continue
				seen.add(entry["id"])
				items.append(HistoryItem(message_id=entry["id"], thread_id=entry.get("conversationId"), label_ids=[label]))
			if "@odata.nextLink" in resp:
				url = resp["@odata.nextLink"]
				continue
			return resp.get("@odata.deltaLink")

	def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
		try:
			resp = self._graph("GET", f"/me/messages/{draft_id}", params={"$select": MESSAGE_FIELDS})
		except MessageNotFoundError:
			return None
		if not resp.get("isDraft"):
			return None
		return self._parse(resp)

	# --- categories ---

	def get_or_create_label(self, name: str) -> str:
		if self._categories is None:
			resp = self._graph("GET", "/me/outlook/masterCategories")
			self._categories = {c["displayName"] for c in resp.get("value", []) or []}
		if name not in self._categories:
			try:
				self._graph("POST", "/me/outlook/masterCategories", json={"displayName": name, "color": "preset0"})
			except PermanentProviderError as e:
				# 409: someone created it between our list and create
				if e.status != 409:
					raise
			self._categories.add(name)
		return name

	def apply_labels(self, message_id: str, add: List[str], remove: Optional[List[str]] = None) -> None:
		for name in add:
			self.get_or_create_label(name)
		current = self._graph("GET", f"/me/messages/{message_id}", params={"$select": "categories"}).get("categories", [])
		removed = set(remove or [])
		categories = [c for c in current if c not in removed]
		categories.extend(n for n in add if n not in categories)
		self._graph("PATCH", f"/me/messages/{message_id}", json={"categories": categories})

	# --- thread mutations ---

	def _thread_requests(self, thread_id: str, method: str, suffix: str, body: Dict[str, Any], inbox_only: bool = False) -> List[Dict[str, Any]]:
		messages = self._conversation(thread_id)
		if inbox_only:
			inbox = self._folder_id("inbox")
			messages = [m for m in messages if m.get("parentFolderId") == inbox]
		return [
			{
				"id": str(i),
				"method": method,
				"url": f"/me/messages/{m['id']}{suffix}",
				"headers": {"Content-Type": "application/json"},
				"body": body,
			}
			for i, m in enumerate(messages)
		]

	def _move_thread(self, thread_id: str, destination: str, inbox_only: bool = True) -> None:
		self._send_batch(self._thread_requests(thread_id, "POST", "/move", {"destinationId": destination}, inbox_only))

	def archive(self, thread_id: str) -> None:
		self._move_thread(thread_id, "archive")

	def mark_read(self, thread_id: str) -> None:
		self._send_batch(self._thread_requests(thread_id, "PATCH", "", {"isRead": True}))

	def mark_spam(self, thread_id: str) -> None:
		self._move_thread(thread_id, "junkemail")

	def trash(self, thread_id: str) -> None:
		self._move_thread(thread_id, "deleteditems", inbox_only=False)

	def move_to_folder(self, thread_id: str, folder_name: str) -> None:
		self._move_thread(thread_id, self._folder_by_name(folder_name))

	# --- sending ---

	def create_draft(self, message: ParsedMessage, content: str, to: Optional[str] = None, subject: Optional[str] = None) -> str:
		draft = self._graph("POST", f"/me/messages/{message.id}/createReply")
		patch: Dict[str, Any] = {"body": {"contentType": "Text", "content": content}}
		if to:
			patch["toRecipients"] = _recipients(to)
		if subject:
			patch["subject"] = subject
		self._graph("PATCH", f"/me/messages/{draft['id']}", json=patch)
		return draft["id"]

	def delete_draft(self, draft_id: str) -> None:
		try:
			self._graph("DELETE", f"/me/messages/{draft_id}")
		except MessageNotFoundError:
			logger.info("Draft %s already gone", draft_id)

	def send_reply(self, message: ParsedMessage, content: str, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		body: Dict[str, Any] = {"comment": content}
		if cc or bcc:
			body["message"] = {"ccRecipients": _recipients(cc), "bccRecipients": _recipients(bcc)}
		self._graph("POST", f"/me/messages/{message.id}/reply", json=body)

	def forward(self, message: ParsedMessage, to: str, content: Optional[str] = None, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		body: Dict[str, Any] = {"comment": content or "", "toRecipients": _recipients(to)}
		if cc or bcc:
			body["message"] = {"ccRecipients": _recipients(cc), "bccRecipients": _recipients(bcc)}
		self._graph("POST", f"/me/messages/{message.id}/forward", json=body)

	def send_email(self, to: str, subject: str, content: str, cc: Optional[str] = None, bcc: Optional[str] = None) -> None:
		body = {
			"message": {
				"subject": subject,
				"body": {"contentType": "Text", "content": content},
				"toRecipients": _recipients(to),
				"ccRecipients": _recipients(cc),
				"bccRecipients": _recipients(bcc),
			},
			"saveToSentItems": True,
		}
		self._graph("POST", "/me/sendMail", json=body)

	# --- push notifications ---

	def watch(self) -> WatchResult:
		expires = datetime.now(timezone.utc) + timedelta(minutes=SUBSCRIPTION_MINUTES)
		body = {
			"changeType": "created",
			"notificationUrl": self.notification_url,
			"resource": "/me/messages",
			"expirationDateTime": expires.isoformat().replace("+00:00", "Z"),
			"clientState": self.client_state,
		}
		resp = self._graph("POST", "/subscriptions", json=body)
		return WatchResult(expires_at=expires.timestamp(), subscription_id=resp.get("id"))

	def unwatch(self, subscription_id: Optional[str] = None) -> None:
		if not subscription_id:
			return
		try:
			self._graph("DELETE", f"/subscriptions/{subscription_id}")
		except MessageNotFoundError:
			logger.info("Subscription %s already gone", subscription_id)
