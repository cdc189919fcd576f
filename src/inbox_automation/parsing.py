from __future__ import annotations

import base64
import re
from difflib import SequenceMatcher
from email.utils import parseaddr
from typing import Any, Dict, Iterable, List, Optional

from bs4 import BeautifulSoup

from .models import ParsedMessage

_MD_LINK_RE = re.compile(r"!?\[([^\]]*)\]\(([^)]*)\)")
_MD_EMPHASIS_RE = re.compile(r"(\*\*|__|\*|_|`{1,3})(?=\S)(.+?)(?<=\S)\1")
_MD_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE)
_HTML_TAG_RE = re.compile(r"</?[a-zA-Z][^>]*>")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def extract_email_address(value: Optional[str]) -> str:
	"""'Jane <jane@x.com>' -> 'jane@x.com' (lowercased)."""
	_, address = parseaddr(value or "")
	return address.lower()


def html_to_text(html: str) -> str:
	if not html:
		return ""
	soup = BeautifulSoup(html, "html.parser")
	for tag in soup(["script", "style", "head"]):
		tag.decompose()
	text = soup.get_text("\n")
	lines = [line.strip() for line in text.splitlines()]
	return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def email_body_text(message: ParsedMessage) -> str:
	"""Plain-text body; HTML is only used when no text/plain part exists."""
	if message.text_plain.strip():
		return message.text_plain.strip()
	if message.text_html:
		return html_to_text(message.text_html)
	return message.snippet


def truncate(text: str, limit: int) -> str:
	if len(text) <= limit:
		return text
	return text[:limit] + "\n[truncated]"


def to_plain_text(text: str) -> str:
	"""Strip HTML tags and markdown formatting from generated content.

	Links keep their visible text only, so a generated reply can never show
	one address while pointing at another.
	"""
	if not text:
		return ""
	if _HTML_TAG_RE.search(text):
		text = html_to_text(text)
	text = _MD_LINK_RE.sub(lambda m: m.group(1), text)
	text = _MD_HEADING_RE.sub("", text)
	text = _MD_EMPHASIS_RE.sub(lambda m: m.group(2), text)
	return text.strip()


def similarity(a: Optional[str], b: Optional[str]) -> float:
	a = " ".join((a or "").split()).lower()
	b = " ".join((b or "").split()).lower()
	if not a and not b:
		return 1.0
	return round(SequenceMatcher(None, a, b).ratio(), 4)


def _decode_body(data: Optional[str]) -> str:
	if not data:
		return ""
	padded = data + "=" * (-len(data) % 4)
	return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def _walk_parts(payload: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
	yield payload
	for part in payload.get("parts", []) or []:
		yield from _walk_parts(part)


def parse_gmail_message(resp: Dict[str, Any]) -> ParsedMessage:
	payload = resp.get("payload", {}) or {}
	headers = {h["name"].lower(): h["value"] for h in payload.get("headers", []) or []}
	plain: List[str] = []
	html: List[str] = []
	attachment_names: List[str] = []
	attachment_types: List[str] = []
	for part in _walk_parts(payload):
		mime = part.get("mimeType", "")
		if part.get("filename"):
			attachment_names.append(part["filename"])
			attachment_types.append(mime)
			continue
		if mime == "text/calendar":
			# inline invitations carry no filename
			attachment_types.append(mime)
			continue
		data = (part.get("body") or {}).get("data")
		if mime == "text/plain":
			plain.append(_decode_body(data))
		elif mime == "text/html":
			html.append(_decode_body(data))
	return ParsedMessage(
		id=resp["id"],
		thread_id=resp.get("threadId", resp["id"]),
		headers=headers,
		text_plain="\n".join(p for p in plain if p),
		text_html="\n".join(h for h in html if h),
		snippet=resp.get("snippet", ""),
		label_ids=list(resp.get("labelIds", []) or []),
		internal_date=resp.get("internalDate"),
		attachment_names=attachment_names,
		attachment_types=attachment_types,
	)


def _graph_recipients(items: Optional[List[Dict[str, Any]]]) -> str:
	out = []
	for item in items or []:
		addr = (item.get("emailAddress") or {})
		name, address = addr.get("name"), addr.get("address", "")
		out.append(f"{name} <{address}>" if name and name != address else address)
	return ", ".join(out)


def parse_graph_message(resp: Dict[str, Any], folder_labels: Optional[List[str]] = None) -> ParsedMessage:
	"""Normalize a Microsoft Graph message resource.

	Graph has no labels, so ``folder_labels`` carries the INBOX/SENT/DRAFT
	markers the adapter derived from ``parentFolderId``. Categories are
	appended as label names.
	"""
	body = resp.get("body") or {}
	content = body.get("content", "") or ""
	is_html = (body.get("contentType") or "").lower() == "html"
	labels = list(folder_labels or [])
	if resp.get("isDraft"):
		labels.append("DRAFT")
	if resp.get("isRead") is False:
		labels.append("UNREAD")
	labels.extend(resp.get("categories", []) or [])
	headers = {
		"from": _graph_recipients([resp["from"]]) if resp.get("from") else "",
		"to": _graph_recipients(resp.get("toRecipients")),
		"cc": _graph_recipients(resp.get("ccRecipients")),
		"subject": resp.get("subject", "") or "",
		"date": resp.get("receivedDateTime", "") or "",
		"message-id": resp.get("internetMessageId", "") or "",
	}
	return ParsedMessage(
		id=resp["id"],
		thread_id=resp.get("conversationId") or resp["id"],
		headers=headers,
		text_plain="" if is_html else content,
		text_html=content if is_html else "",
		snippet=resp.get("bodyPreview", "") or "",
		label_ids=labels,
		internal_date=resp.get("receivedDateTime"),
	)
