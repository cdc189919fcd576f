from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import load_config
from .logging_config import setup_logging
from .services import Services, build_services

logger = logging.getLogger(__name__)


def _secret_matches(expected: str, given: Optional[str]) -> bool:
	if not expected or given is None:
		return False
	return hmac.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


def decode_pubsub_data(payload: Dict[str, Any]) -> Dict[str, Any]:
	try:
		data = payload["message"]["data"]
		decoded = json.loads(base64.b64decode(data).decode("utf-8"))
	except (KeyError, TypeError, ValueError, binascii.Error) as e:
		raise HTTPException(status_code=400, detail=f"Malformed Pub/Sub message: {e}")
	if not isinstance(decoded, dict) or "emailAddress" not in decoded or "historyId" not in decoded:
		raise HTTPException(status_code=400, detail="Pub/Sub message lacks emailAddress or historyId")
	return decoded


def create_app(services: Services) -> FastAPI:
	@asynccontextmanager
	async def lifespan(app: FastAPI) -> AsyncIterator[None]:
		yield
		services.shutdown()

	app = FastAPI(title="Inbox Automation", lifespan=lifespan)
	app.state.services = services
	config = services.config

	@app.get("/health")
	async def health():
		try:
			redis_ok = bool(services.redis.ping())
		except Exception as e:
			logger.warning("Redis ping failed: %s", e)
			redis_ok = False
		status = "ok" if redis_ok else "degraded"
		return JSONResponse({"status": status, "redis": redis_ok}, status_code=200 if redis_ok else 503)

	@app.post("/api/google/webhook")
	async def google_webhook(request: Request):
		if not _secret_matches(config.google_pubsub_verification_token, request.query_params.get("token")):
			raise HTTPException(status_code=403, detail="Invalid verification token")
		try:
			payload = await request.json()
		except ValueError:
			raise HTTPException(status_code=400, detail="Body is not JSON")
		data = decode_pubsub_data(payload)
		mailbox = services.store.find_mailbox_by_email(str(data["emailAddress"]))
		if mailbox is None:
			# acknowledge so Pub/Sub stops redelivering
			logger.warning("Notification for unknown mailbox %s", data["emailAddress"])
			return {"ok": True, "ignored": "unknown mailbox"}
		services.dispatcher.submit_job(mailbox.id, services.history.process_notification, mailbox, str(data["historyId"]))
		return {"ok": True}

	@app.post("/api/outlook/webhook")
	async def outlook_webhook(request: Request):
		validation_token = request.query_params.get("validationToken")
		if validation_token is not None:
			return PlainTextResponse(validation_token)
		try:
			payload = await request.json()
		except ValueError:
			raise HTTPException(status_code=400, detail="Body is not JSON")
		notifications = payload.get("value") if isinstance(payload, dict) else None
		if not isinstance(notifications, list) or not all(isinstance(n, dict) for n in notifications):
			raise HTTPException(status_code=400, detail="Expected a list of notifications")

		for notification in notifications:
			if not _secret_matches(config.outlook_client_state, notification.get("clientState")):
				raise HTTPException(status_code=403, detail="Invalid clientState")

		queued = set()
		for notification in notifications:
			subscription_id = notification.get("subscriptionId")
			mailbox_id = services.cursors.mailbox_for_subscription(subscription_id) if subscription_id else None
			mailbox = services.store.get_mailbox(mailbox_id) if mailbox_id else None
			if mailbox is None:
				logger.warning("Notification for unknown subscription %s", subscription_id)
				continue
			if mailbox.id in queued:
				continue
			queued.add(mailbox.id)
			services.dispatcher.submit_job(mailbox.id, services.history.process_notification, mailbox, None)
		return JSONResponse({"ok": True, "queued": len(queued)}, status_code=202)

	return app


def create_default_app() -> FastAPI:
	"""Factory for ``uvicorn --factory``: wires real services from the environment."""
	config = load_config()
	setup_logging(config.log_level)
	return create_app(build_services(config))
