from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional

import redis

from .classifier import EmailClassifier
from .config import AppConfig
from .cursor import CursorTracker
from .dispatcher import Dispatcher
from .draft_tracking import DraftTracker
from .executor import ActionExecutor
from .guard import MailboxLock, ProcessingGuard, redis_client
from .health import DeferredQueue, MailboxHealth
from .models import Mailbox
from .pipeline import HistoryProcessor, MessageProcessor
from .providers import EmailProvider, create_provider
from .rate_limiter import RateLimiter
from .storage import SqliteStore
from .watch import WatchRenewer
from .webhooks import WebhookSender


@dataclass
class Services:
	config: AppConfig
	redis: redis.Redis
	store: SqliteStore
	health: MailboxHealth
	deferred: DeferredQueue
	cursors: CursorTracker
	dispatcher: Dispatcher
	processor: MessageProcessor
	history: HistoryProcessor
	renewer: WatchRenewer
	webhooks: WebhookSender

	def shutdown(self) -> None:
		self.dispatcher.shutdown()
		self.webhooks.shutdown()
		self.store.close()


def build_services(
	config: AppConfig,
	client: Optional[redis.Redis] = None,
	store: Optional[SqliteStore] = None,
	classifier: Optional[EmailClassifier] = None,
	provider_factory: Optional[Callable[[Mailbox], EmailProvider]] = None,
) -> Services:
	"""Wire every component from one config. Tests pass fakes for the outer edges."""
	config.validate()
	client = client if client is not None else redis_client(config.redis_url)
	store = store or SqliteStore(config.database_path)
	provider_factory = provider_factory or partial(create_provider, config=config)
	if classifier is None and config.gemini_api_key:
		classifier = EmailClassifier(
			config.gemini_api_key,
			model_name=config.gemini_model,
			timeout=config.classifier_timeout_seconds,
			rate_limiter=RateLimiter(max_requests=config.max_requests_per_minute, time_window=60),
			min_draft_confidence=config.min_draft_confidence,
			max_email_chars=config.max_email_chars,
			max_attempts=config.classifier_max_attempts,
			retry_seconds=config.classifier_retry_seconds,
			rate_wait_seconds=config.classifier_rate_wait_seconds,
		)

	health = MailboxHealth(client, default_cooldown_seconds=config.default_cooldown_seconds)
	deferred = DeferredQueue(client)
	cursors = CursorTracker(client, MailboxLock(client, ttl_seconds=config.mailbox_lock_ttl_seconds), max_gap=config.history_max_gap)
	dispatcher = Dispatcher(worker_count=config.worker_count, mailbox_concurrency=config.mailbox_concurrency)
	webhooks = WebhookSender(timeout=config.webhook_timeout_seconds)
	executor = ActionExecutor(store, health, webhook_sender=webhooks, dry_run=config.dry_run)
	processor = MessageProcessor(
		store,
		ProcessingGuard(client, ttl_seconds=config.processing_lock_ttl_seconds),
		executor,
		provider_factory,
		classifier=classifier,
		draft_tracker=DraftTracker(store),
	)
	history = HistoryProcessor(store, cursors, processor, dispatcher, health, deferred, provider_factory)
	renewer = WatchRenewer(store, cursors, provider_factory, health, window_hours=config.watch_renewal_window_hours)
	return Services(
		config=config,
		redis=client,
		store=store,
		health=health,
		deferred=deferred,
		cursors=cursors,
		dispatcher=dispatcher,
		processor=processor,
		history=history,
		renewer=renewer,
		webhooks=webhooks,
	)
