import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

from .errors import ConfigError

# longest single backoff between retries of a model call and of a provider call
MAX_BACKOFF_SECONDS = 20.0
PROVIDER_MAX_BACKOFF_SECONDS = 8.0


@dataclass
class AppConfig:
	gemini_api_key: str = ""
	gemini_model: str = "gemini-1.5-flash"
	redis_url: str = "redis://localhost:6379/0"
	database_path: str = "inbox_automation.db"
	google_pubsub_verification_token: str = ""
	google_pubsub_topic: str = ""
	outlook_client_id: str = ""
	outlook_client_secret: str = ""
	outlook_client_state: str = ""
	outlook_notification_url: str = ""
	processing_lock_ttl_seconds: int = 180
	mailbox_lock_ttl_seconds: int = 120
	classifier_timeout_seconds: float = 30.0
	classifier_max_attempts: int = 3
	classifier_retry_seconds: float = 45.0
	classifier_rate_wait_seconds: float = 20.0
	provider_timeout_seconds: float = 8.0
	provider_max_attempts: int = 3
	webhook_timeout_seconds: float = 10.0
	min_draft_confidence: float = 0.5
	max_requests_per_minute: int = 60
	max_email_chars: int = 6000
	worker_count: int = 8
	mailbox_concurrency: int = 3
	history_max_gap: int = 500
	watch_renewal_window_hours: int = 24
	default_cooldown_seconds: int = 30
	log_level: str = "INFO"
	dry_run: bool = False

	@property
	def classifier_budget_seconds(self) -> float:
		"""Longest one classifier call can take: the rate limiter wait, the
		retry window, one more backoff and a final request."""
		return self.classifier_rate_wait_seconds + self.classifier_retry_seconds + MAX_BACKOFF_SECONDS + self.classifier_timeout_seconds

	@property
	def provider_call_budget_seconds(self) -> float:
		attempts = max(1, self.provider_max_attempts)
		return attempts * self.provider_timeout_seconds + (attempts - 1) * PROVIDER_MAX_BACKOFF_SECONDS

	def validate(self) -> "AppConfig":
		needed = self.classifier_budget_seconds + self.provider_call_budget_seconds
		if self.processing_lock_ttl_seconds <= needed:
			raise ConfigError(
				f"PROCESSING_LOCK_TTL_SECONDS={self.processing_lock_ttl_seconds} must exceed {needed:.0f}s, "
				"the longest classifier call plus the longest provider call"
			)
		return self


def _env_bool(value: Optional[str], default: bool) -> bool:
	if value is None:
		return default
	return value.strip().lower() in {"1", "true", "yes", "y"}


def load_config() -> AppConfig:
	load_dotenv()
	return AppConfig(
		gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
		gemini_model=os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
		redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
		database_path=os.getenv("DATABASE_PATH", "inbox_automation.db"),
		google_pubsub_verification_token=os.getenv("GOOGLE_PUBSUB_VERIFICATION_TOKEN", ""),
		google_pubsub_topic=os.getenv("GOOGLE_PUBSUB_TOPIC", ""),
		outlook_client_id=os.getenv("OUTLOOK_CLIENT_ID", ""),
		outlook_client_secret=os.getenv("OUTLOOK_CLIENT_SECRET", ""),
		outlook_client_state=os.getenv("OUTLOOK_CLIENT_STATE", ""),
		outlook_notification_url=os.getenv("OUTLOOK_NOTIFICATION_URL", ""),
		processing_lock_ttl_seconds=int(os.getenv("PROCESSING_LOCK_TTL_SECONDS", "180")),
		mailbox_lock_ttl_seconds=int(os.getenv("MAILBOX_LOCK_TTL_SECONDS", "120")),
		classifier_timeout_seconds=float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "30")),
		classifier_max_attempts=int(os.getenv("CLASSIFIER_MAX_ATTEMPTS", "3")),
		classifier_retry_seconds=float(os.getenv("CLASSIFIER_RETRY_SECONDS", "45")),
		classifier_rate_wait_seconds=float(os.getenv("CLASSIFIER_RATE_WAIT_SECONDS", "20")),
		provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "8")),
		provider_max_attempts=int(os.getenv("PROVIDER_MAX_ATTEMPTS", "3")),
		webhook_timeout_seconds=float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10")),
		min_draft_confidence=float(os.getenv("MIN_DRAFT_CONFIDENCE", "0.5")),
		max_requests_per_minute=int(os.getenv("MAX_REQUESTS_PER_MINUTE", "60")),
		max_email_chars=int(os.getenv("MAX_EMAIL_CHARS", "6000")),
		worker_count=int(os.getenv("WORKER_COUNT", "8")),
		mailbox_concurrency=int(os.getenv("MAILBOX_CONCURRENCY", "3")),
		history_max_gap=int(os.getenv("HISTORY_MAX_GAP", "500")),
		watch_renewal_window_hours=int(os.getenv("WATCH_RENEWAL_WINDOW_HOURS", "24")),
		default_cooldown_seconds=int(os.getenv("DEFAULT_COOLDOWN_SECONDS", "30")),
		log_level=os.getenv("LOG_LEVEL", "INFO"),
		dry_run=_env_bool(os.getenv("DRY_RUN"), False),
	)
