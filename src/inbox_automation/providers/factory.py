from __future__ import annotations

from typing import Optional

from ..config import AppConfig
from ..errors import ConfigError
from ..models import Mailbox, ProviderKind
from ..retry import RetryPolicy
from .base import EmailProvider
from .gmail import GmailProvider
from .outlook import OutlookProvider


def create_provider(mailbox: Mailbox, config: AppConfig, retry_policy: Optional[RetryPolicy] = None) -> EmailProvider:
	"""The only place that looks at ``mailbox.provider``.

	Each call builds a fresh client bound to one mailbox's credentials; callers
	own it for the duration of one job.
	"""
	policy = retry_policy or RetryPolicy(max_attempts=config.provider_max_attempts)
	if mailbox.provider == ProviderKind.GOOGLE:
		return GmailProvider.from_token_info(
			mailbox.credentials,
			email=mailbox.email,
			retry_policy=policy,
			timeout=config.provider_timeout_seconds,
			topic_name=config.google_pubsub_topic,
		)
	if mailbox.provider == ProviderKind.MICROSOFT:
		refresh_token = mailbox.credentials.get("refresh_token")
		if not refresh_token:
			raise ConfigError(f"mailbox {mailbox.id} has no Outlook refresh token")
		return OutlookProvider.from_refresh_token(
			config.outlook_client_id,
			config.outlook_client_secret,
			refresh_token,
			email=mailbox.email,
			retry_policy=policy,
			timeout=config.provider_timeout_seconds,
			notification_url=config.outlook_notification_url,
			client_state=config.outlook_client_state,
		)
	raise ConfigError(f"unknown provider {mailbox.provider!r}")
