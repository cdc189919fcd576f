"""Webhook-driven email rule automation for Gmail and Outlook mailboxes."""

__version__ = "0.1.0"
