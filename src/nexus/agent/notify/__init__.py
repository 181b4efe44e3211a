"""Approval notification channels."""

from .webhook import WebhookNotifyChannel

__all__ = ["WebhookNotifyChannel"]
