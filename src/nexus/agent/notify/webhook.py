"""
Webhook notification channel.

Posts approval notifications as JSON to an HTTP endpoint. The receiver
decides out of band and calls back through POST /api/agent/approvals/{id}.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..domain.entities import ApprovalNotification
from ..domain.ports import INotifyChannel

logger = logging.getLogger(__name__)


class WebhookNotifyChannel(INotifyChannel):
    """Approval channel that POSTs to a webhook URL.

    Usage:
        channel = WebhookNotifyChannel("https://hooks.example.com/approvals")
        approvals = ApprovalManager(channels=[channel])

    Payload:
        {"event": "approval_requested", "approval_id": ..., "session_id": ...,
         "tool_name": ..., "params_summary": ..., "expires_at": ...}
    """

    def __init__(
        self,
        url: str,
        name: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the webhook channel.

        Args:
            url: Endpoint receiving notifications
            name: Channel name for audit entries (default: webhook:<host>)
            auth_token: Optional bearer token sent with each request
            timeout: Request timeout in seconds
            client: Shared HTTP client (one is created otherwise)
        """
        self.url = url
        self._name = name or f"webhook:{httpx.URL(url).host}"
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    @property
    def name(self) -> str:
        return self._name

    async def notify(self, notification: ApprovalNotification) -> None:
        """POST the notification.

        Raises:
            httpx.HTTPError: Network failure or non-2xx response
        """
        payload = {"event": "approval_requested", **notification.to_dict()}
        response = await self.client.post(self.url, json=payload)
        response.raise_for_status()
        logger.debug(
            f"Webhook {self._name} accepted approval {notification.approval_id} "
            f"({response.status_code})"
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
