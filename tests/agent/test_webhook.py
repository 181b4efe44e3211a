"""
Tests for the webhook approval channel.
"""

import json
from datetime import datetime

import httpx
import pytest

from src.nexus.agent.domain.entities import ApprovalNotification, ToolCallRecord
from src.nexus.agent.notify import WebhookNotifyChannel
from src.nexus.agent.orchestrator import ApprovalManager


def notification() -> ApprovalNotification:
    return ApprovalNotification(
        approval_id="a1",
        session_id="s1",
        tool_name="delete_file",
        params_summary='{"path": "old.log"}',
        expires_at=datetime(2026, 1, 1, 12, 5, 0),
    )


def mock_client(handler, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)


class TestWebhookNotifyChannel:
    @pytest.mark.asyncio
    async def test_default_name_uses_host(self):
        channel = WebhookNotifyChannel("https://hooks.example.com/approvals")

        assert channel.name == "webhook:hooks.example.com"
        await channel.close()

    @pytest.mark.asyncio
    async def test_posts_notification(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        channel = WebhookNotifyChannel(
            "https://hooks.example.com/approvals", client=mock_client(handler)
        )

        await channel.notify(notification())

        body = json.loads(requests[0].content)
        assert requests[0].method == "POST"
        assert body["event"] == "approval_requested"
        assert body["approval_id"] == "a1"
        assert body["expires_at"] == "2026-01-01T12:05:00"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        channel = WebhookNotifyChannel(
            "https://hooks.example.com/approvals",
            client=mock_client(lambda request: httpx.Response(500)),
        )

        with pytest.raises(httpx.HTTPStatusError):
            await channel.notify(notification())

    @pytest.mark.asyncio
    async def test_auth_token_header(self):
        channel = WebhookNotifyChannel(
            "https://hooks.example.com/approvals", auth_token="hook-token"
        )
        try:
            assert channel.client.headers["Authorization"] == "Bearer hook-token"
        finally:
            await channel.close()

    @pytest.mark.asyncio
    async def test_shared_client_not_closed(self):
        client = mock_client(lambda request: httpx.Response(200))
        channel = WebhookNotifyChannel("https://hooks.example.com/a", client=client)

        await channel.close()

        assert not client.is_closed
        await client.aclose()


@pytest.mark.asyncio
async def test_failed_webhook_does_not_block_approval():
    down = WebhookNotifyChannel(
        "https://down.example.com/hook",
        client=mock_client(lambda request: httpx.Response(503)),
    )
    up = WebhookNotifyChannel(
        "https://up.example.com/hook",
        client=mock_client(lambda request: httpx.Response(200)),
    )
    approvals = ApprovalManager(channels=[down, up])
    record = ToolCallRecord(tool_name="delete_file", input_params={"path": "a"})

    approval = await approvals.request("s1", record)

    assert approval.notified_channels == ["webhook:up.example.com"]
