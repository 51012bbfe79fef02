"""Tests for notification transports and the notifier registry."""

import json

import httpx
import pytest

from git_gateway.config import settings
from git_gateway.errors import ConflictError, DependencyError, ValidationError
from git_gateway.webhooks.notifications import (
    DingTalkNotifier,
    Notification,
    NotificationManager,
    SlackNotifier,
    WebhookNotifier,
    default_notification_manager,
)


def make_client(requests, status_code=200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def notification(type_="slack", recipients=None) -> Notification:
    return Notification(
        type=type_,
        recipients=list(recipients or []),
        subject="Build started",
        body="Pipeline build is running",
        metadata={"event_id": "e1"},
    )


class TestNotificationManager:
    def test_duplicate_registration(self):
        manager = NotificationManager()
        manager.register(SlackNotifier("https://hooks.slack.test/x"))

        with pytest.raises(ConflictError):
            manager.register(SlackNotifier("https://hooks.slack.test/y"))

    @pytest.mark.asyncio
    async def test_unknown_type(self):
        with pytest.raises(ValidationError):
            await NotificationManager().send(notification("pager"))

    @pytest.mark.asyncio
    async def test_unconfigured_type(self):
        manager = NotificationManager()
        manager.register(SlackNotifier(None))

        with pytest.raises(DependencyError):
            await manager.send(notification())

    @pytest.mark.asyncio
    async def test_send_multiple_collects_errors(self):
        requests = []
        manager = NotificationManager()
        manager.register(SlackNotifier("https://hooks.slack.test/x", make_client(requests)))

        results = await manager.send_multiple([notification(), notification("pager")])

        assert results[0] is None
        assert "unknown notification type" in results[1]
        assert len(requests) == 1

    def test_default_manager_availability(self, monkeypatch):
        monkeypatch.setattr(settings, "smtp_host", None)
        monkeypatch.setattr(settings, "slack_webhook_url", "https://hooks.slack.test/x")
        monkeypatch.setattr(settings, "dingtalk_webhook_url", None)
        monkeypatch.setattr(settings, "wechat_webhook_url", None)

        manager = default_notification_manager()

        assert manager.available_types() == ["slack", "webhook"]


class TestTransports:
    @pytest.mark.asyncio
    async def test_slack_payload(self):
        requests = []
        notifier = SlackNotifier("https://hooks.slack.test/x", make_client(requests))

        await notifier.send(notification())

        body = json.loads(requests[0].content)
        assert body == {"text": "*Build started*\nPipeline build is running"}

    @pytest.mark.asyncio
    async def test_dingtalk_mentions_recipients(self):
        requests = []
        notifier = DingTalkNotifier("https://oapi.dingtalk.test/x", make_client(requests))

        await notifier.send(notification("dingtalk", ["13800000000"]))

        body = json.loads(requests[0].content)
        assert body["msgtype"] == "text"
        assert body["at"]["atMobiles"] == ["13800000000"]

    @pytest.mark.asyncio
    async def test_rejected_post_raises(self):
        notifier = SlackNotifier("https://hooks.slack.test/x", make_client([], status_code=500))

        with pytest.raises(DependencyError):
            await notifier.send(notification())

    @pytest.mark.asyncio
    async def test_webhook_posts_to_each_recipient(self):
        requests = []
        notifier = WebhookNotifier(None, make_client(requests))

        await notifier.send(notification("webhook", ["https://a.test/h", "https://b.test/h"]))

        assert [r.url.host for r in requests] == ["a.test", "b.test"]
        assert json.loads(requests[0].content)["metadata"] == {"event_id": "e1"}

    @pytest.mark.asyncio
    async def test_webhook_requires_recipients(self):
        with pytest.raises(ValidationError):
            await WebhookNotifier().send(notification("webhook"))
