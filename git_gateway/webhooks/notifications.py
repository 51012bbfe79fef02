"""
Notification transports used by the send_notification trigger action.
"""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..config import get_settings
from ..errors import ConflictError, DependencyError, ValidationError
from .enums import NotificationType

logger = structlog.get_logger()


@dataclass
class Notification:
    type: str
    recipients: List[str]
    subject: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    """A single notification transport."""

    type: str = ""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the transport is configured."""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver ``notification`` or raise."""


class HttpNotifier(Notifier):
    """Base for transports that post JSON over HTTP."""

    def __init__(self, url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.client = client

    def is_available(self) -> bool:
        return bool(self.url)

    def payload(self, notification: Notification) -> Dict[str, Any]:
        return {"text": f"{notification.subject}\n\n{notification.body}"}

    async def _post(self, url: str, payload: Dict[str, Any]) -> None:
        timeout = get_settings().webhook_timeout
        if self.client is not None:
            response = await self.client.post(url, json=payload, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, json=payload)
        if response.status_code >= 300:
            raise DependencyError(
                f"{self.type} notification rejected with HTTP {response.status_code}"
            )

    async def send(self, notification: Notification) -> None:
        await self._post(self.url, self.payload(notification))


class SlackNotifier(HttpNotifier):
    type = NotificationType.SLACK.value

    def payload(self, notification: Notification) -> Dict[str, Any]:
        return {"text": f"*{notification.subject}*\n{notification.body}"}


class DingTalkNotifier(HttpNotifier):
    type = NotificationType.DINGTALK.value

    def payload(self, notification: Notification) -> Dict[str, Any]:
        return {
            "msgtype": "text",
            "text": {"content": f"{notification.subject}\n{notification.body}"},
            "at": {"atMobiles": notification.recipients, "isAtAll": False},
        }


class WeChatNotifier(HttpNotifier):
    type = NotificationType.WECHAT.value

    def payload(self, notification: Notification) -> Dict[str, Any]:
        return {
            "msgtype": "text",
            "text": {
                "content": f"{notification.subject}\n{notification.body}",
                "mentioned_list": notification.recipients,
            },
        }


class WebhookNotifier(HttpNotifier):
    """Posts the notification to every recipient URL."""

    type = NotificationType.WEBHOOK.value

    def is_available(self) -> bool:
        return True

    async def send(self, notification: Notification) -> None:
        if not notification.recipients:
            raise ValidationError("webhook notification needs at least one recipient URL")
        payload = {
            "subject": notification.subject,
            "body": notification.body,
            "metadata": notification.metadata,
        }
        for url in notification.recipients:
            await self._post(url, payload)


class EmailNotifier(Notifier):
    type = NotificationType.EMAIL.value

    def is_available(self) -> bool:
        return bool(get_settings().smtp_host)

    def _send_sync(self, notification: Notification) -> None:
        settings = get_settings()
        message = EmailMessage()
        message["Subject"] = notification.subject
        message["From"] = settings.smtp_from
        message["To"] = ", ".join(notification.recipients)
        message.set_content(notification.body)

        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as smtp:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls()
                smtp.ehlo()
            if settings.smtp_username:
                smtp.login(settings.smtp_username, settings.smtp_password or "")
            smtp.send_message(message)

    async def send(self, notification: Notification) -> None:
        if not notification.recipients:
            raise ValidationError("email notification needs at least one recipient")
        await asyncio.to_thread(self._send_sync, notification)


class NotificationManager:
    """Registry of notifiers keyed by type."""

    def __init__(self) -> None:
        self._notifiers: Dict[str, Notifier] = {}

    def register(self, notifier: Notifier) -> None:
        if notifier.type in self._notifiers:
            raise ConflictError(f"notifier {notifier.type} already registered")
        self._notifiers[notifier.type] = notifier

    def available_types(self) -> List[str]:
        return sorted(t for t, n in self._notifiers.items() if n.is_available())

    async def send(self, notification: Notification) -> None:
        notifier = self._notifiers.get(notification.type)
        if notifier is None:
            raise ValidationError(f"unknown notification type: {notification.type}")
        if not notifier.is_available():
            raise DependencyError(f"notification type {notification.type} is not configured")
        await notifier.send(notification)
        logger.info(
            "notification sent",
            notification_type=notification.type,
            recipients=len(notification.recipients),
        )

    async def send_multiple(self, notifications: List[Notification]) -> List[Optional[str]]:
        """Send each notification; returns one error string (or None) per item."""
        results: List[Optional[str]] = []
        for notification in notifications:
            try:
                await self.send(notification)
                results.append(None)
            except Exception as exc:
                logger.warning(
                    "notification failed",
                    notification_type=notification.type,
                    error=str(exc),
                )
                results.append(str(exc))
        return results


def default_notification_manager(client: Optional[httpx.AsyncClient] = None) -> NotificationManager:
    """Manager with every built-in transport registered from settings."""
    settings = get_settings()
    manager = NotificationManager()
    manager.register(EmailNotifier())
    manager.register(SlackNotifier(settings.slack_webhook_url, client))
    manager.register(WebhookNotifier(None, client))
    manager.register(DingTalkNotifier(settings.dingtalk_webhook_url, client))
    manager.register(WeChatNotifier(settings.wechat_webhook_url, client))
    return manager
