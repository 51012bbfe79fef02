"""
Trigger actions.

Each action runs independently: a failure is reported in its ActionResult
and never stops the actions after it.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from string import Template
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx
import structlog
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.models import WebhookEventModel, WebhookTriggerModel, utc_now
from ..db.services import WebhookDeliveryService
from .enums import PUSH_EVENTS, TAG_EVENTS, DeliveryStatus, EventType
from .ingress import compute_signature
from .matching import head_commit, pull_request_target, strip_ref
from .notifications import Notification, NotificationManager

logger = structlog.get_logger()

USER_AGENT = "GitGateway-Webhook/1.0"
PIPELINE_PATH = "/api/v1/webhook-events/trigger-pipeline"
MAX_STORED_RESPONSE = 65536

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class ActionResult:
    """Result of one action execution."""

    success: bool
    action_name: str
    started_at: datetime
    completed_at: datetime
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class ActionContext:
    event: WebhookEventModel
    trigger: WebhookTriggerModel
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> Dict[str, Any]:
        return self.event.event_data or {}

    @property
    def timestamp(self) -> str:
        return self.event.created_at.isoformat() if self.event.created_at else ""


class TriggerAction(ABC):
    """Base class for actions a trigger can run."""

    name: str = ""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client
        self.settings = get_settings()

    async def run(self, context: ActionContext) -> ActionResult:
        started_at = utc_now()
        log = logger.bind(
            action=self.name,
            event_id=str(context.event.id),
            trigger_id=str(context.trigger.id),
        )
        try:
            result = await self.execute(context)
        except Exception as exc:
            log.warning("trigger action failed", error=str(exc))
            return ActionResult(
                success=False,
                action_name=self.name,
                started_at=started_at,
                completed_at=utc_now(),
                error=f"{self.name}: {exc}",
            )
        log.info("trigger action completed")
        return ActionResult(
            success=True,
            action_name=self.name,
            started_at=started_at,
            completed_at=utc_now(),
            result=result,
        )

    @abstractmethod
    async def execute(self, context: ActionContext) -> Dict[str, Any]:
        """Perform the action; raise on failure."""


# =============================================================================
# start_pipeline
# =============================================================================


def _stringify(values: Mapping[str, Any]) -> Dict[str, str]:
    return {k: str(v) for k, v in values.items() if v is not None and v != ""}


def push_variables(payload: Mapping[str, Any]) -> Dict[str, str]:
    ref = str(payload.get("ref") or "")
    head = head_commit(payload) or {}
    author = head.get("author") if isinstance(head.get("author"), Mapping) else {}
    return _stringify(
        {
            "GIT_REF": ref,
            "GIT_BEFORE": payload.get("before"),
            "GIT_AFTER": payload.get("after"),
            "GIT_BRANCH": strip_ref(ref),
            "GIT_COMMIT_SHA": head.get("id") or head.get("sha") or payload.get("after"),
            "GIT_COMMIT_MESSAGE": head.get("message"),
            "GIT_AUTHOR_NAME": author.get("name") or head.get("author_name"),
            "GIT_AUTHOR_EMAIL": author.get("email") or head.get("author_email"),
        }
    )


def pull_request_variables(payload: Mapping[str, Any]) -> Dict[str, str]:
    pr = payload.get("pull_request") or payload.get("object_attributes") or {}
    head = pr.get("head") if isinstance(pr.get("head"), Mapping) else {}
    return _stringify(
        {
            "PULL_REQUEST_NUMBER": pr.get("number") or pr.get("iid") or payload.get("number"),
            "PULL_REQUEST_ACTION": payload.get("action") or pr.get("action"),
            "PULL_REQUEST_TITLE": pr.get("title"),
            "PULL_REQUEST_BASE_REF": pull_request_target(payload),
            "PULL_REQUEST_HEAD_REF": head.get("ref") or pr.get("source_branch"),
        }
    )


def pipeline_variables(event: WebhookEventModel, configured: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Base variables, then the trigger's, then the event-specific ones."""
    variables = {
        "WEBHOOK_EVENT_ID": str(event.id),
        "WEBHOOK_EVENT_TYPE": event.event_type,
        "WEBHOOK_SOURCE": event.source,
        "REPOSITORY_ID": str(event.repository_id),
    }
    variables.update({k: str(v) for k, v in (configured or {}).items()})
    payload = event.event_data or {}
    if event.event_type in PUSH_EVENTS:
        variables.update(push_variables(payload))
    elif event.event_type == EventType.PULL_REQUEST.value:
        variables.update(pull_request_variables(payload))
    return variables


class StartPipelineAction(TriggerAction):
    name = "start_pipeline"

    async def execute(self, context: ActionContext) -> Dict[str, Any]:
        config = context.config
        if not config.get("pipeline_id"):
            raise ValueError("pipeline_id is required")
        request = {
            "repository_id": str(context.event.repository_id),
            "pipeline_id": config["pipeline_id"],
            "variables": pipeline_variables(context.event, config.get("variables")),
            "environment": config.get("environment"),
            "parameters": config.get("parameters") or {},
        }
        url = self.settings.cicd_service_url.rstrip("/") + PIPELINE_PATH
        response = await self.client.post(url, json=request, timeout=self.settings.webhook_timeout)
        if not 200 <= response.status_code < 300:
            raise RuntimeError(f"pipeline service returned HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            body = {}
        return {"pipeline_id": config["pipeline_id"], "response": body}


# =============================================================================
# send_notification
# =============================================================================


def _template_value(value: Any) -> str:
    if isinstance(value, Mapping):
        return str(value.get("full_name") or value.get("name") or json.dumps(value, default=str))
    if isinstance(value, (list, tuple)):
        return json.dumps(value, default=str)
    return "" if value is None else str(value)


def template_variables(context: ActionContext) -> Dict[str, str]:
    variables = {k: _template_value(v) for k, v in context.payload.items()}
    variables.update(
        {
            "event_id": str(context.event.id),
            "event_type": context.event.event_type,
            "timestamp": context.timestamp,
        }
    )
    return variables


def default_subject(event_type: str) -> str:
    if event_type == EventType.PUSH.value:
        return "[Git] Push to repository ${repository}"
    if event_type == EventType.PULL_REQUEST.value:
        return "[Git] Pull Request ${action} in ${repository}"
    if event_type in TAG_EVENTS:
        return "[Git] New tag in repository ${repository}"
    return f"[Git] Event {event_type} occurred"


def default_body(context: ActionContext) -> str:
    lines = [
        f"Event Type: {context.event.event_type}",
        f"Event ID: {context.event.id}",
        f"Timestamp: {context.timestamp}",
        "",
        "Event Details:",
    ]
    lines.extend(f"- {k}: {_template_value(v)}" for k, v in context.payload.items())
    return "\n".join(lines)


class SendNotificationAction(TriggerAction):
    name = "send_notification"

    def __init__(self, client: httpx.AsyncClient, notifications: NotificationManager):
        super().__init__(client)
        self.notifications = notifications

    async def execute(self, context: ActionContext) -> Dict[str, Any]:
        config = context.config
        variables = template_variables(context)
        subject = Template(
            config.get("subject") or default_subject(context.event.event_type)
        ).safe_substitute(variables)
        body = (
            Template(config["template"]).safe_substitute(variables)
            if config.get("template")
            else default_body(context)
        )
        notification = Notification(
            type=config.get("type") or "webhook",
            recipients=list(config.get("recipients") or []),
            subject=subject,
            body=body,
            metadata={"event_id": str(context.event.id), "trigger_id": str(context.trigger.id)},
        )
        await self.notifications.send(notification)
        return {"type": notification.type, "subject": subject}


# =============================================================================
# call_webhook
# =============================================================================


class CallWebhookAction(TriggerAction):
    name = "call_webhook"

    def __init__(self, client: httpx.AsyncClient, db: Session, sleep: Sleep = asyncio.sleep):
        super().__init__(client)
        self.deliveries = WebhookDeliveryService(db)
        self.sleep = sleep

    def build_body(self, context: ActionContext) -> bytes:
        payload = {
            "event_id": str(context.event.id),
            "event_type": context.event.event_type,
            "timestamp": context.timestamp,
            "data": context.payload,
        }
        payload.update(context.config.get("body") or {})
        return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")

    def build_headers(self, context: ActionContext, body: bytes) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        headers.update({str(k): str(v) for k, v in (context.config.get("headers") or {}).items()})
        secret = context.config.get("secret")
        if secret:
            headers["X-Webhook-Signature"] = compute_signature(secret, body)
        return headers

    async def execute(self, context: ActionContext) -> Dict[str, Any]:
        config = context.config
        url = config.get("url")
        if not url:
            raise ValueError("url is required")
        method = (config.get("method") or "POST").upper()
        body = self.build_body(context)
        headers = self.build_headers(context, body)
        max_attempts = max(self.settings.webhook_max_attempts, 1)
        backoff = self.settings.webhook_retry_backoff

        last_error = ""
        for attempt in range(1, max_attempts + 1):
            started = time.monotonic()
            status_code: Optional[int] = None
            response_body: Optional[str] = None
            try:
                response = await self.client.request(
                    method, url, content=body, headers=headers, timeout=self.settings.webhook_timeout
                )
                status_code = response.status_code
                response_body = response.text[:MAX_STORED_RESPONSE]
                ok = 200 <= status_code < 300
                last_error = "" if ok else f"HTTP {status_code}"
            except httpx.HTTPError as exc:
                ok = False
                last_error = str(exc) or exc.__class__.__name__
            duration_ms = int((time.monotonic() - started) * 1000)

            delay = backoff * (2 ** (attempt - 1))
            if ok:
                status = DeliveryStatus.SUCCESS.value
            elif attempt < max_attempts:
                status = DeliveryStatus.RETRYING.value
            else:
                status = DeliveryStatus.FAILED.value

            self.deliveries.create(
                webhook_id=context.trigger.id,
                event_id=context.event.id,
                url=url,
                method=method,
                status=status,
                status_code=status_code,
                request_body=body.decode("utf-8"),
                response_body=response_body,
                duration=duration_ms,
                attempts=attempt,
                max_attempts=max_attempts,
                next_retry_at=utc_now() + timedelta(seconds=delay)
                if status == DeliveryStatus.RETRYING.value
                else None,
            )

            if ok:
                return {"status_code": status_code, "attempts": attempt}
            logger.info(
                "webhook delivery attempt failed",
                url=url,
                attempt=attempt,
                max_attempts=max_attempts,
                error=last_error,
            )
            if attempt < max_attempts:
                await self.sleep(delay)

        raise RuntimeError(f"delivery failed after {max_attempts} attempts: {last_error}")


class ActionRunner:
    """Runs the configured actions of a trigger in a fixed order."""

    ORDER = ("start_pipeline", "send_notification", "call_webhook")

    def __init__(
        self,
        db: Session,
        client: httpx.AsyncClient,
        notifications: NotificationManager,
        sleep: Sleep = asyncio.sleep,
    ):
        self.actions: Dict[str, TriggerAction] = {
            "start_pipeline": StartPipelineAction(client),
            "send_notification": SendNotificationAction(client, notifications),
            "call_webhook": CallWebhookAction(client, db, sleep),
        }

    async def run(self, trigger: WebhookTriggerModel, event: WebhookEventModel) -> List[ActionResult]:
        configured = trigger.actions or {}
        results: List[ActionResult] = []
        for name in self.ORDER:
            config = configured.get(name)
            if not config:
                continue
            context = ActionContext(event=event, trigger=trigger, config=dict(config))
            results.append(await self.actions[name].run(context))
        return results
