"""Tests for the webhook trigger engine and its actions."""

import asyncio
import json
import uuid
from datetime import timedelta
from typing import List

import httpx
import pytest

from git_gateway.config import settings
from git_gateway.db.models import utc_now
from git_gateway.db.services import (
    RepositoryService,
    WebhookDeliveryService,
    WebhookEventService,
    WebhookTriggerService,
)
from git_gateway.errors import ConflictError, ValidationError
from git_gateway.webhooks.engine import WebhookEngine
from git_gateway.webhooks.ingress import compute_signature
from git_gateway.webhooks.notifications import Notification, NotificationManager, Notifier


class RecordingNotifier(Notifier):
    type = "webhook"

    def __init__(self) -> None:
        self.sent: List[Notification] = []

    def is_available(self) -> bool:
        return True

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)


class RecordingTransport:
    """Collects requests and answers with a fixed status."""

    def __init__(self, status_code: int = 200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {"status": "queued"}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


def push_payload(branch: str = "main") -> dict:
    return {
        "ref": f"refs/heads/{branch}",
        "before": "0" * 40,
        "after": "b" * 40,
        "repository": {"name": "svc", "full_name": "acme/svc"},
        "commits": [
            {
                "id": "b" * 40,
                "message": "Add endpoint",
                "author": {"name": "Dev", "email": "dev@example.com"},
                "added": ["src/api.py"],
                "modified": [],
                "removed": [],
            }
        ],
    }


@pytest.fixture
def repository(db_session):
    return RepositoryService(db_session).create(
        project_id=uuid.uuid4(), name="svc", git_path="/tmp/git-gateway-tests/svc.git"
    )


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_engine(db_session, sleeps):
    notifier = RecordingNotifier()
    notifications = NotificationManager()
    notifications.register(notifier)

    async def no_sleep(delay: float) -> None:
        sleeps.append(delay)

    def build(transport, timeout=None) -> WebhookEngine:
        client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
        engine = WebhookEngine(
            db_session, client=client, notifications=notifications, sleep=no_sleep, timeout=timeout
        )
        engine.notifier = notifier
        return engine

    return build


def add_trigger(db_session, repository, actions, conditions=None, event_types=("push",)):
    return WebhookTriggerService(db_session).create(
        repository.id,
        "ci",
        list(event_types),
        conditions=conditions or {},
        actions=actions,
    )


def add_event(db_session, repository, branch="main", event_type="push"):
    return WebhookEventService(db_session).create(repository.id, event_type, push_payload(branch))


class TestStartPipeline:
    """A matching push starts a pipeline with the push variables."""

    @pytest.mark.asyncio
    async def test_push_starts_pipeline(self, db_session, repository, make_engine):
        trigger = add_trigger(
            db_session,
            repository,
            {"start_pipeline": {"pipeline_id": "build", "variables": {"TARGET": "prod"}}},
            conditions={"branches": ["^main$"]},
        )
        event = add_event(db_session, repository)
        transport = RecordingTransport()

        outcome = await make_engine(transport).process_event(event.id)

        assert outcome.processed is True
        assert outcome.matched_triggers == [str(trigger.id)]
        assert outcome.errors == []

        request = transport.requests[0]
        assert request.url.path == "/api/v1/webhook-events/trigger-pipeline"
        body = json.loads(request.content)
        assert body["pipeline_id"] == "build"
        assert body["variables"]["GIT_BRANCH"] == "main"
        assert body["variables"]["GIT_COMMIT_SHA"] == "b" * 40
        assert body["variables"]["TARGET"] == "prod"
        assert body["variables"]["WEBHOOK_EVENT_ID"] == str(event.id)

        stored = WebhookEventService(db_session).get(event.id)
        assert stored.processed is True
        assert stored.processed_at is not None
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_non_matching_branch_fires_nothing(self, db_session, repository, make_engine):
        add_trigger(
            db_session,
            repository,
            {"start_pipeline": {"pipeline_id": "build"}},
            conditions={"branches": ["^main$"]},
        )
        event = add_event(db_session, repository, branch="develop")
        transport = RecordingTransport()

        outcome = await make_engine(transport).process_event(event.id)

        assert outcome.processed is True
        assert outcome.matched_triggers == []
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_pipeline_failure_is_recorded(self, db_session, repository, make_engine):
        add_trigger(db_session, repository, {"start_pipeline": {"pipeline_id": "build"}})
        event = add_event(db_session, repository)

        outcome = await make_engine(RecordingTransport(status_code=503)).process_event(event.id)

        assert outcome.processed is True
        assert "HTTP 503" in outcome.errors[0]
        stored = WebhookEventService(db_session).get(event.id)
        assert stored.error_message.startswith("processing errors: ")


class TestCallWebhook:
    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, db_session, repository, make_engine, sleeps, monkeypatch):
        monkeypatch.setattr(settings, "webhook_max_attempts", 3)
        monkeypatch.setattr(settings, "webhook_retry_backoff", 1.0)
        add_trigger(db_session, repository, {"call_webhook": {"url": "https://hooks.example.com/x"}})
        event = add_event(db_session, repository)
        transport = RecordingTransport(status_code=500)

        outcome = await make_engine(transport).process_event(event.id)

        assert len(transport.requests) == 3
        assert sleeps == [1.0, 2.0]
        assert "delivery failed after 3 attempts" in outcome.errors[0]

        deliveries = WebhookDeliveryService(db_session).for_event(event.id)
        assert [d.status for d in deliveries] == ["retrying", "retrying", "failed"]
        assert [d.attempts for d in deliveries] == [1, 2, 3]
        assert deliveries[0].next_retry_at is not None
        assert deliveries[-1].next_retry_at is None
        assert deliveries[-1].status_code == 500

    @pytest.mark.asyncio
    async def test_signed_delivery(self, db_session, repository, make_engine):
        add_trigger(
            db_session,
            repository,
            {
                "call_webhook": {
                    "url": "https://hooks.example.com/x",
                    "secret": "shh",
                    "headers": {"X-Team": "platform"},
                    "body": {"source": "gateway"},
                }
            },
        )
        event = add_event(db_session, repository)
        transport = RecordingTransport()

        outcome = await make_engine(transport).process_event(event.id)

        assert outcome.errors == []
        request = transport.requests[0]
        assert request.headers["X-Webhook-Signature"] == compute_signature("shh", request.content)
        assert request.headers["X-Team"] == "platform"
        assert request.headers["User-Agent"] == "GitGateway-Webhook/1.0"
        body = json.loads(request.content)
        assert body["event_type"] == "push"
        assert body["source"] == "gateway"

        deliveries = WebhookDeliveryService(db_session).for_event(event.id)
        assert [d.status for d in deliveries] == ["success"]


class TestSendNotification:
    @pytest.mark.asyncio
    async def test_templated_subject(self, db_session, repository, make_engine):
        add_trigger(
            db_session,
            repository,
            {
                "send_notification": {
                    "type": "webhook",
                    "recipients": ["https://chat.example.com/hook"],
                    "subject": "Push to ${repository} on ${ref}",
                }
            },
        )
        event = add_event(db_session, repository)
        engine = make_engine(RecordingTransport())

        outcome = await engine.process_event(event.id)

        assert outcome.errors == []
        sent = engine.notifier.sent[0]
        assert sent.subject == "Push to acme/svc on refs/heads/main"
        assert "Event Type: push" in sent.body
        assert sent.metadata["event_id"] == str(event.id)

    @pytest.mark.asyncio
    async def test_action_failure_does_not_stop_others(self, db_session, repository, make_engine):
        add_trigger(
            db_session,
            repository,
            {
                "send_notification": {"type": "slack"},
                "call_webhook": {"url": "https://hooks.example.com/x"},
            },
        )
        event = add_event(db_session, repository)
        transport = RecordingTransport()

        outcome = await make_engine(transport).process_event(event.id)

        assert len(outcome.errors) == 1
        assert outcome.errors[0].startswith("send_notification:")
        assert len(transport.requests) == 1


class TestProcessing:
    @pytest.mark.asyncio
    async def test_processed_event_is_skipped_or_conflicts(self, db_session, repository, make_engine):
        event = add_event(db_session, repository)
        engine = make_engine(RecordingTransport())
        await engine.process_event(event.id)

        again = await engine.process_event(event.id)
        assert again.skipped is True

        with pytest.raises(ConflictError):
            await engine.process_event(event.id, force_check=True)

    @pytest.mark.asyncio
    async def test_concurrent_runs_invoke_actions_once(
        self, session_factory, db_session, repository
    ):
        add_trigger(db_session, repository, {"start_pipeline": {"pipeline_id": "build"}})
        event = add_event(db_session, repository)
        requests: List[httpx.Request] = []

        async def slow(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={"status": "queued"})

        sessions = [session_factory(), session_factory()]
        engines = [
            WebhookEngine(
                session,
                client=httpx.AsyncClient(transport=httpx.MockTransport(slow)),
                notifications=NotificationManager(),
            )
            for session in sessions
        ]
        try:
            outcomes = await asyncio.gather(*(e.process_event(event.id) for e in engines))
        finally:
            for session in sessions:
                session.close()

        assert len(requests) == 1
        assert sorted(o.skipped for o in outcomes) == [False, True]
        db_session.expire_all()
        stored = WebhookEventService(db_session).get(event.id)
        assert stored.processed is True
        assert stored.processing_started_at is None

    @pytest.mark.asyncio
    async def test_claimed_event_conflicts_on_manual_processing(
        self, db_session, repository, make_engine
    ):
        event = add_event(db_session, repository)
        WebhookEventService(db_session).claim(event.id, timedelta(minutes=10))
        engine = make_engine(RecordingTransport())

        assert (await engine.process_event(event.id)).skipped is True
        with pytest.raises(ConflictError):
            await engine.process_event(event.id, force_check=True)

    @pytest.mark.asyncio
    async def test_timeout_bumps_retry_count(self, db_session, repository, make_engine):
        add_trigger(db_session, repository, {"start_pipeline": {"pipeline_id": "build"}})
        event = add_event(db_session, repository)

        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        outcome = await make_engine(slow, timeout=0.05).process_event(event.id)

        assert outcome.processed is False
        stored = WebhookEventService(db_session).get(event.id)
        assert stored.processed is False
        assert stored.retry_count == 1
        assert "timed out" in stored.error_message

    @pytest.mark.asyncio
    async def test_process_pending_respects_retry_cap(
        self, db_session, repository, make_engine, monkeypatch
    ):
        monkeypatch.setattr(settings, "event_max_retries", 2)
        events = WebhookEventService(db_session)
        fresh = add_event(db_session, repository)
        exhausted = add_event(db_session, repository)
        events.update(exhausted.id, retry_count=2)

        outcomes = await make_engine(RecordingTransport()).process_pending(limit=10)

        assert [o.event_id for o in outcomes] == [str(fresh.id)]
        assert events.get(exhausted.id).processed is False


class TestEventStore:
    def test_update_allowlist(self, db_session, repository):
        event = add_event(db_session, repository)
        events = WebhookEventService(db_session)

        with pytest.raises(ValidationError):
            events.update(event.id, repository_id=uuid.uuid4())
        with pytest.raises(ValidationError):
            events.update(event.id, **{"processed = 1; --": True})

        updated = events.update(event.id, error_message="boom")
        assert updated.error_message == "boom"

    def test_claim_is_exclusive_until_stale(self, db_session, repository):
        events = WebhookEventService(db_session)
        event = add_event(db_session, repository)
        ttl = timedelta(minutes=10)

        assert events.claim(event.id, ttl) is True
        assert events.claim(event.id, ttl) is False
        assert events.pending(stale_after=ttl) == []

        # a worker that died mid-run leaves a stale claim behind
        events.update(event.id, processing_started_at=utc_now() - timedelta(hours=1))
        assert [e.id for e in events.pending(stale_after=ttl)] == [event.id]
        assert events.claim(event.id, ttl) is True

        events.update(event.id, processed=True, processing_started_at=None)
        assert events.claim(event.id, ttl) is False

    def test_statistics(self, db_session, repository):
        events = WebhookEventService(db_session)
        done = add_event(db_session, repository)
        failed = add_event(db_session, repository, event_type="tag_push")
        add_event(db_session, repository)
        events.update(done.id, processed=True)
        events.update(failed.id, processed=True, error_message="processing errors: x; ")

        stats = events.statistics(repository.id)

        assert stats["total_events"] == 3
        assert stats["processed_events"] == 2
        assert stats["failed_events"] == 1
        assert stats["pending_events"] == 1
        assert stats["events_by_type"] == {"push": 2, "tag_push": 1}
        assert stats["total_deliveries"] == 0
        assert stats["success_rate"] == 0.0
