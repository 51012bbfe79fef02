"""
Webhook trigger engine.

Events are persisted before any processing. A run evaluates the repository's
enabled triggers, executes the actions of every matching trigger, and marks
the event processed. A run that does not finish within the processing
deadline leaves the event unprocessed with its retry counter bumped, so the
pending scanner picks it up again until the retry cap is reached.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx
import structlog
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.models import WebhookEventModel, utc_now
from ..db.services import IdLike, WebhookEventService, WebhookTriggerService
from ..errors import ConflictError
from .actions import ActionRunner, Sleep
from .matching import trigger_matches
from .notifications import NotificationManager, default_notification_manager

logger = structlog.get_logger()


@dataclass
class ProcessingOutcome:
    event_id: str
    processed: bool
    matched_triggers: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "processed": self.processed,
            "matched_triggers": self.matched_triggers,
            "errors": self.errors,
            "skipped": self.skipped,
        }


def format_errors(errors: List[str]) -> Optional[str]:
    if not errors:
        return None
    return "processing errors: " + "".join(f"{e}; " for e in errors)


class WebhookEngine:
    """Matches stored events against triggers and runs their actions."""

    def __init__(
        self,
        db: Session,
        client: Optional[httpx.AsyncClient] = None,
        notifications: Optional[NotificationManager] = None,
        sleep: Optional[Sleep] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.db = db
        self.client = client
        self.notifications = notifications
        self.sleep = sleep or asyncio.sleep
        self.timeout = timeout if timeout is not None else settings.webhook_processing_timeout
        self.max_retries = settings.event_max_retries
        self.claim_timeout = timedelta(seconds=settings.event_claim_timeout)
        self.events = WebhookEventService(db)
        self.triggers = WebhookTriggerService(db)

    async def _run_triggers(self, event: WebhookEventModel, client: httpx.AsyncClient) -> ProcessingOutcome:
        outcome = ProcessingOutcome(event_id=str(event.id), processed=False)
        notifications = self.notifications or default_notification_manager(client)
        runner = ActionRunner(self.db, client, notifications, self.sleep)

        for trigger in self.triggers.for_event(event.repository_id, event.event_type):
            if not trigger_matches(trigger, event):
                continue
            outcome.matched_triggers.append(str(trigger.id))
            for result in await runner.run(trigger, event):
                if not result.success and result.error:
                    outcome.errors.append(result.error)
        return outcome

    async def _run(self, event: WebhookEventModel) -> ProcessingOutcome:
        if self.client is not None:
            return await self._run_triggers(event, self.client)
        async with httpx.AsyncClient() as client:
            return await self._run_triggers(event, client)

    async def process_event(self, event_id: IdLike, force_check: bool = False) -> ProcessingOutcome:
        """
        Process one stored event within the processing deadline.

        The event is claimed first so concurrent callers run its actions once.
        Already processed or claimed events are skipped, or rejected with a
        conflict when ``force_check`` is set (manual re-processing).
        """
        event = self.events.get(event_id)
        log = logger.bind(event_id=str(event.id), event_type=event.event_type)

        if event.processed:
            if force_check:
                raise ConflictError("event already processed", details={"event_id": str(event.id)})
            log.info("event already processed, skipping")
            return ProcessingOutcome(event_id=str(event.id), processed=True, skipped=True)

        if not self.events.claim(event.id, self.claim_timeout):
            if force_check:
                raise ConflictError("event is being processed", details={"event_id": str(event.id)})
            log.info("event claimed by another worker, skipping")
            return ProcessingOutcome(event_id=str(event.id), processed=False, skipped=True)

        try:
            outcome = await asyncio.wait_for(self._run(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            message = f"processing timed out after {self.timeout}s"
            self._record_failure(event, message)
            log.error("event processing timed out", timeout=self.timeout)
            return ProcessingOutcome(event_id=str(event.id), processed=False, errors=[message])
        except Exception as exc:
            self.db.rollback()
            self._record_failure(event, str(exc))
            log.error("event processing failed", error=str(exc), exc_info=True)
            return ProcessingOutcome(event_id=str(event.id), processed=False, errors=[str(exc)])

        self.events.update(
            event.id,
            processed=True,
            processed_at=utc_now(),
            error_message=format_errors(outcome.errors),
            processing_started_at=None,
        )
        outcome.processed = True
        log.info(
            "event processed",
            matched_triggers=len(outcome.matched_triggers),
            errors=len(outcome.errors),
        )
        return outcome

    def _record_failure(self, event: WebhookEventModel, message: str) -> None:
        self.events.update(
            event.id,
            retry_count=(event.retry_count or 0) + 1,
            error_message=message,
            processing_started_at=None,
        )

    async def process_pending(self, limit: Optional[int] = None) -> List[ProcessingOutcome]:
        """Process unprocessed events under the retry cap, oldest first."""
        batch = limit or get_settings().event_batch_size
        pending = self.events.pending(
            limit=batch, max_retries=self.max_retries, stale_after=self.claim_timeout
        )
        outcomes = []
        for event in pending:
            outcomes.append(await self.process_event(event.id))
        if pending:
            logger.info("pending events processed", count=len(pending))
        return outcomes


async def process_event_in_background(db: Session, event_id: IdLike) -> None:
    """
    Background-task entry point used after inbound ingestion.

    Runs after the request scope has closed ``db``; a closed Session acquires
    a fresh connection on next use.
    """
    try:
        await WebhookEngine(db).process_event(event_id)
    except Exception:
        logger.exception("background event processing failed", event_id=str(event_id))
