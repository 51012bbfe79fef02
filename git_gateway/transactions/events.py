"""
Domain event publishing.

The transactor stores domain events in ``domain_events``; the worker drains
them through an ``EventPublisher``, which hands each event to the handlers
subscribed to its type. An event with no handler is published by logging it.
"""

import inspect
from typing import Awaitable, Callable, Dict, List, Optional, Union

import structlog
from sqlalchemy.orm import Session

from ..db.models import DomainEventModel
from ..db.services import DomainEventService

logger = structlog.get_logger()

EventHandler = Callable[[DomainEventModel], Union[None, Awaitable[None]]]


class EventPublisher:
    """Dispatches stored domain events to subscribed handlers."""

    def __init__(self, db: Session, max_retries: int = 5):
        self.events = DomainEventService(db)
        self.max_retries = max_retries
        self._handlers: Dict[str, List[EventHandler]] = {}

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    async def publish(self, event: DomainEventModel) -> None:
        handlers = self._handlers.get(event.type, [])
        logger.info(
            "domain event published",
            event_id=str(event.id),
            event_type=event.type,
            aggregate_id=str(event.aggregate_id),
            handlers=len(handlers),
        )
        for handler in handlers:
            result = handler(event)
            if inspect.isawaitable(result):
                await result

    async def publish_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Publish unprocessed events, marking each processed or recording its error."""
        pending = self.events.pending(limit=limit or 100, max_retries=self.max_retries)
        failed = 0
        for event in pending:
            try:
                await self.publish(event)
            except Exception as exc:
                failed += 1
                self.events.mark_processed(event.id, error=str(exc))
                logger.warning(
                    "domain event handler failed",
                    event_id=str(event.id),
                    event_type=event.type,
                    error=str(exc),
                )
                continue
            self.events.mark_processed(event.id)
        return {"total": len(pending), "published": len(pending) - failed, "failed": failed}
