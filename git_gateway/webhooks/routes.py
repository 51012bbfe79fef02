"""
Webhook API routes: inbound forge webhooks, stored events, triggers,
deliveries and statistics.
"""

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.base import get_db
from ..db.services import (
    RepositoryService,
    WebhookDeliveryService,
    WebhookEventService,
    WebhookService,
    WebhookTriggerService,
)
from ..envelope import page, success
from ..errors import ValidationError
from .engine import WebhookEngine, process_event_in_background
from .ingress import (
    InboundEvent,
    normalize_event_type,
    parse_github,
    parse_gitlab,
    parse_native,
    require_valid_signature,
)
from .schemas import WebhookEventCreate, WebhookTriggerCreate, WebhookTriggerUpdate

inbound_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
router = APIRouter(tags=["webhook-events"])


# =============================================================================
# Inbound webhooks
# =============================================================================


async def _ingest(
    request: Request,
    repository_id: str,
    parse: Callable[[Mapping[str, str], Dict[str, Any]], InboundEvent],
    background_tasks: BackgroundTasks,
    db: Session,
) -> Dict[str, Any]:
    """Verify, persist and schedule one inbound event."""
    body = await request.body()
    try:
        payload = json.loads(body) if body else {}
    except ValueError:
        raise ValidationError("webhook body must be valid JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("webhook body must be a JSON object")

    repository = RepositoryService(db).get(repository_id)
    event = parse(request.headers, payload)
    secret = WebhookService(db).active_secret(repository.id) or get_settings().webhook_secret
    require_valid_signature(event, secret, body)

    stored = WebhookEventService(db).create(
        repository.id,
        event.event_type,
        event.payload,
        source=event.source,
        signature=event.signature,
    )
    background_tasks.add_task(process_event_in_background, db, stored.id)
    return success(
        {
            "event_id": str(stored.id),
            "event_type": stored.event_type,
            "source": stored.source,
        },
        message="event accepted",
        code=202,
    )


@inbound_router.post("/github/{repository_id}", status_code=202)
async def receive_github_webhook(
    repository_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return await _ingest(request, repository_id, parse_github, background_tasks, db)


@inbound_router.post("/gitlab/{repository_id}", status_code=202)
async def receive_gitlab_webhook(
    repository_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return await _ingest(request, repository_id, parse_gitlab, background_tasks, db)


@inbound_router.post("/{repository_id}", status_code=202)
async def receive_webhook(
    repository_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    event_type: Optional[str] = Query(None, max_length=50),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    def parse(headers: Mapping[str, str], payload: Dict[str, Any]) -> InboundEvent:
        return parse_native(headers, payload, event_type)

    return await _ingest(request, repository_id, parse, background_tasks, db)


# =============================================================================
# Webhook events
# =============================================================================


@router.post("/webhook-events", status_code=201)
def create_webhook_event(
    body: WebhookEventCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    repository = RepositoryService(db).get(body.repository_id)
    event = WebhookEventService(db).create(
        repository.id,
        normalize_event_type(body.event_type),
        body.event_data,
        source=body.source,
        signature=body.signature,
    )
    background_tasks.add_task(process_event_in_background, db, event.id)
    return success(event.to_dict(), message="event created", code=201)


@router.get("/webhook-events")
def list_webhook_events(
    repository_id: Optional[str] = Query(None),
    event_type: Optional[List[str]] = Query(None),
    source: Optional[str] = Query(None),
    processed: Optional[bool] = Query(None),
    start_time: Optional[datetime] = Query(None),
    end_time: Optional[datetime] = Query(None),
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    event_types = [t for value in (event_type or []) for t in value.split(",") if t]
    items, total = WebhookEventService(db).list(
        repository_id=repository_id,
        event_types=event_types,
        source=source,
        processed=processed,
        start_time=start_time,
        end_time=end_time,
        page=page_number,
        page_size=page_size,
    )
    return success(page([e.to_dict() for e in items], total, page_number, page_size))


@router.get("/webhook-events/{event_id}")
def get_webhook_event(event_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return success(WebhookEventService(db).get(event_id).to_dict())


@router.delete("/webhook-events/{event_id}")
def delete_webhook_event(event_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    WebhookEventService(db).delete(event_id)
    return success({"id": event_id}, message="event deleted")


@router.post("/webhook-events/{event_id}/process")
async def process_webhook_event(event_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Process an event now; already processed events are a conflict."""
    outcome = await WebhookEngine(db).process_event(event_id, force_check=True)
    return success(outcome.to_dict(), message="event processed")


@router.get("/webhook-events/{event_id}/deliveries")
def list_event_deliveries(event_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    event = WebhookEventService(db).get(event_id)
    deliveries = WebhookDeliveryService(db).for_event(event.id)
    return success([d.to_dict() for d in deliveries])


# =============================================================================
# Triggers
# =============================================================================


@router.post("/webhook-triggers", status_code=201)
def create_webhook_trigger(
    body: WebhookTriggerCreate, db: Session = Depends(get_db)
) -> Dict[str, Any]:
    repository = RepositoryService(db).get(body.repository_id)
    trigger = WebhookTriggerService(db).create(
        repository.id,
        body.name,
        [normalize_event_type(t) for t in body.event_types],
        conditions=body.conditions.model_dump(mode="json", exclude_none=True),
        actions=body.actions.model_dump(mode="json", exclude_none=True),
        enabled=body.enabled,
    )
    return success(trigger.to_dict(), message="trigger created", code=201)


@router.get("/webhook-triggers")
def list_webhook_triggers(
    repository_id: Optional[str] = Query(None),
    enabled: Optional[bool] = Query(None),
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    items, total = WebhookTriggerService(db).list(
        repository_id=repository_id, enabled=enabled, page=page_number, page_size=page_size
    )
    return success(page([t.to_dict() for t in items], total, page_number, page_size))


@router.get("/webhook-triggers/{trigger_id}")
def get_webhook_trigger(trigger_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return success(WebhookTriggerService(db).get(trigger_id).to_dict())


@router.put("/webhook-triggers/{trigger_id}")
def update_webhook_trigger(
    trigger_id: str, body: WebhookTriggerUpdate, db: Session = Depends(get_db)
) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if body.name is not None:
        fields["name"] = body.name
    if body.event_types is not None:
        fields["event_types"] = [normalize_event_type(t) for t in body.event_types]
    if body.conditions is not None:
        fields["conditions"] = body.conditions.model_dump(mode="json", exclude_none=True)
    if body.actions is not None:
        fields["actions"] = body.actions.model_dump(mode="json", exclude_none=True)
    if body.enabled is not None:
        fields["enabled"] = body.enabled
    trigger = WebhookTriggerService(db).update(trigger_id, **fields)
    return success(trigger.to_dict(), message="trigger updated")


@router.delete("/webhook-triggers/{trigger_id}")
def delete_webhook_trigger(trigger_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    WebhookTriggerService(db).delete(trigger_id)
    return success({"id": trigger_id}, message="trigger deleted")


@router.post("/webhook-triggers/{trigger_id}/enable")
def enable_webhook_trigger(trigger_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    trigger = WebhookTriggerService(db).update(trigger_id, enabled=True)
    return success(trigger.to_dict(), message="trigger enabled")


@router.post("/webhook-triggers/{trigger_id}/disable")
def disable_webhook_trigger(trigger_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    trigger = WebhookTriggerService(db).update(trigger_id, enabled=False)
    return success(trigger.to_dict(), message="trigger disabled")


# =============================================================================
# Deliveries and statistics
# =============================================================================


@router.get("/webhook-deliveries")
def list_webhook_deliveries(
    webhook_id: Optional[str] = Query(None),
    event_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    items, total = WebhookDeliveryService(db).list(
        webhook_id=webhook_id,
        event_id=event_id,
        status=status,
        page=page_number,
        page_size=page_size,
    )
    return success(page([d.to_dict() for d in items], total, page_number, page_size))


@router.get("/webhook-deliveries/{delivery_id}")
def get_webhook_delivery(delivery_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return success(WebhookDeliveryService(db).get(delivery_id).to_dict())


@router.get("/webhook-statistics")
def webhook_statistics(
    repository_id: Optional[str] = Query(None), db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return success(WebhookEventService(db).statistics(repository_id))
