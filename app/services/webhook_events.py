"""
Idempotency ledger for Stripe webhook deliveries.

A Stripe event id is inserted once (unique index); redeliveries find the
existing row and consult ``processing_result`` to decide whether to run again.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.db.session import db
from app.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


async def record_event(
    event_id: str,
    event_type: str,
    data: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[bool, WebhookEvent]:
    """Insert the event; returns ``(is_new, event)``"""
    event = WebhookEvent(
        event_id=event_id,
        type=event_type,
        data=data,
        metadata=metadata or {},
        attempt_count=1,
    )
    try:
        await db.webhook_events.insert_one(event.model_dump())
        return True, event
    except DuplicateKeyError:
        existing = await db.webhook_events.find_one({"event_id": event_id})
        return False, WebhookEvent(**existing)


async def should_process_event(event_id: str) -> bool:
    existing = await db.webhook_events.find_one({"event_id": event_id})
    if not existing:
        return True
    event = WebhookEvent(**existing)
    if event.processed and event.processing_result == "success":
        return False
    # Failed events get a bounded number of retries
    return event.processing_result == "failed" and event.attempt_count < MAX_ATTEMPTS


async def _update(event_id: str, fields: Dict[str, Any], inc_attempts: bool) -> Optional[WebhookEvent]:
    fields["updated_at"] = datetime.utcnow()
    operation = {"$set": fields}
    if inc_attempts:
        operation["$inc"] = {"attempt_count": 1}
    updated = await db.webhook_events.find_one_and_update(
        {"event_id": event_id}, operation, return_document=ReturnDocument.AFTER
    )
    return WebhookEvent(**updated) if updated else None


async def mark_processed(event_id: str) -> Optional[WebhookEvent]:
    return await _update(event_id, {
        "processed": True,
        "processed_at": datetime.utcnow(),
        "processing_result": "success",
        "error": None,
    }, inc_attempts=True)


async def mark_failed(event_id: str, error_message: str) -> Optional[WebhookEvent]:
    logger.warning(f"Webhook event {event_id} failed: {error_message}")
    return await _update(event_id, {
        "processed": False,
        "processing_result": "failed",
        "error": error_message,
    }, inc_attempts=True)


async def mark_skipped(event_id: str, reason: str) -> Optional[WebhookEvent]:
    return await _update(event_id, {
        "processed": True,
        "processed_at": datetime.utcnow(),
        "processing_result": "skipped",
        "error": reason,
    }, inc_attempts=False)


async def get_recent_by_type(event_type: str, limit: int = 10) -> List[WebhookEvent]:
    events = await db.webhook_events.find({"type": event_type}).sort("created_at", -1).limit(limit).to_list(limit)
    return [WebhookEvent(**event) for event in events]


async def get_failed_for_retry(max_attempts: int = MAX_ATTEMPTS) -> List[WebhookEvent]:
    events = await db.webhook_events.find({
        "processing_result": "failed",
        "attempt_count": {"$lt": max_attempts},
    }).sort("created_at", 1).to_list(None)
    return [WebhookEvent(**event) for event in events]
