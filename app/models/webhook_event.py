from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
import uuid
from datetime import datetime

class WebhookEvent(BaseModel):
    """Processed Stripe event, kept for idempotency and expired by TTL after 30 days"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_id: str  # Stripe event ID
    type: str
    processed: bool = False
    processed_at: Optional[datetime] = None
    processing_result: str = "pending"  # success, failed, skipped, pending
    error: Optional[str] = None
    attempt_count: int = 0
    data: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
