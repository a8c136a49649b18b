from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
import uuid
import math
from datetime import datetime

ACTIVE_STATUSES = ["active", "trial", "past_due"]
USAGE_KEYS = ("featured_listings", "candidate_searches", "resource_uploads", "bulk_messages")

class SubscriptionPlan(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    slug: str
    price: int = 0  # Smallest currency unit per interval
    currency: str = "GBP"
    interval: str = "month"
    stripe_price_id: Optional[str] = None
    stripe_product_id: Optional[str] = None
    trial_days: int = 0
    features: List[str] = []
    limits: Dict[str, Optional[int]] = {}  # None means unlimited
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

class Usage(BaseModel):
    featured_listings: int = 0
    candidate_searches: int = 0
    resource_uploads: int = 0
    bulk_messages: int = 0
    last_reset_at: datetime = Field(default_factory=datetime.utcnow)

class UserSubscription(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    plan_id: str
    status: str = "active"  # active, trial, past_due, cancelled, expired
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    start_date: datetime = Field(default_factory=datetime.utcnow)
    end_date: Optional[datetime] = None
    current_period_start: datetime = Field(default_factory=datetime.utcnow)
    current_period_end: datetime
    trial_end_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    usage: Usage = Field(default_factory=Usage)
    price_paid: int = 0
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_expired(self) -> bool:
        now = datetime.utcnow()
        if self.status == "expired":
            return True
        if self.status == "cancelled" and self.end_date and self.end_date < now:
            return True
        return bool(self.current_period_end and self.current_period_end < now and self.status != "active")

    @property
    def is_in_trial(self) -> bool:
        return self.status == "trial" and bool(self.trial_end_date) and self.trial_end_date > datetime.utcnow()

    @property
    def days_remaining(self) -> int:
        if not self.current_period_end:
            return 0
        seconds = (self.current_period_end - datetime.utcnow()).total_seconds()
        return max(0, math.ceil(seconds / 86400))

class SubscriptionCheckoutRequest(BaseModel):
    plan_id: str
