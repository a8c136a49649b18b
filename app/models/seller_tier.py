from pydantic import BaseModel, Field
from typing import List, Optional
import uuid
from datetime import datetime

class TierChange(BaseModel):
    tier: str
    achieved_at: datetime = Field(default_factory=datetime.utcnow)
    sales_at_tier_change: int = 0

class SellerTier(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    seller_id: str
    current_tier: str = "Bronze"  # Bronze, Silver, Gold
    royalty_rate: float = 0.6
    # Rolling 12-month figures, net of VAT, in smallest currency unit
    last_12_months_sales: int = 0
    last_12_months_count: int = 0
    lifetime_sales: int = 0
    lifetime_earnings: int = 0
    lifetime_sales_count: int = 0
    tier_history: List[TierChange] = []
    last_calculated_at: datetime = Field(default_factory=datetime.utcnow)
    next_calculation_due: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
