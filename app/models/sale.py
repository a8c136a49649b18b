from pydantic import BaseModel, Field
from typing import Optional
import uuid
from datetime import datetime

class Sale(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resource_id: str
    seller_id: str
    buyer_id: Optional[str] = None
    price: int  # Gross price in smallest currency unit, VAT inclusive
    currency: str = "GBP"  # GBP, USD, EUR, PKR
    vat_amount: int = 0
    net_price: int = 0
    transaction_fee: int = 0  # 20p/20c on items under the small transaction threshold
    platform_commission: int
    seller_earnings: int
    royalty_rate: float  # Seller's rate at the time of sale
    seller_tier: str  # Bronze, Silver, Gold, N/A for free resources
    license: str = "single"
    status: str = "completed"  # pending, completed, failed, refunded, disputed
    stripe_charge_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_session_id: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_country: Optional[str] = None
    sale_date: datetime = Field(default_factory=datetime.utcnow)
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class PurchaseRequest(BaseModel):
    resource_id: str
    buyer_country: str = "GB"

class RoyaltyPreviewRequest(BaseModel):
    price: int = Field(..., ge=0)
    currency: str = "GBP"
    buyer_country: str = "GB"
    royalty_rate: Optional[float] = Field(None, gt=0, le=1)
    seller_tier: Optional[str] = None
