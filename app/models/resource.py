from pydantic import BaseModel, Field
from typing import Optional
import uuid
from datetime import datetime

class Resource(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    description: str = ""
    price: float = 0.0  # Major units (9.99); converted to minor units for Stripe
    currency: str = "GBP"
    seller_id: str
    is_free: bool = False
    main_file: Optional[str] = ""
    status: str = "pending"  # pending, approved, rejected
    downloads: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

class ResourcePurchase(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resource_id: str
    buyer_id: str
    sale_id: Optional[str] = None
    price_paid: int = 0  # Smallest currency unit, same as Sale.price
    currency: str = "GBP"
    status: str = "completed"  # completed, refunded
    stripe_session_id: Optional[str] = None
    purchased_at: datetime = Field(default_factory=datetime.utcnow)
