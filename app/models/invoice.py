from pydantic import BaseModel, Field
from typing import Optional
import uuid
from datetime import datetime

BUSINESS_ROLES = ("school", "recruiter", "supplier")

class InvoiceBuyer(BaseModel):
    user_id: Optional[str] = None
    name: str
    email: Optional[str] = None
    country: str = "GB"
    is_business_buyer: bool = False
    company_name: Optional[str] = None
    vat_number: Optional[str] = None

class InvoiceSeller(BaseModel):
    user_id: str
    name: str
    email: Optional[str] = None

class InvoicePlatform(BaseModel):
    name: str
    address: Optional[str] = None
    vat_number: Optional[str] = None

class InvoicePricing(BaseModel):
    currency: str
    # All amounts in smallest currency unit
    subtotal: int  # Price before VAT
    vat_rate: float = 0.0
    vat_amount: int = 0
    total: int
    vat_applied: bool = False
    vat_reverse_charge: bool = False
    vat_exempt_reason: Optional[str] = None

class Invoice(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    invoice_number: str  # INV-1001
    sale_id: str
    buyer: InvoiceBuyer
    seller: InvoiceSeller
    platform: InvoicePlatform
    resource_id: str
    resource_title: str
    pricing: InvoicePricing
    status: str = "paid"  # issued, paid, cancelled, refunded
    issue_date: datetime = Field(default_factory=datetime.utcnow)
    paid_date: Optional[datetime] = None
    email_sent: bool = False
    email_sent_at: Optional[datetime] = None
    email_error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
