from pydantic import BaseModel, Field
from typing import Optional
import uuid
from datetime import datetime

PAYOUT_METHODS = ("stripe", "paypal", "bank_transfer")
MIN_WITHDRAWAL_AMOUNT = 1000  # £10 / $10
MAX_WITHDRAWAL_AMOUNT = 1000000  # £10,000 / $10,000

class PayoutDetails(BaseModel):
    # Stripe Connect
    stripe_account_id: Optional[str] = None
    stripe_account_holder_name: Optional[str] = None
    # PayPal
    paypal_email: Optional[str] = None
    paypal_account_name: Optional[str] = None
    # Bank transfer
    bank_account_holder: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    sort_code: Optional[str] = None
    iban: Optional[str] = None
    swift: Optional[str] = None
    country: Optional[str] = None

class WithdrawalRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    seller_id: str
    amount: int = Field(..., ge=MIN_WITHDRAWAL_AMOUNT)
    currency: str = "GBP"
    payout_method: str  # stripe, paypal, bank_transfer
    payout_details: PayoutDetails = Field(default_factory=PayoutDetails)
    fee_amount: int = 0
    net_amount: int
    status: str = "pending"  # pending, processing, completed, failed, cancelled
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    stripe_payout_id: Optional[str] = None
    paypal_payout_batch_id: Optional[str] = None
    bank_transfer_reference: Optional[str] = None
    admin_notes: Optional[str] = None
    processed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class WithdrawalCreate(BaseModel):
    amount: float = Field(..., gt=0)  # Major units, as entered by the seller
    currency: str = "GBP"
    payout_method: str
    payout_details: PayoutDetails = Field(default_factory=PayoutDetails)

class WithdrawalProcess(BaseModel):
    action: str  # approve, reject
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
