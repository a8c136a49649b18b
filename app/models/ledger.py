from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
import uuid
from datetime import datetime

DEBIT_TYPES = ("debit", "fee")

class BalanceLedgerEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    seller_id: str
    type: str  # credit, debit, fee, refund, adjustment
    amount: int  # Magnitude in smallest currency unit; the sign comes from type
    currency: str = "GBP"
    balance_after: int  # Running balance after this entry
    seq: int  # Position in the seller's ledger for this currency
    date: datetime = Field(default_factory=datetime.utcnow)
    reference_type: Optional[str] = None  # sale, withdrawal, refund, adjustment, fee
    reference_id: Optional[str] = None
    reference_model: Optional[str] = None  # Sale, WithdrawalRequest
    description: str
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=datetime.utcnow)

class BalanceBreakdown(BaseModel):
    credits: int = 0
    debits: int = 0
    fees: int = 0
    refunds: int = 0
    adjustments: int = 0
