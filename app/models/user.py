from pydantic import BaseModel, Field
from typing import List, Optional
import uuid
from datetime import datetime

ROLES = ("teacher", "school", "admin", "supplier", "recruiter")

# Authentication models
class UserCreate(BaseModel):
    email: str
    password: str
    first_name: str = ""
    last_name: str = ""
    role: str = "teacher"

class UserLogin(BaseModel):
    email: str
    password: str

class User(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    role: str = "teacher"  # teacher, school, admin, supplier, recruiter
    status: str = "active"  # active, suspended
    # Stripe customer (buyer side) and Connect account (seller side)
    stripe_customer_id: Optional[str] = None
    stripe_account_id: Optional[str] = None
    stripe_account_status: Optional[str] = None  # active, restricted, pending_verification
    stripe_payouts_enabled: bool = False
    stripe_requirements: List[str] = []
    # Invoice details for school, recruiter and supplier buyers
    company_name: Optional[str] = None
    vat_number: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

class Token(BaseModel):
    access_token: str
    token_type: str
