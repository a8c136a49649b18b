from fastapi import APIRouter, Depends
from typing import Optional
import math

from app.models.user import User
from app.models.withdrawal import (
    WithdrawalCreate,
    WithdrawalProcess,
    WithdrawalRequest,
    MAX_WITHDRAWAL_AMOUNT,
    MIN_WITHDRAWAL_AMOUNT,
)
from app.db.session import db
from app.services import ledger
from app.services.auth import get_admin_user, require_roles
from app.services.royalty import PAYOUT_FEES, calculate_payout_fee, format_currency
from app.services.withdrawal import can_seller_withdraw, process_withdrawal, request_withdrawal

router = APIRouter()

PROCESSING_TIMES = {
    "stripe": "5-7 business days",
    "paypal": "10-12 business days",
    "bank_transfer": "10-12 business days",
}

def _format_withdrawal(withdrawal: WithdrawalRequest) -> dict:
    return {
        "id": withdrawal.id,
        "amount": format_currency(withdrawal.amount, withdrawal.currency),
        "fee": format_currency(withdrawal.fee_amount, withdrawal.currency),
        "net_amount": format_currency(withdrawal.net_amount, withdrawal.currency),
        "currency": withdrawal.currency,
        "payout_method": withdrawal.payout_method,
        "status": withdrawal.status,
        "requested_at": withdrawal.requested_at,
        "processed_at": withdrawal.processed_at,
        "completed_at": withdrawal.completed_at,
        "failure_reason": withdrawal.failure_reason,
    }

@router.post("/withdrawals/request")
async def create_withdrawal_request(
    data: WithdrawalCreate,
    current_user: User = Depends(require_roles("teacher"))
):
    withdrawal = await request_withdrawal(current_user, data)
    return {
        "success": True,
        "message": "Withdrawal request submitted successfully. Awaiting admin approval.",
        "withdrawal": _format_withdrawal(withdrawal),
    }

@router.get("/withdrawals/history")
async def get_withdrawal_history(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    currency: Optional[str] = None,
    current_user: User = Depends(require_roles("teacher"))
):
    query = {"seller_id": current_user.id}
    if status:
        query["status"] = status
    if currency:
        query["currency"] = currency.upper()

    withdrawals = await db.withdrawal_requests.find(query).sort("requested_at", -1).skip((page - 1) * limit).limit(limit).to_list(limit)
    total = await db.withdrawal_requests.count_documents(query)
    check = await can_seller_withdraw(current_user.id)

    return {
        "withdrawals": [_format_withdrawal(WithdrawalRequest(**w)) for w in withdrawals],
        "pagination": {
            "total": total,
            "total_pages": math.ceil(total / limit) if limit else 0,
            "current_page": page,
            "per_page": limit,
        },
        "can_withdraw": check["can_withdraw"],
        "days_until_next_withdrawal": check["days_remaining"],
    }

@router.get("/withdrawals/info")
async def get_withdrawal_info(
    currency: str = "GBP",
    current_user: User = Depends(require_roles("teacher"))
):
    currency = currency.upper()
    balance = await ledger.get_current_balance(current_user.id, currency)
    check = await can_seller_withdraw(current_user.id)

    payout_methods = {}
    for method in PAYOUT_FEES:
        sample = calculate_payout_fee(MIN_WITHDRAWAL_AMOUNT, currency, method)
        payout_methods[method] = {
            "available": bool(current_user.stripe_account_id) if method == "stripe" else True,
            "fee": sample.fee_description,
            "processing_time": PROCESSING_TIMES[method],
        }

    return {
        "balance": {"available": balance, "formatted": format_currency(balance, currency), "currency": currency},
        "limits": {
            "minimum": {"amount": MIN_WITHDRAWAL_AMOUNT, "formatted": format_currency(MIN_WITHDRAWAL_AMOUNT, currency)},
            "maximum": {"amount": MAX_WITHDRAWAL_AMOUNT, "formatted": format_currency(MAX_WITHDRAWAL_AMOUNT, currency)},
        },
        "withdrawal": {
            "can_withdraw": check["can_withdraw"],
            "days_remaining": check["days_remaining"],
            "frequency": "Once per week",
        },
        "payout_methods": payout_methods,
    }

# Admin endpoints
@router.get("/withdrawals/admin/pending")
async def get_pending_withdrawals(
    page: int = 1,
    limit: int = 20,
    payout_method: Optional[str] = None,
    admin_user: User = Depends(get_admin_user)
):
    query = {"status": {"$in": ["pending", "processing"]}}
    if payout_method:
        query["payout_method"] = payout_method

    # Oldest first
    withdrawals = await db.withdrawal_requests.find(query).sort("requested_at", 1).skip((page - 1) * limit).limit(limit).to_list(limit)
    total = await db.withdrawal_requests.count_documents(query)

    return {
        "withdrawals": [WithdrawalRequest(**w) for w in withdrawals],
        "pagination": {
            "total": total,
            "total_pages": math.ceil(total / limit) if limit else 0,
            "current_page": page,
            "per_page": limit,
        },
    }

@router.post("/withdrawals/admin/{withdrawal_id}/process")
async def admin_process_withdrawal(
    withdrawal_id: str,
    data: WithdrawalProcess,
    admin_user: User = Depends(get_admin_user)
):
    withdrawal = await process_withdrawal(withdrawal_id, data, admin_user)
    message = "Withdrawal rejected" if data.action == "reject" else "Withdrawal approved"
    return {"success": True, "message": message, "withdrawal": withdrawal}
