from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging
import math

import stripe
from starlette.concurrency import run_in_threadpool

from app.core.errors import NotFoundError, UnprocessableEntityError, ValidationError
from app.db.session import db, run_in_transaction
from app.models.user import User
from app.models.withdrawal import (
    WithdrawalCreate,
    WithdrawalProcess,
    WithdrawalRequest,
    MAX_WITHDRAWAL_AMOUNT,
    MIN_WITHDRAWAL_AMOUNT,
    PAYOUT_METHODS,
)
from app.services import ledger, stripe_service
from app.services.royalty import calculate_payout_fee, format_currency, to_smallest_unit

logger = logging.getLogger(__name__)

WITHDRAWAL_INTERVAL = timedelta(days=7)


async def can_seller_withdraw(seller_id: str) -> Dict[str, Any]:
    """One withdrawal per week; failed and cancelled requests don't count"""
    now = datetime.utcnow()
    recent = await db.withdrawal_requests.find_one(
        {
            "seller_id": seller_id,
            "status": {"$in": ["completed", "processing", "pending"]},
            "requested_at": {"$gte": now - WITHDRAWAL_INTERVAL},
        },
        sort=[("requested_at", -1)],
    )
    if not recent:
        return {"can_withdraw": True, "days_remaining": 0, "last_withdrawal": None}

    elapsed_days = (now - recent["requested_at"]).total_seconds() / 86400
    return {
        "can_withdraw": False,
        "days_remaining": max(1, math.ceil(7 - elapsed_days)),
        "last_withdrawal": WithdrawalRequest(**recent),
    }


def validate_payout_details(payout_method: str, details, seller: User):
    if payout_method not in PAYOUT_METHODS:
        raise ValidationError("Invalid payout method")
    if payout_method == "stripe":
        if not (details.stripe_account_id or seller.stripe_account_id):
            raise ValidationError("Stripe account ID is required")
    elif payout_method == "paypal":
        if not details.paypal_email:
            raise ValidationError("PayPal email is required")
    elif not (details.bank_account_holder and details.bank_name and details.account_number):
        raise ValidationError("Bank account details are incomplete")


async def request_withdrawal(seller: User, data: WithdrawalCreate) -> WithdrawalRequest:
    """Validate and queue a withdrawal for admin approval; the balance is untouched until approval"""
    currency = data.currency.upper()
    amount = to_smallest_unit(data.amount, currency)

    check = await can_seller_withdraw(seller.id)
    if not check["can_withdraw"]:
        last = check["last_withdrawal"]
        raise ValidationError(
            f"You can only withdraw once per week. Please wait {check['days_remaining']} more day(s). "
            f"Last withdrawal: {last.requested_at.strftime('%d/%m/%Y')}"
        )

    if amount < MIN_WITHDRAWAL_AMOUNT:
        raise ValidationError(f"Minimum withdrawal amount is {format_currency(MIN_WITHDRAWAL_AMOUNT, currency)}")
    if amount > MAX_WITHDRAWAL_AMOUNT:
        raise ValidationError(f"Maximum withdrawal amount is {format_currency(MAX_WITHDRAWAL_AMOUNT, currency)}")

    balance = await ledger.get_current_balance(seller.id, currency)
    if amount > balance:
        raise ValidationError(
            f"Insufficient balance. Available: {format_currency(balance, currency)}, "
            f"Requested: {format_currency(amount, currency)}"
        )

    validate_payout_details(data.payout_method, data.payout_details, seller)
    payout_details = data.payout_details
    if data.payout_method == "stripe" and not payout_details.stripe_account_id:
        payout_details = payout_details.model_copy(update={"stripe_account_id": seller.stripe_account_id})

    fee = calculate_payout_fee(amount, currency, data.payout_method)
    withdrawal = WithdrawalRequest(
        seller_id=seller.id,
        amount=amount,
        currency=currency,
        payout_method=data.payout_method,
        payout_details=payout_details,
        fee_amount=fee.fee_amount,
        net_amount=fee.net_amount,
        status="pending",
    )
    await db.withdrawal_requests.insert_one(withdrawal.model_dump(exclude_none=True))
    logger.info(f"Withdrawal {withdrawal.id} requested by seller {seller.id}: {format_currency(amount, currency)}")
    return withdrawal


async def _debit_withdrawal(withdrawal: WithdrawalRequest, admin_id: str, updates: Dict[str, Any], notes: Optional[str]):
    async def debit(txn):
        balance = await ledger.get_current_balance(withdrawal.seller_id, withdrawal.currency, session=txn)
        if withdrawal.amount > balance:
            raise ValidationError(
                f"Insufficient balance to approve withdrawal. Available: {format_currency(balance, withdrawal.currency)}"
            )

        result = await db.withdrawal_requests.update_one(
            {"id": withdrawal.id, "status": "pending"}, {"$set": updates}, session=txn
        )
        if result.modified_count == 0:
            raise ValidationError("Withdrawal was processed concurrently")

        await ledger.create_entry(
            seller_id=withdrawal.seller_id,
            type="debit",
            amount=withdrawal.net_amount,
            currency=withdrawal.currency,
            description=f"Withdrawal to {withdrawal.payout_method}",
            reference_type="withdrawal",
            reference_id=withdrawal.id,
            reference_model="WithdrawalRequest",
            metadata={"approved_by": admin_id, "notes": notes},
            session=txn,
        )
        if withdrawal.fee_amount > 0:
            await ledger.create_entry(
                seller_id=withdrawal.seller_id,
                type="fee",
                amount=withdrawal.fee_amount,
                currency=withdrawal.currency,
                description=f"Withdrawal fee ({withdrawal.payout_method})",
                reference_type="withdrawal",
                reference_id=withdrawal.id,
                reference_model="WithdrawalRequest",
                session=txn,
            )

    await run_in_transaction(debit)


async def reverse_withdrawal(withdrawal: WithdrawalRequest, reason: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
    """Fail a debited withdrawal and credit the full amount back.

    Returns False when the withdrawal was already failed, so a reversal is
    only ever booked once.
    """
    now = datetime.utcnow()

    async def reverse(txn):
        result = await db.withdrawal_requests.update_one(
            {"id": withdrawal.id, "status": {"$ne": "failed"}},
            {"$set": {"status": "failed", "failure_reason": reason, "updated_at": now}},
            session=txn,
        )
        if result.modified_count == 0:
            return False

        await ledger.create_entry(
            seller_id=withdrawal.seller_id,
            type="credit",
            amount=withdrawal.amount,
            currency=withdrawal.currency,
            description="Withdrawal reversal - payout failed",
            reference_type="adjustment",
            reference_id=withdrawal.id,
            reference_model="WithdrawalRequest",
            metadata=dict(metadata or {}, reason=reason),
            session=txn,
        )
        return True

    booked = await run_in_transaction(reverse)
    if booked:
        logger.info(f"Withdrawal {withdrawal.id} reversed: {reason}")
    return booked


async def _send_stripe_payout(withdrawal: WithdrawalRequest, payout_id: Optional[str]) -> str:
    """Create the Stripe payout for an already debited withdrawal, reversing the debit if Stripe refuses"""
    if not payout_id:
        try:
            payout = await run_in_threadpool(
                stripe_service.create_payout,
                withdrawal.net_amount,
                withdrawal.currency,
                withdrawal.payout_details.stripe_account_id,
                {"withdrawal_id": withdrawal.id, "seller_id": withdrawal.seller_id},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe payout failed for withdrawal {withdrawal.id}: {e}")
            await reverse_withdrawal(withdrawal, f"Stripe payout failed: {e}")
            raise UnprocessableEntityError(f"Stripe payout failed: {e}")
        payout_id = payout["id"]

    await db.withdrawal_requests.update_one(
        {"id": withdrawal.id},
        {"$set": {"stripe_payout_id": payout_id, "updated_at": datetime.utcnow()}},
    )
    return payout_id


async def process_withdrawal(withdrawal_id: str, data: WithdrawalProcess, admin: User) -> WithdrawalRequest:
    """Admin decision on a pending withdrawal.

    Approving debits the ledger by the full amount (net + fee entries) before
    any money moves. Stripe payouts are created only after that debit and
    then wait in ``processing`` for ``payout.paid`` or ``payout.failed``; if
    Stripe refuses the payout the debit is reversed and the request fails.
    Manual methods complete straight away.
    """
    withdrawal_doc = await db.withdrawal_requests.find_one({"id": withdrawal_id})
    if not withdrawal_doc:
        raise NotFoundError("Withdrawal request not found")

    withdrawal = WithdrawalRequest(**withdrawal_doc)
    if withdrawal.status != "pending":
        raise ValidationError(f"Cannot process withdrawal with status: {withdrawal.status}")

    now = datetime.utcnow()
    if data.action == "reject":
        await db.withdrawal_requests.update_one(
            {"id": withdrawal.id},
            {"$set": {
                "status": "failed",
                "failure_reason": data.notes or "Rejected by admin",
                "processed_at": now,
                "processed_by": admin.id,
                "admin_notes": data.notes,
                "updated_at": now,
            }},
        )
        logger.info(f"Withdrawal {withdrawal.id} rejected by {admin.id}")
        return WithdrawalRequest(**await db.withdrawal_requests.find_one({"id": withdrawal.id}))

    if data.action != "approve":
        raise ValidationError("Invalid action. Use 'approve' or 'reject'")

    updates = {
        "processed_at": now,
        "processed_by": admin.id,
        "admin_notes": data.notes,
        "updated_at": now,
    }
    if withdrawal.payout_method == "stripe":
        updates["status"] = "processing"
    else:
        updates.update({"status": "completed", "completed_at": now})
        if withdrawal.payout_method == "paypal":
            updates["paypal_payout_batch_id"] = data.transaction_id
        else:
            updates["bank_transfer_reference"] = data.transaction_id

    await _debit_withdrawal(withdrawal, admin.id, updates, data.notes)
    if withdrawal.payout_method == "stripe":
        await _send_stripe_payout(withdrawal, data.transaction_id)

    logger.info(f"Withdrawal {withdrawal.id} approved by {admin.id}: status {updates['status']}")
    return WithdrawalRequest(**await db.withdrawal_requests.find_one({"id": withdrawal.id}))
