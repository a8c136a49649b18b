"""
Seller balance ledger. Every balance change is an appended entry; nothing
here updates or deletes an existing one. The running ``balance_after`` of the
newest entry (highest ``seq``) is the seller's balance for that currency.
"""
from typing import Any, Dict, List, Optional
import logging

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, OperationFailure

from app.db.session import TRANSIENT_TRANSACTION_ERROR, db
from app.models.ledger import BalanceLedgerEntry, BalanceBreakdown, DEBIT_TYPES

logger = logging.getLogger(__name__)

MAX_APPEND_ATTEMPTS = 3
WRITE_CONFLICT = 112


async def _latest_entry(seller_id: str, currency: str, session=None) -> Optional[dict]:
    return await db.balance_ledger.find_one(
        {"seller_id": seller_id, "currency": currency},
        sort=[("seq", DESCENDING)],
        session=session,
    )


async def get_current_balance(seller_id: str, currency: str = "GBP", session=None) -> int:
    latest = await _latest_entry(seller_id, currency, session=session)
    return latest["balance_after"] if latest else 0


async def create_entry(
    seller_id: str,
    type: str,
    amount: int,
    currency: str,
    description: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_model: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    session=None,
) -> BalanceLedgerEntry:
    """Append an entry and compute its running balance.

    Debit and fee entries reduce the balance by ``abs(amount)``; all other
    types add ``amount``. Two writers appending for the same seller collide
    on the unique ``(seller_id, currency, seq)`` index; the loser re-reads the
    tail and tries again, or inside a transaction raises a transient error so
    ``run_in_transaction`` replays the whole unit of work.
    """
    change = -abs(amount) if type in DEBIT_TYPES else amount

    for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
        latest = await _latest_entry(seller_id, currency, session=session)
        entry = BalanceLedgerEntry(
            seller_id=seller_id,
            type=type,
            amount=abs(amount),
            currency=currency,
            balance_after=(latest["balance_after"] if latest else 0) + change,
            seq=(latest["seq"] if latest else 0) + 1,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_model=reference_model,
            description=description,
            metadata=metadata or {},
        )
        try:
            await db.balance_ledger.insert_one(entry.model_dump(), session=session)
            return entry
        except DuplicateKeyError as e:
            if session is not None:
                # Inside a transaction the write already aborted it; the whole transaction starts over
                raise OperationFailure(
                    f"Ledger sequence conflict for seller {seller_id} ({currency})",
                    code=WRITE_CONFLICT,
                    details={"errorLabels": [TRANSIENT_TRANSACTION_ERROR]},
                ) from e
            if attempt == MAX_APPEND_ATTEMPTS:
                raise
            logger.warning(f"Ledger append race for seller {seller_id} ({currency}), retrying")


async def get_balance_breakdown(seller_id: str, currency: str = "GBP") -> BalanceBreakdown:
    rows = await db.balance_ledger.aggregate([
        {"$match": {"seller_id": seller_id, "currency": currency}},
        {"$group": {"_id": "$type", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
    ]).to_list(None)

    field_for_type = {
        "credit": "credits",
        "debit": "debits",
        "fee": "fees",
        "refund": "refunds",
        "adjustment": "adjustments",
    }
    breakdown = BalanceBreakdown()
    for row in rows:
        field = field_for_type.get(row["_id"])
        if field:
            setattr(breakdown, field, row["total"])
    return breakdown


async def list_entries(seller_id: str, currency: Optional[str] = None, limit: int = 50, skip: int = 0) -> List[BalanceLedgerEntry]:
    query = {"seller_id": seller_id}
    if currency:
        query["currency"] = currency
    entries = await db.balance_ledger.find(query).sort("date", -1).skip(skip).limit(limit).to_list(limit)
    return [BalanceLedgerEntry(**entry) for entry in entries]
