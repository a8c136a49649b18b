import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure

from app.db.session import TRANSACTION_ATTEMPTS, TRANSIENT_TRANSACTION_ERROR, run_in_transaction
from app.services import ledger, webhooks


def write_conflict():
    return OperationFailure("WriteConflict", code=112, details={"errorLabels": [TRANSIENT_TRANSACTION_ERROR]})


async def test_transient_conflict_replays_the_whole_callback():
    calls = []

    async def work(txn):
        calls.append(txn)
        if len(calls) == 1:
            raise write_conflict()
        return "committed"

    assert await run_in_transaction(work) == "committed"
    assert len(calls) == 2


async def test_other_errors_are_not_replayed():
    calls = []

    async def work(txn):
        calls.append(txn)
        raise DuplicateKeyError("E11000 duplicate key")

    with pytest.raises(DuplicateKeyError):
        await run_in_transaction(work)
    assert len(calls) == 1


async def test_replays_stop_after_the_attempt_limit():
    calls = []

    async def work(txn):
        calls.append(txn)
        raise write_conflict()

    with pytest.raises(OperationFailure):
        await run_in_transaction(work)
    assert len(calls) == TRANSACTION_ATTEMPTS


async def test_ledger_conflict_inside_a_transaction_is_transient(mocker):
    fake_db = mocker.MagicMock()
    fake_db.balance_ledger.find_one = mocker.AsyncMock(return_value={"seq": 4, "balance_after": 900})
    fake_db.balance_ledger.insert_one = mocker.AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))
    mocker.patch.object(ledger, "db", fake_db)

    with pytest.raises(OperationFailure) as excinfo:
        await ledger.create_entry("seller-1", "credit", 500, "GBP", "Sale", session=object())

    assert excinfo.value.has_error_label(TRANSIENT_TRANSACTION_ERROR)
    # No in-place retry: the surrounding transaction is already aborted
    assert fake_db.balance_ledger.insert_one.await_count == 1


async def test_sale_survives_a_conflict_on_the_first_attempt(db, seller, buyer, resource, mocker):
    original = webhooks.seller_tier.record_sale_stats
    attempts = {"count": 0}

    async def conflict_once(*args, **kwargs):
        attempts["count"] += 1
        if attempts["count"] == 1:
            # Roll back what a real aborted transaction would have discarded
            await db.sales.delete_many({})
            await db.resource_purchases.delete_many({})
            await db.balance_ledger.delete_many({})
            raise write_conflict()
        return await original(*args, **kwargs)

    mocker.patch.object(webhooks.seller_tier, "record_sale_stats", side_effect=conflict_once)

    sale = await webhooks.settle_resource_sale({
        "id": "cs_conflict",
        "mode": "payment",
        "amount_total": 1000,
        "currency": "gbp",
        "payment_intent": "pi_conflict",
        "metadata": {"resourceId": resource.id, "sellerId": seller.id, "buyerId": buyer.id, "buyerCountry": "GB"},
    })

    assert sale is not None
    assert attempts["count"] == 2
    assert await db.sales.count_documents({"stripe_session_id": "cs_conflict"}) == 1
    assert await db.resource_purchases.count_documents({}) == 1
    assert await ledger.get_current_balance(seller.id, "GBP") == 500
