from datetime import datetime, timedelta

import pytest
import stripe

from app.models.withdrawal import WithdrawalRequest
from app.services import ledger

REQUEST_URL = "/api/v1/withdrawals/request"


def bank_request(amount=50.0):
    return {
        "amount": amount,
        "currency": "GBP",
        "payout_method": "bank_transfer",
        "payout_details": {
            "bank_account_holder": "Sam Seller",
            "bank_name": "Example Bank",
            "account_number": "12345678",
            "sort_code": "00-00-00",
        },
    }


@pytest.fixture
async def funded_seller(db, seller):
    await ledger.create_entry(seller.id, "credit", 20000, "GBP", "Sale")
    return seller


async def test_request_is_pending_and_leaves_balance(client, db, login_as, funded_seller):
    login_as(funded_seller)

    response = client.post(REQUEST_URL, json=bank_request())

    assert response.status_code == 200
    body = response.json()["withdrawal"]
    assert body["status"] == "pending"
    assert body["amount"] == "£50.00"
    assert body["fee"] == "£2.50"
    assert body["net_amount"] == "£47.50"
    assert await ledger.get_current_balance(funded_seller.id, "GBP") == 20000


async def test_request_below_minimum_is_rejected(client, login_as, funded_seller):
    login_as(funded_seller)

    response = client.post(REQUEST_URL, json=bank_request(amount=5))

    assert response.status_code == 400
    assert response.json()["detail"] == "Minimum withdrawal amount is £10.00"


async def test_request_above_balance_is_rejected(client, login_as, funded_seller):
    login_as(funded_seller)

    response = client.post(REQUEST_URL, json=bank_request(amount=500))

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Insufficient balance")


async def test_request_with_incomplete_bank_details_is_rejected(client, login_as, funded_seller):
    login_as(funded_seller)
    payload = bank_request()
    del payload["payout_details"]["account_number"]

    response = client.post(REQUEST_URL, json=payload)

    assert response.status_code == 400
    assert response.json()["detail"] == "Bank account details are incomplete"


async def test_only_one_withdrawal_per_week(client, db, login_as, funded_seller):
    login_as(funded_seller)

    assert client.post(REQUEST_URL, json=bank_request()).status_code == 200
    response = client.post(REQUEST_URL, json=bank_request())

    assert response.status_code == 400
    assert "once per week" in response.json()["detail"]


async def test_failed_withdrawal_does_not_block_next_request(client, db, login_as, funded_seller):
    await db.withdrawal_requests.insert_one(WithdrawalRequest(
        seller_id=funded_seller.id,
        amount=5000,
        payout_method="paypal",
        net_amount=4795,
        status="failed",
        requested_at=datetime.utcnow() - timedelta(days=1),
    ).model_dump(exclude_none=True))
    login_as(funded_seller)

    response = client.post(REQUEST_URL, json=bank_request())

    assert response.status_code == 200


async def test_buyers_cannot_request_withdrawals(client, login_as, buyer):
    login_as(buyer)

    response = client.post(REQUEST_URL, json=bank_request())

    assert response.status_code == 403


async def test_approve_bank_transfer_debits_amount_and_completes(client, db, login_as, funded_seller, admin):
    login_as(funded_seller)
    withdrawal_id = client.post(REQUEST_URL, json=bank_request()).json()["withdrawal"]["id"]

    login_as(admin)
    response = client.post(
        f"/api/v1/withdrawals/admin/{withdrawal_id}/process",
        json={"action": "approve", "transaction_id": "BACS-001"},
    )

    assert response.status_code == 200
    doc = await db.withdrawal_requests.find_one({"id": withdrawal_id})
    assert doc["status"] == "completed"
    assert doc["bank_transfer_reference"] == "BACS-001"
    assert doc["processed_by"] == admin.id
    assert await ledger.get_current_balance(funded_seller.id, "GBP") == 15000
    assert await db.balance_ledger.count_documents({"reference_id": withdrawal_id}) == 2


async def test_approve_stripe_payout_waits_for_webhook(client, db, login_as, funded_seller, admin, mocker):
    payout = mocker.patch("app.services.stripe_service.create_payout", return_value={"id": "po_123"})
    login_as(funded_seller)
    payload = {
        "amount": 100,
        "currency": "GBP",
        "payout_method": "stripe",
        "payout_details": {"stripe_account_id": "acct_1"},
    }
    withdrawal_id = client.post(REQUEST_URL, json=payload).json()["withdrawal"]["id"]

    login_as(admin)
    client.post(f"/api/v1/withdrawals/admin/{withdrawal_id}/process", json={"action": "approve"})

    doc = await db.withdrawal_requests.find_one({"id": withdrawal_id})
    assert doc["status"] == "processing"
    assert doc["stripe_payout_id"] == "po_123"
    assert payout.call_args[0][:3] == (doc["net_amount"], "GBP", "acct_1")
    assert await ledger.get_current_balance(funded_seller.id, "GBP") == 10000


async def test_stripe_payout_error_reverses_the_debit(client, db, login_as, funded_seller, admin, mocker):
    mocker.patch(
        "app.services.stripe_service.create_payout",
        side_effect=stripe.InvalidRequestError("No such account", "destination"),
    )
    login_as(funded_seller)
    payload = {"amount": 100, "payout_method": "stripe", "payout_details": {"stripe_account_id": "acct_1"}}
    withdrawal_id = client.post(REQUEST_URL, json=payload).json()["withdrawal"]["id"]

    login_as(admin)
    response = client.post(f"/api/v1/withdrawals/admin/{withdrawal_id}/process", json={"action": "approve"})

    assert response.status_code == 422
    doc = await db.withdrawal_requests.find_one({"id": withdrawal_id})
    assert doc["status"] == "failed"
    assert doc["failure_reason"].startswith("Stripe payout failed")
    assert "stripe_payout_id" not in doc
    assert await ledger.get_current_balance(funded_seller.id, "GBP") == 20000
    assert await db.balance_ledger.count_documents({"reference_type": "adjustment", "reference_id": withdrawal_id}) == 1


async def test_approval_refused_before_payout_when_balance_dropped(client, db, login_as, funded_seller, admin, mocker):
    payout = mocker.patch("app.services.stripe_service.create_payout", return_value={"id": "po_late"})
    login_as(funded_seller)
    payload = {"amount": 150, "payout_method": "stripe", "payout_details": {"stripe_account_id": "acct_1"}}
    withdrawal_id = client.post(REQUEST_URL, json=payload).json()["withdrawal"]["id"]
    # A refund lands between the request and the admin's decision
    await ledger.create_entry(funded_seller.id, "debit", 10000, "GBP", "Refund", reference_type="refund")

    login_as(admin)
    response = client.post(f"/api/v1/withdrawals/admin/{withdrawal_id}/process", json={"action": "approve"})

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Insufficient balance to approve withdrawal")
    assert not payout.called
    doc = await db.withdrawal_requests.find_one({"id": withdrawal_id})
    assert doc["status"] == "pending"
    assert await ledger.get_current_balance(funded_seller.id, "GBP") == 10000


async def test_admin_supplied_payout_id_skips_stripe_call(client, db, login_as, funded_seller, admin, mocker):
    payout = mocker.patch("app.services.stripe_service.create_payout")
    login_as(funded_seller)
    payload = {"amount": 100, "payout_method": "stripe", "payout_details": {"stripe_account_id": "acct_1"}}
    withdrawal_id = client.post(REQUEST_URL, json=payload).json()["withdrawal"]["id"]

    login_as(admin)
    client.post(
        f"/api/v1/withdrawals/admin/{withdrawal_id}/process",
        json={"action": "approve", "transaction_id": "po_manual"},
    )

    doc = await db.withdrawal_requests.find_one({"id": withdrawal_id})
    assert doc["status"] == "processing"
    assert doc["stripe_payout_id"] == "po_manual"
    assert not payout.called



async def test_reject_fails_without_ledger_change(client, db, login_as, funded_seller, admin):
    login_as(funded_seller)
    withdrawal_id = client.post(REQUEST_URL, json=bank_request()).json()["withdrawal"]["id"]

    login_as(admin)
    client.post(
        f"/api/v1/withdrawals/admin/{withdrawal_id}/process",
        json={"action": "reject", "notes": "Details do not match"},
    )

    doc = await db.withdrawal_requests.find_one({"id": withdrawal_id})
    assert doc["status"] == "failed"
    assert doc["failure_reason"] == "Details do not match"
    assert await ledger.get_current_balance(funded_seller.id, "GBP") == 20000

    response = client.post(f"/api/v1/withdrawals/admin/{withdrawal_id}/process", json={"action": "approve"})
    assert response.status_code == 400


async def test_non_admin_cannot_process(client, login_as, funded_seller):
    login_as(funded_seller)

    response = client.post("/api/v1/withdrawals/admin/anything/process", json={"action": "approve"})

    assert response.status_code == 403


async def test_withdrawal_info_reports_balance_and_limits(client, login_as, funded_seller):
    login_as(funded_seller)

    body = client.get("/api/v1/withdrawals/info").json()

    assert body["balance"]["available"] == 20000
    assert body["limits"]["minimum"]["formatted"] == "£10.00"
    assert body["withdrawal"]["can_withdraw"] is True
    assert body["payout_methods"]["stripe"]["available"] is False
