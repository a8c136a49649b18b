import json

import pytest

from app.core.config import settings
from app.models.sale import Sale
from app.models.user import User
from app.services import invoice as invoices

WEBHOOK_URL = "/api/v1/webhooks/stripe"


@pytest.fixture
def verified(mocker):
    return mocker.patch("stripe.Webhook.construct_event", return_value=None)


def pay(client, resource, seller, buyer, session_id="cs_inv_1", country="GB", amount=1000):
    event = {
        "id": f"evt_{session_id}",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session_id,
            "mode": "payment",
            "amount_total": amount,
            "currency": "gbp",
            "payment_intent": f"pi_{session_id}",
            "metadata": {
                "resourceId": resource.id,
                "sellerId": seller.id,
                "buyerId": buyer.id,
                "buyerCountry": country,
                "buyerEmail": buyer.email,
            },
        }},
    }
    return client.post(WEBHOOK_URL, content=json.dumps(event), headers={"stripe-signature": "t=1,v1=fake"})


def sale_for(seller, buyer, resource, vat_amount=167, price=1000):
    return Sale(
        resource_id=resource.id,
        seller_id=seller.id,
        buyer_id=buyer.id,
        price=price,
        vat_amount=vat_amount,
        net_price=price - vat_amount,
        platform_commission=0,
        seller_earnings=0,
        royalty_rate=0.6,
        seller_tier="Bronze",
        buyer_email=buyer.email,
        buyer_country="GB",
    )


async def test_paid_checkout_issues_invoice_to_buyer(client, db, verified, no_email, seller, buyer, resource):
    pay(client, resource, seller, buyer)

    invoice = await db.invoices.find_one({})
    assert invoice["invoice_number"] == "INV-1001"
    assert invoice["buyer"]["user_id"] == buyer.id
    assert invoice["buyer"]["is_business_buyer"] is True
    assert invoice["resource_title"] == resource.title
    assert invoice["pricing"]["subtotal"] == 833
    assert invoice["pricing"]["vat_amount"] == 167
    assert invoice["pricing"]["total"] == 1000
    assert invoice["pricing"]["vat_rate"] == 0.2005
    assert invoice["email_sent"] is True
    assert buyer.email in [call.args[0] for call in no_email.call_args_list]


async def test_invoice_numbers_are_sequential_and_one_per_sale(client, db, verified, seller, buyer, resource):
    pay(client, resource, seller, buyer, session_id="cs_inv_1")
    pay(client, resource, seller, buyer, session_id="cs_inv_1")
    pay(client, resource, seller, buyer, session_id="cs_inv_2")

    numbers = sorted(doc["invoice_number"] for doc in await db.invoices.find({}).to_list(None))
    assert numbers == ["INV-1001", "INV-1002"]


async def test_invoice_generation_can_be_disabled(client, db, verified, seller, buyer, resource, monkeypatch):
    monkeypatch.setattr(settings, "INVOICE_AUTO_GENERATE", False)

    pay(client, resource, seller, buyer)

    assert await db.sales.count_documents({}) == 1
    assert await db.invoices.count_documents({}) == 0


async def test_failed_invoice_email_is_recorded(db, no_email, seller, buyer, resource):
    no_email.return_value = False

    invoice = await invoices.generate_invoice(sale_for(seller, buyer, resource))

    assert invoice.email_sent is False
    assert invoice.email_error == "Email delivery failed"
    stored = await db.invoices.find_one({"id": invoice.id})
    assert stored["email_error"] == "Email delivery failed"


async def test_business_buyer_with_vat_number_gets_reverse_charge(db, seller, buyer, resource):
    await db.users.update_one(
        {"id": buyer.id}, {"$set": {"company_name": "Hillside Academy", "vat_number": "DE123456789"}}
    )

    invoice = await invoices.generate_invoice(sale_for(seller, buyer, resource, vat_amount=0))

    assert invoice.buyer.company_name == "Hillside Academy"
    assert invoice.pricing.vat_applied is False
    assert invoice.pricing.vat_reverse_charge is True
    assert invoice.pricing.vat_exempt_reason == invoices.REVERSE_CHARGE_REASON


async def test_individual_buyer_without_vat_is_exempt_not_reverse_charged(db, seller, resource):
    teacher = User(email="t2@example.com", first_name="Tom", role="teacher", vat_number="GB1")
    await db.users.insert_one(teacher.model_dump())

    invoice = await invoices.generate_invoice(sale_for(seller, teacher, resource, vat_amount=0))

    assert invoice.buyer.is_business_buyer is False
    assert invoice.buyer.vat_number is None
    assert invoice.pricing.vat_reverse_charge is False
    assert invoice.pricing.vat_exempt_reason == invoices.NO_VAT_REASON


async def test_refund_marks_invoice_refunded(client, db, verified, seller, buyer, resource):
    pay(client, resource, seller, buyer)
    refund = {"id": "evt_ref", "type": "charge.refunded", "data": {"object": {
        "id": "ch_1", "payment_intent": "pi_cs_inv_1", "amount_refunded": 1000, "refunds": {"data": []},
    }}}

    client.post(WEBHOOK_URL, content=json.dumps(refund), headers={"stripe-signature": "t=1,v1=fake"})

    assert (await db.invoices.find_one({}))["status"] == "refunded"


async def test_buyer_lists_and_reads_own_invoices(client, db, verified, login_as, seller, buyer, resource):
    pay(client, resource, seller, buyer)
    login_as(buyer)

    listing = client.get("/api/v1/invoices/my-invoices").json()

    assert listing["pagination"]["total"] == 1
    first = listing["invoices"][0]
    assert first["pricing"]["total"] == "£10.00"
    assert first["pricing"]["vat_rate"] == "20%"
    assert client.get(f"/api/v1/invoices/{first['id']}").json()["invoice_number"] == "INV-1001"
    assert client.post(f"/api/v1/invoices/{first['id']}/resend").json()["email_sent"] is True


async def test_other_users_cannot_read_an_invoice(client, db, verified, login_as, seller, buyer, resource):
    pay(client, resource, seller, buyer)
    invoice = await db.invoices.find_one({})
    login_as(seller)

    assert client.get(f"/api/v1/invoices/{invoice['id']}").status_code == 403
    assert client.get("/api/v1/invoices/missing").status_code == 404


async def test_admin_generates_missing_invoice(client, db, login_as, admin, seller, buyer, resource):
    sale = sale_for(seller, buyer, resource)
    await db.sales.insert_one(sale.model_dump(exclude_none=True))
    login_as(admin)

    response = client.post(f"/api/v1/admin/sales/{sale.id}/invoice")

    assert response.status_code == 200
    assert response.json()["invoice_number"] == "INV-1001"
    assert client.post("/api/v1/admin/sales/nope/invoice").status_code == 404
