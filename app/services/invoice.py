"""
Buyer invoices for resource sales.

One invoice per Sale (unique ``sale_id``), numbered sequentially from a
counter document. Generation runs after a sale commits and is safe to call
more than once; delivery failures are recorded on the invoice.
"""
from datetime import datetime
from typing import Any, Dict, Optional
import logging
import math

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.config import settings
from app.core.errors import NotFoundError
from app.db.session import db
from app.models.invoice import (
    BUSINESS_ROLES,
    Invoice,
    InvoiceBuyer,
    InvoicePlatform,
    InvoicePricing,
    InvoiceSeller,
)
from app.models.sale import Sale
from app.services import emailing
from app.services.royalty import format_currency

logger = logging.getLogger(__name__)

INVOICE_COUNTER_ID = "invoice_number"
REVERSE_CHARGE_REASON = "B2B Reverse Charge - VAT to be accounted for by recipient"
NO_VAT_REASON = "Non-VAT applicable region"


async def next_invoice_number() -> str:
    counter = await db.counters.find_one_and_update(
        {"_id": INVOICE_COUNTER_ID},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"{settings.INVOICE_PREFIX}-{settings.INVOICE_START_NUMBER + counter['value'] - 1}"


def build_pricing(sale: Sale, buyer: InvoiceBuyer) -> InvoicePricing:
    subtotal = sale.price - sale.vat_amount
    reverse_charge = sale.vat_amount == 0 and buyer.is_business_buyer and bool(buyer.vat_number)
    exempt_reason = None
    if sale.vat_amount == 0:
        exempt_reason = REVERSE_CHARGE_REASON if reverse_charge else NO_VAT_REASON

    return InvoicePricing(
        currency=sale.currency,
        subtotal=subtotal,
        vat_rate=round(sale.vat_amount / subtotal, 4) if sale.vat_amount > 0 and subtotal > 0 else 0.0,
        vat_amount=sale.vat_amount,
        total=sale.price,
        vat_applied=sale.vat_amount > 0,
        vat_reverse_charge=reverse_charge,
        vat_exempt_reason=exempt_reason,
    )


async def _buyer_details(sale: Sale) -> InvoiceBuyer:
    buyer = await db.users.find_one({"id": sale.buyer_id}) if sale.buyer_id else None
    if not buyer:
        return InvoiceBuyer(name="Guest", email=sale.buyer_email, country=sale.buyer_country or "GB")

    is_business = buyer.get("role") in BUSINESS_ROLES
    name = f"{buyer.get('first_name') or ''} {buyer.get('last_name') or ''}".strip() or buyer["email"]
    return InvoiceBuyer(
        user_id=buyer["id"],
        name=name,
        email=sale.buyer_email or buyer.get("email"),
        country=sale.buyer_country or "GB",
        is_business_buyer=is_business,
        company_name=buyer.get("company_name") if is_business else None,
        vat_number=buyer.get("vat_number") if is_business else None,
    )


async def generate_invoice(sale: Sale) -> Invoice:
    """Create the invoice for ``sale`` or return the existing one, then email it to the buyer"""
    existing = await db.invoices.find_one({"sale_id": sale.id})
    if existing:
        return Invoice(**existing)

    seller = await db.users.find_one({"id": sale.seller_id}) or {}
    resource = await db.resources.find_one({"id": sale.resource_id}) or {}
    buyer = await _buyer_details(sale)

    invoice = Invoice(
        invoice_number=await next_invoice_number(),
        sale_id=sale.id,
        buyer=buyer,
        seller=InvoiceSeller(
            user_id=sale.seller_id,
            name=f"{seller.get('first_name') or ''} {seller.get('last_name') or ''}".strip() or "Seller",
            email=seller.get("email"),
        ),
        platform=InvoicePlatform(
            name=settings.INVOICE_COMPANY_NAME,
            address=settings.INVOICE_COMPANY_ADDRESS or None,
            vat_number=settings.INVOICE_VAT_NUMBER or None,
        ),
        resource_id=sale.resource_id,
        resource_title=resource.get("title") or "Resource",
        pricing=build_pricing(sale, buyer),
        paid_date=sale.sale_date,
    )
    try:
        await db.invoices.insert_one(invoice.model_dump())
    except DuplicateKeyError:
        # Generated concurrently for the same sale; the number is simply skipped
        return Invoice(**await db.invoices.find_one({"sale_id": sale.id}))
    logger.info(f"Invoice {invoice.invoice_number} generated for sale {sale.id}")

    if settings.INVOICE_SEND_EMAIL:
        return await send_invoice_email(invoice)
    return invoice


def format_invoice(invoice: Invoice) -> Dict[str, Any]:
    pricing = invoice.pricing
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "issue_date": invoice.issue_date.strftime("%d/%m/%Y"),
        "status": invoice.status,
        "buyer": invoice.buyer.model_dump(),
        "seller": invoice.seller.model_dump(),
        "platform": invoice.platform.model_dump(),
        "resource": {"id": invoice.resource_id, "title": invoice.resource_title},
        "pricing": {
            "currency": pricing.currency,
            "subtotal": format_currency(pricing.subtotal, pricing.currency),
            "vat_rate": f"{pricing.vat_rate * 100:.0f}%",
            "vat_amount": format_currency(pricing.vat_amount, pricing.currency),
            "total": format_currency(pricing.total, pricing.currency),
            "vat_applied": pricing.vat_applied,
            "vat_reverse_charge": pricing.vat_reverse_charge,
            "vat_exempt_reason": pricing.vat_exempt_reason,
        },
    }


async def send_invoice_email(invoice: Invoice) -> Invoice:
    now = datetime.utcnow()
    if not invoice.buyer.email:
        updates = {"email_error": "Buyer has no email address"}
    elif await emailing.send_invoice(invoice.buyer.email, invoice.buyer.name, format_invoice(invoice)):
        updates = {"email_sent": True, "email_sent_at": now, "email_error": None}
        logger.info(f"Invoice email sent: {invoice.invoice_number} to {invoice.buyer.email}")
    else:
        updates = {"email_error": "Email delivery failed"}

    await db.invoices.update_one({"id": invoice.id}, {"$set": updates})
    return invoice.model_copy(update=updates)


async def get_user_invoices(user_id: str, page: int = 1, limit: int = 10, status: Optional[str] = None) -> Dict[str, Any]:
    query = {"buyer.user_id": user_id}
    if status:
        query["status"] = status

    total = await db.invoices.count_documents(query)
    docs = await db.invoices.find(query).sort("issue_date", -1).skip((page - 1) * limit).limit(limit).to_list(limit)
    return {
        "invoices": [format_invoice(Invoice(**doc)) for doc in docs],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if limit else 0,
        },
    }


async def get_invoice(invoice_id: str) -> Invoice:
    doc = await db.invoices.find_one({"id": invoice_id})
    if not doc:
        raise NotFoundError("Invoice not found")
    return Invoice(**doc)
