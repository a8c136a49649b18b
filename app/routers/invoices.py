from fastapi import APIRouter, Depends
from typing import Optional
import logging

from app.models.sale import Sale
from app.models.user import User
from app.db.session import db
from app.core.errors import AuthorizationError, NotFoundError, ValidationError
from app.services import invoice as invoices
from app.services.auth import get_admin_user, get_current_user

logger = logging.getLogger(__name__)
router = APIRouter()

async def _owned_invoice(invoice_id: str, user: User):
    invoice = await invoices.get_invoice(invoice_id)
    if user.role != "admin" and invoice.buyer.user_id != user.id:
        raise AuthorizationError("Unauthorized access to this invoice")
    return invoice

@router.get("/invoices/my-invoices")
async def get_my_invoices(
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    """Invoices for the current buyer, newest first"""
    return await invoices.get_user_invoices(current_user.id, max(page, 1), min(max(limit, 1), 100), status)

@router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, current_user: User = Depends(get_current_user)):
    invoice = await _owned_invoice(invoice_id, current_user)
    return invoices.format_invoice(invoice)

@router.post("/invoices/{invoice_id}/resend")
async def resend_invoice(invoice_id: str, current_user: User = Depends(get_current_user)):
    invoice = await invoices.send_invoice_email(await _owned_invoice(invoice_id, current_user))
    return {"email_sent": invoice.email_sent, "email_error": invoice.email_error}

@router.post("/admin/sales/{sale_id}/invoice")
async def generate_sale_invoice(sale_id: str, admin_user: User = Depends(get_admin_user)):
    """Generate (or return) the invoice for a sale whose automatic generation failed"""
    sale_doc = await db.sales.find_one({"id": sale_id})
    if not sale_doc:
        raise NotFoundError("Sale not found")
    sale = Sale(**sale_doc)
    if sale.price == 0:
        raise ValidationError("Free resources are not invoiced")

    invoice = await invoices.generate_invoice(sale)
    logger.info(f"Invoice {invoice.invoice_number} requested for sale {sale_id} by {admin_user.id}")
    return invoices.format_invoice(invoice)
