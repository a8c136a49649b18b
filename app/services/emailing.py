import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import List, Optional
from datetime import datetime
import logging
import os
import uuid

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.errors import EmailError

logger = logging.getLogger(__name__)

_templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates", "emails")
_jinja_env = Environment(
    loader=FileSystemLoader(_templates_dir),
    autoescape=select_autoescape(["html", "xml"]),
)


def render_email(template_name: str, **context) -> str:
    base = {"app_name": settings.APP_NAME}
    base.update(context or {})
    try:
        template = _jinja_env.get_template(template_name)
    except TemplateNotFound:
        raise EmailError(f"Email template not found: {template_name}")
    return template.render(**base)


def send_email_smtp(to_addr: str, subject: str, html: str, text: Optional[str] = None) -> bool:
    """Deliver one message; returns False instead of raising so callers never fail on email"""
    try:
        if not settings.SMTP_HOST or not settings.MAIL_FROM:
            logger.error("SMTP not configured; cannot send email")
            return False
        sender = settings.MAIL_FROM.strip()
        domain = sender.split("@")[-1] if "@" in sender else "localhost"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{settings.APP_NAME} <{sender}>" if "<" not in sender else sender
        msg["To"] = to_addr
        msg["Message-ID"] = f"<{uuid.uuid4()}@{domain}>"
        msg["Date"] = datetime.utcnow().strftime("%a, %d %b %Y %H:%M:%S +0000")
        msg.attach(MIMEText(text or "Open this message in an HTML-capable email client.", "plain", _charset="utf-8"))
        msg.attach(MIMEText(html or "", "html", _charset="utf-8"))

        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            server.starttls()
            if settings.SMTP_USER or settings.SMTP_PASS:
                server.login(settings.SMTP_USER, settings.SMTP_PASS)
            server.sendmail(sender, [to_addr], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as ex:
        logger.exception(f"SMTP send failed: {ex}")
        return False


async def send_templated(to_addr: str, subject: str, template_name: str, **context) -> bool:
    if not to_addr:
        return False
    html = render_email(template_name, **context)
    return await run_in_threadpool(send_email_smtp, to_addr, subject, html)


def _dashboard(path: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}{path}"


async def send_sale_notification(email: str, first_name: str, resource_title: str, amount: str, buyer: Optional[str]) -> bool:
    return await send_templated(
        email, f"You made a sale: {resource_title}", "sale.html",
        first_name=first_name, resource_title=resource_title, amount=amount, buyer=buyer,
        action_url=_dashboard("/teacher/earnings"), action_text="View earnings",
    )


async def send_refund_notification(email: str, first_name: str, resource_title: str, amount: str, reason: str) -> bool:
    return await send_templated(
        email, f"Refund issued: {resource_title}", "refund.html",
        first_name=first_name, resource_title=resource_title, amount=amount, reason=reason,
    )


async def send_payout_confirmation(email: str, first_name: str, amount: str, arrival_date: str) -> bool:
    return await send_templated(
        email, "Your payout has been sent", "payout_confirmation.html",
        first_name=first_name, amount=amount, arrival_date=arrival_date,
    )


async def send_payout_failed(email: str, first_name: str, amount: str, reason: str) -> bool:
    return await send_templated(
        email, "Your payout failed", "payout_failed.html",
        first_name=first_name, amount=amount, reason=reason,
        action_url=_dashboard("/teacher/withdrawals"), action_text="Review payout details",
    )


async def send_account_status(email: str, first_name: str, status: str, requirements: Optional[List[str]] = None) -> bool:
    return await send_templated(
        email, f"Your payout account is {status}", "account_status.html",
        first_name=first_name, status=status, requirements=requirements or [],
    )


async def send_bank_account_connected(email: str, first_name: str, bank_name: Optional[str], last4: Optional[str]) -> bool:
    return await send_templated(
        email, "Bank account connected", "bank_account_connected.html",
        first_name=first_name, bank_name=bank_name, last4=last4,
    )


async def send_subscription_email(
    email: str,
    first_name: str,
    subject: str,
    message: str,
    amount: Optional[str] = None,
    next_billing_date: Optional[str] = None,
    action_path: str = "/dashboard/subscription",
) -> bool:
    return await send_templated(
        email, subject, "subscription.html",
        first_name=first_name, heading=subject, message=message, amount=amount,
        next_billing_date=next_billing_date, action_url=_dashboard(action_path),
    )


async def send_invoice(email: str, buyer_name: str, invoice: dict) -> bool:
    return await send_templated(
        email, f"Invoice {invoice['invoice_number']} - {invoice['platform']['name']}", "invoice.html",
        first_name=buyer_name, invoice=invoice,
        action_url=_dashboard("/dashboard/invoices"), action_text="View invoices",
    )
