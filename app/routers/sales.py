from fastapi import APIRouter, Depends
from typing import Optional
from datetime import datetime
import logging
import math

from starlette.concurrency import run_in_threadpool

from app.models.resource import Resource, ResourcePurchase
from app.models.sale import Sale, PurchaseRequest, RoyaltyPreviewRequest
from app.models.user import User
from app.db.session import db
from app.core.config import settings
from app.core.errors import AuthorizationError, NotFoundError, ValidationError
from app.services import ledger, seller_tier, stripe_service
from app.services.auth import get_current_user, require_roles
from app.services.royalty import (
    CURRENCY_MULTIPLIERS,
    TIER_THRESHOLDS,
    calculate_royalty,
    format_currency,
    from_smallest_unit,
    to_smallest_unit,
)
from app.services.webhooks import settle_resource_sale

logger = logging.getLogger(__name__)
router = APIRouter()

def _format_sale(sale: Sale) -> dict:
    return {
        "id": sale.id,
        "resource_id": sale.resource_id,
        "buyer_id": sale.buyer_id,
        "price": format_currency(sale.price, sale.currency),
        "earnings": format_currency(sale.seller_earnings, sale.currency),
        "currency": sale.currency,
        "royalty_rate": sale.royalty_rate,
        "seller_tier": sale.seller_tier,
        "status": sale.status,
        "sale_date": sale.sale_date,
    }

@router.post("/sales/purchase")
async def purchase_resource(
    purchase_data: PurchaseRequest,
    current_user: User = Depends(get_current_user)
):
    resource_doc = await db.resources.find_one({"id": purchase_data.resource_id})
    if not resource_doc:
        raise NotFoundError("Resource not found")
    resource = Resource(**resource_doc)

    if resource.status != "approved":
        raise ValidationError("Resource is not available for purchase")

    if resource.seller_id == current_user.id:
        raise ValidationError("You cannot purchase your own resource. You already have access to download it.")

    seller = await db.users.find_one({"id": resource.seller_id})
    if not seller:
        raise NotFoundError("Seller not found")

    if resource.is_free:
        purchase = ResourcePurchase(
            resource_id=resource.id,
            buyer_id=current_user.id,
            price_paid=0,
            currency=resource.currency,
        )
        sale = Sale(
            resource_id=resource.id,
            seller_id=resource.seller_id,
            buyer_id=current_user.id,
            price=0,
            currency=resource.currency,
            platform_commission=0,
            seller_earnings=0,
            royalty_rate=0,
            seller_tier="N/A",
            buyer_email=current_user.email,
            buyer_country=purchase_data.buyer_country,
        )
        purchase.sale_id = sale.id
        await db.sales.insert_one(sale.model_dump(exclude_none=True))
        await db.resource_purchases.insert_one(purchase.model_dump(exclude_none=True))
        await db.resources.update_one({"id": resource.id}, {"$inc": {"downloads": 1}})
        return {
            "success": True,
            "message": "Free resource downloaded successfully",
            "purchase_id": purchase.id,
            "sale_id": sale.id,
            "download_url": resource.main_file,
        }

    existing_purchase = await db.resource_purchases.find_one({
        "resource_id": resource.id,
        "buyer_id": current_user.id,
        "status": "completed",
    })
    if existing_purchase:
        raise ValidationError("You have already purchased this resource")

    tier = await seller_tier.get_or_create_tier(resource.seller_id)
    amount = to_smallest_unit(resource.price, resource.currency)

    frontend_url = settings.FRONTEND_URL.rstrip("/")
    session = await run_in_threadpool(
        stripe_service.create_resource_checkout_session,
        amount=amount,
        currency=resource.currency,
        resource_id=resource.id,
        resource_title=resource.title,
        buyer_email=current_user.email,
        success_url=f"{frontend_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{frontend_url}/resources/{resource.id}?payment=cancelled",
        metadata={
            "sellerId": resource.seller_id,
            "buyerId": current_user.id,
            "buyerEmail": current_user.email,
            "buyerCountry": purchase_data.buyer_country,
            "sellerTier": tier.current_tier,
            "royaltyRate": tier.royalty_rate,
        },
    )
    logger.info(f"Checkout session {session['id']} created for resource {resource.id} by {current_user.id}")

    return {
        "success": True,
        "message": "Checkout session created. Redirecting to payment...",
        "checkout_url": session["url"],
        "session_id": session["id"],
        "resource_id": resource.id,
        "resource_title": resource.title,
        "price": format_currency(amount, resource.currency),
    }

@router.get("/sales/my-sales")
async def get_my_sales(
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

    sales = await db.sales.find(query).sort("sale_date", -1).skip((page - 1) * limit).limit(limit).to_list(limit)
    total = await db.sales.count_documents(query)

    return {
        "sales": [_format_sale(Sale(**s)) for s in sales],
        "pagination": {
            "total": total,
            "total_pages": math.ceil(total / limit) if limit else 0,
            "current_page": page,
            "per_page": limit,
        },
    }

@router.get("/sales/my-purchases")
async def get_my_purchases(current_user: User = Depends(get_current_user)):
    purchases = await db.resource_purchases.find({"buyer_id": current_user.id}).sort("purchased_at", -1).to_list(1000)

    result = []
    for purchase_doc in purchases:
        purchase = ResourcePurchase(**purchase_doc)
        resource = await db.resources.find_one({"id": purchase.resource_id})
        result.append({
            "purchase": purchase,
            "resource_title": resource["title"] if resource else None,
            "price_paid": format_currency(purchase.price_paid, purchase.currency),
        })
    return result

@router.get("/sales/purchase/session/{session_id}")
async def get_purchase_by_session(session_id: str, current_user: User = Depends(get_current_user)):
    """Confirm a checkout after redirect; settles it here if the webhook hasn't arrived yet"""
    session = await run_in_threadpool(stripe_service.retrieve_checkout_session, session_id)

    metadata = session.get("metadata") or {}
    if metadata.get("buyerId") != current_user.id:
        raise AuthorizationError("Unauthorized access to this purchase")

    resource_id = metadata.get("resourceId") or session.get("client_reference_id")
    if not resource_id:
        raise ValidationError("Resource information not found in session")

    resource = await db.resources.find_one({"id": resource_id})
    if not resource:
        raise NotFoundError("Resource not found")

    sale = await db.sales.find_one({"stripe_session_id": session_id})
    if not sale and session.get("payment_status") == "paid":
        logger.info(f"Settling session {session_id} from redirect (webhook delayed)")
        await settle_resource_sale(session)
        sale = await db.sales.find_one({"stripe_session_id": session_id})

    purchase = await db.resource_purchases.find_one({"stripe_session_id": session_id})
    return {
        "payment_status": session.get("payment_status"),
        "resource": {"id": resource["id"], "title": resource["title"], "download_url": resource.get("main_file")},
        "sale": _format_sale(Sale(**sale)) if sale else None,
        "purchase": ResourcePurchase(**purchase) if purchase else None,
    }

@router.get("/sales/earnings")
async def get_earnings_dashboard(current_user: User = Depends(require_roles("teacher"))):
    balances = {}
    breakdowns = {}
    for currency in ("GBP", "USD", "EUR"):
        balance = await ledger.get_current_balance(current_user.id, currency)
        balances[currency] = {"amount": balance, "formatted": format_currency(balance, currency)}
        breakdowns[currency] = await ledger.get_balance_breakdown(current_user.id, currency)

    now = datetime.utcnow()
    start_of_month = datetime(now.year, now.month, 1)
    total_sales = await db.sales.count_documents({"seller_id": current_user.id, "status": "completed"})
    this_month_sales = await db.sales.count_documents({
        "seller_id": current_user.id,
        "status": "completed",
        "sale_date": {"$gte": start_of_month},
    })

    earnings_by_currency = await db.sales.aggregate([
        {"$match": {"seller_id": current_user.id, "status": "completed"}},
        {"$group": {"_id": "$currency", "total_earnings": {"$sum": "$seller_earnings"}, "count": {"$sum": 1}}},
    ]).to_list(None)

    recent_sales = await db.sales.find({"seller_id": current_user.id, "status": "completed"}).sort("sale_date", -1).limit(10).to_list(10)
    tier = await seller_tier.get_or_create_tier(current_user.id)

    return {
        "balances": balances,
        "breakdown": breakdowns,
        "earnings": {
            row["_id"]: {
                "amount": row["total_earnings"],
                "formatted": format_currency(row["total_earnings"], row["_id"]),
                "count": row["count"],
            }
            for row in earnings_by_currency
        },
        "stats": {"total_sales": total_sales, "this_month_sales": this_month_sales},
        "tier": _tier_progress(tier),
        "recent_sales": [_format_sale(Sale(**s)) for s in recent_sales],
    }

def _tier_progress(tier) -> dict:
    # Thresholds are in major units; last_12_months_sales is stored in minor units
    current_sales = from_smallest_unit(tier.last_12_months_sales, "GBP")
    next_tier = {"Bronze": "Silver", "Silver": "Gold"}.get(tier.current_tier)

    progress = {
        "current_tier": tier.current_tier,
        "royalty_rate": tier.royalty_rate,
        "last_12_months_sales": tier.last_12_months_sales,
        "last_12_months_formatted": format_currency(tier.last_12_months_sales, "GBP"),
        "next_tier": next_tier,
        "next_tier_rate": None,
        "next_tier_threshold": None,
        "progress_to_next_tier": 100.0,
        "amount_to_next_tier": 0,
    }
    if next_tier:
        threshold = TIER_THRESHOLDS[next_tier]["min"]
        progress.update({
            "next_tier_rate": TIER_THRESHOLDS[next_tier]["rate"],
            "next_tier_threshold": threshold,
            "progress_to_next_tier": round(min(100.0, current_sales / threshold * 100), 2),
            "amount_to_next_tier": max(0, threshold * CURRENCY_MULTIPLIERS["GBP"] - tier.last_12_months_sales),
        })
    return progress

@router.get("/sales/tier")
async def get_my_tier(current_user: User = Depends(require_roles("teacher"))):
    tier = await seller_tier.get_or_create_tier(current_user.id)
    return {"tier": tier, "progress": _tier_progress(tier)}

@router.get("/sales/ledger")
async def get_my_ledger(
    currency: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
    current_user: User = Depends(require_roles("teacher"))
):
    entries = await ledger.list_entries(current_user.id, currency.upper() if currency else None, limit, skip)
    return {"entries": entries}

@router.post("/sales/royalty-preview")
async def royalty_preview(
    preview: RoyaltyPreviewRequest,
    current_user: User = Depends(get_current_user)
):
    """Royalty breakdown for a hypothetical price; nothing is persisted"""
    if preview.royalty_rate is None:
        tier = await db.seller_tiers.find_one({"seller_id": current_user.id})
        if tier:
            rate, tier_name = tier["royalty_rate"], tier["current_tier"]
        else:
            rate, tier_name = TIER_THRESHOLDS["Bronze"]["rate"], "Bronze"
    else:
        rate, tier_name = preview.royalty_rate, preview.seller_tier or "Custom"

    return calculate_royalty(preview.price, preview.currency.upper(), preview.buyer_country, rate, tier_name)
