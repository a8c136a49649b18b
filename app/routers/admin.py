from fastapi import APIRouter, Depends
from typing import List, Optional
import logging

from app.models.user import User, UserCreate
from app.models.webhook_event import WebhookEvent
from app.db.session import db
from app.core.errors import AuthorizationError, ConflictError, NotFoundError
from app.services import seller_tier, subscription as subscriptions, webhook_events
from app.services.auth import get_admin_user, get_current_user_optional, hash_password
from app.services.webhooks import dispatch_event

logger = logging.getLogger(__name__)
router = APIRouter()

@router.post("/admin/create-admin", response_model=dict)
async def create_admin_account(
    admin_data: UserCreate,
    current_user: Optional[User] = Depends(get_current_user_optional)
):
    """Create admin account - only allowed if no admin exists or by existing admin"""
    existing_admin = await db.users.find_one({"role": "admin"})

    # Allow creation if no admin exists (initial setup) or if current user is admin
    if existing_admin and (not current_user or current_user.role != "admin"):
        raise AuthorizationError("Admin account already exists. Only existing admins can create new admin accounts.")

    if await db.users.find_one({"email": admin_data.email}):
        raise ConflictError("User already exists")

    admin_dict = admin_data.model_dump()
    admin_dict.pop("password")
    admin_dict["role"] = "admin"

    user_obj = User(**admin_dict)
    user_doc = user_obj.model_dump()
    user_doc["hashed_password"] = hash_password(admin_data.password)
    await db.users.insert_one(user_doc)
    logger.info(f"Admin account created: {admin_data.email}")

    return {
        "message": "Admin account created successfully",
        "admin_id": user_obj.id,
        "email": admin_data.email
    }

@router.get("/admin/dashboard")
async def get_admin_dashboard(admin_user: User = Depends(get_admin_user)):
    total_users = await db.users.count_documents({})
    total_sales = await db.sales.count_documents({"status": "completed"})
    refunded_sales = await db.sales.count_documents({"status": "refunded"})
    pending_withdrawals = await db.withdrawal_requests.count_documents({"status": {"$in": ["pending", "processing"]}})
    active_subscriptions = await db.user_subscriptions.count_documents({"status": {"$in": ["active", "trial", "past_due"]}})
    failed_webhooks = await db.webhook_events.count_documents({"processing_result": "failed"})
    expiring_subscriptions = await subscriptions.get_expiring_soon(7)

    revenue = await db.sales.aggregate([
        {"$match": {"status": "completed"}},
        {"$group": {
            "_id": "$currency",
            "gross": {"$sum": "$price"},
            "commission": {"$sum": "$platform_commission"},
            "seller_earnings": {"$sum": "$seller_earnings"},
        }},
    ]).to_list(None)

    return {
        "stats": {
            "total_users": total_users,
            "total_sales": total_sales,
            "refunded_sales": refunded_sales,
            "pending_withdrawals": pending_withdrawals,
            "active_subscriptions": active_subscriptions,
            "failed_webhooks": failed_webhooks,
            "subscriptions_ending_this_week": len(expiring_subscriptions),
        },
        "revenue": {row["_id"]: {k: v for k, v in row.items() if k != "_id"} for row in revenue},
    }

@router.get("/admin/webhook-events", response_model=List[WebhookEvent])
async def get_webhook_events(
    event_type: str,
    limit: int = 10,
    admin_user: User = Depends(get_admin_user)
):
    return await webhook_events.get_recent_by_type(event_type, limit)

@router.get("/admin/webhook-events/failed", response_model=List[WebhookEvent])
async def get_failed_webhook_events(admin_user: User = Depends(get_admin_user)):
    return await webhook_events.get_failed_for_retry()

@router.post("/admin/webhook-events/{event_id}/retry")
async def retry_webhook_event(event_id: str, admin_user: User = Depends(get_admin_user)):
    """Re-run a recorded event that failed, from its stored payload"""
    if not await webhook_events.should_process_event(event_id):
        raise ConflictError("Event is already processed or out of retry attempts")

    record = await db.webhook_events.find_one({"event_id": event_id})
    if not record or not record.get("data"):
        raise NotFoundError("Webhook event not found")

    await dispatch_event({"id": event_id, "type": record["type"], "data": record["data"]})
    updated = await db.webhook_events.find_one({"event_id": event_id})
    logger.info(f"Webhook event {event_id} retried by {admin_user.id}: {updated['processing_result']}")
    return WebhookEvent(**updated)

@router.post("/admin/seller-tiers/recalculate")
async def recalculate_seller_tiers(admin_user: User = Depends(get_admin_user)):
    results = await seller_tier.update_all_tiers()
    return {"message": "Seller tiers recalculated", "results": results}
