from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging

from pymongo import ReturnDocument

from app.db.session import db
from app.models.subscription import UserSubscription, SubscriptionPlan, ACTIVE_STATUSES, USAGE_KEYS

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "active": "active",
    "trialing": "trial",
    "past_due": "past_due",
    "canceled": "cancelled",
    "unpaid": "expired",
}


def map_stripe_status(stripe_status: str, current: str = "active") -> str:
    return STRIPE_STATUS_MAP.get(stripe_status, current)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.utcfromtimestamp(value) if value else None


def extract_period(stripe_subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Billing period of a Stripe subscription.

    Newer API versions only carry the period on the first subscription item.
    """
    items = (stripe_subscription.get("items") or {}).get("data") or [{}]
    first_item = items[0] if items else {}
    start = (
        stripe_subscription.get("current_period_start")
        or first_item.get("current_period_start")
        or stripe_subscription.get("start_date")
    )
    end = stripe_subscription.get("current_period_end") or first_item.get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


async def get_plan(plan_id: str) -> Optional[SubscriptionPlan]:
    plan = await db.subscription_plans.find_one({"id": plan_id})
    return SubscriptionPlan(**plan) if plan else None


async def find_plan_by_stripe_price_id(price_id: str) -> Optional[SubscriptionPlan]:
    if not price_id:
        return None
    plan = await db.subscription_plans.find_one({"stripe_price_id": price_id})
    return SubscriptionPlan(**plan) if plan else None


async def find_active_by_user(user_id: str) -> Optional[UserSubscription]:
    subscription = await db.user_subscriptions.find_one(
        {"user_id": user_id, "status": {"$in": ACTIVE_STATUSES}}
    )
    return UserSubscription(**subscription) if subscription else None


async def find_all_by_user(user_id: str) -> List[UserSubscription]:
    subscriptions = await db.user_subscriptions.find({"user_id": user_id}).sort("created_at", -1).to_list(100)
    return [UserSubscription(**s) for s in subscriptions]


async def find_by_stripe_subscription_id(stripe_subscription_id: str) -> Optional[UserSubscription]:
    subscription = await db.user_subscriptions.find_one({"stripe_subscription_id": stripe_subscription_id})
    return UserSubscription(**subscription) if subscription else None


async def has_active_subscription(user_id: str) -> bool:
    count = await db.user_subscriptions.count_documents(
        {"user_id": user_id, "status": {"$in": ACTIVE_STATUSES}}
    )
    return count > 0


async def has_feature_access(user_id: str, feature_key: str) -> bool:
    subscription = await find_active_by_user(user_id)
    if not subscription:
        return False
    plan = await get_plan(subscription.plan_id)
    if not plan:
        return False
    return feature_key.lower() in plan.features


async def increment_usage(user_id: str, usage_key: str, amount: int = 1) -> Optional[UserSubscription]:
    if usage_key not in USAGE_KEYS:
        raise ValueError(f"Unknown usage key: {usage_key}")
    subscription = await find_active_by_user(user_id)
    if not subscription:
        return None
    updated = await db.user_subscriptions.find_one_and_update(
        {"id": subscription.id},
        {"$inc": {f"usage.{usage_key}": amount}},
        return_document=ReturnDocument.AFTER,
    )
    return UserSubscription(**updated)


async def check_usage_limit(user_id: str, usage_key: str) -> Dict[str, Any]:
    subscription = await find_active_by_user(user_id)
    plan = await get_plan(subscription.plan_id) if subscription else None
    if not subscription or not plan:
        return {"within_limit": False, "current": 0, "limit": 0, "has_subscription": False}

    current = getattr(subscription.usage, usage_key, 0)
    limit = plan.limits.get(usage_key)
    if limit is None:
        return {"within_limit": True, "current": current, "limit": None, "has_subscription": True}
    return {"within_limit": current < limit, "current": current, "limit": limit, "has_subscription": True}


def fresh_usage() -> Dict[str, Any]:
    usage = {key: 0 for key in USAGE_KEYS}
    usage["last_reset_at"] = datetime.utcnow()
    return usage


async def reset_usage_for_period(subscription_id: str) -> Optional[UserSubscription]:
    updated = await db.user_subscriptions.find_one_and_update(
        {"id": subscription_id},
        {"$set": {"usage": fresh_usage(), "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return UserSubscription(**updated) if updated else None


async def get_expiring_soon(days_ahead: int = 7) -> List[UserSubscription]:
    now = datetime.utcnow()
    subscriptions = await db.user_subscriptions.find({
        "status": {"$in": ["active", "trial"]},
        "current_period_end": {"$gte": now, "$lte": now + timedelta(days=days_ahead)},
        "cancel_at_period_end": True,
    }).to_list(None)
    return [UserSubscription(**s) for s in subscriptions]


async def update_from_stripe_event(stripe_subscription_id: str, updates: Dict[str, Any]) -> Optional[UserSubscription]:
    updates = dict(updates, updated_at=datetime.utcnow())
    updated = await db.user_subscriptions.find_one_and_update(
        {"stripe_subscription_id": stripe_subscription_id},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    return UserSubscription(**updated) if updated else None
