from fastapi import APIRouter, Depends
from typing import List
import logging

from starlette.concurrency import run_in_threadpool

from app.models.subscription import SubscriptionCheckoutRequest, SubscriptionPlan, USAGE_KEYS
from app.models.user import User
from app.db.session import db
from app.core.config import settings
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.services import stripe_service, subscription as subscriptions
from app.services.auth import get_current_user

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/subscriptions/plans", response_model=List[SubscriptionPlan])
async def get_plans():
    plans = await db.subscription_plans.find({"is_active": True}).sort("price", 1).to_list(100)
    return [SubscriptionPlan(**plan) for plan in plans]

@router.post("/subscriptions/create-checkout")
async def create_subscription_checkout(
    checkout_data: SubscriptionCheckoutRequest,
    current_user: User = Depends(get_current_user)
):
    plan = await subscriptions.get_plan(checkout_data.plan_id)
    if not plan:
        raise NotFoundError("Subscription plan not found")

    if not plan.is_active:
        raise ValidationError("This subscription plan is no longer available")

    if not plan.stripe_price_id:
        raise ValidationError("This plan is not yet available for purchase. Please contact support.")

    if await subscriptions.has_active_subscription(current_user.id):
        raise ConflictError(
            "You already have an active subscription. Please manage your existing subscription or cancel it first."
        )

    frontend_url = settings.FRONTEND_URL.rstrip("/")
    session = await run_in_threadpool(
        stripe_service.create_subscription_checkout_session,
        price_id=plan.stripe_price_id,
        success_url=f"{frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{frontend_url}/subscription/cancel?plan={plan.slug}",
        metadata={
            "userId": current_user.id,
            "planId": plan.id,
            "planName": plan.name,
            "planSlug": plan.slug,
        },
        customer_id=current_user.stripe_customer_id,
        customer_email=current_user.email,
        trial_days=plan.trial_days,
    )
    logger.info(f"Subscription checkout {session['id']} created for user {current_user.id} plan {plan.slug}")

    return {"checkout_url": session["url"], "session_id": session["id"]}

@router.get("/subscriptions/my-subscription")
async def get_my_subscription(current_user: User = Depends(get_current_user)):
    current = await subscriptions.find_active_by_user(current_user.id)
    if not current:
        return {"subscription": None, "has_subscription": False}

    plan = await subscriptions.get_plan(current.plan_id)
    return {
        "subscription": current,
        "plan": plan,
        "has_subscription": True,
        "is_in_trial": current.is_in_trial,
        "days_remaining": current.days_remaining,
    }

@router.get("/subscriptions/history")
async def get_subscription_history(current_user: User = Depends(get_current_user)):
    return {"subscriptions": await subscriptions.find_all_by_user(current_user.id)}

@router.get("/subscriptions/feature-access/{feature_key}")
async def check_feature_access(feature_key: str, current_user: User = Depends(get_current_user)):
    has_access = await subscriptions.has_feature_access(current_user.id, feature_key)
    return {"feature": feature_key, "has_access": has_access}

@router.get("/subscriptions/usage/{usage_key}")
async def check_usage(usage_key: str, current_user: User = Depends(get_current_user)):
    if usage_key not in USAGE_KEYS:
        raise ValidationError(f"Unknown usage key: {usage_key}")
    result = await subscriptions.check_usage_limit(current_user.id, usage_key)
    return dict(result, usage_key=usage_key)
