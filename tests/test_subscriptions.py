from datetime import datetime, timedelta

import pytest

from app.models.subscription import SubscriptionPlan, UserSubscription
from app.services import subscription as subscriptions


@pytest.fixture
async def plan(db):
    item = SubscriptionPlan(
        name="Recruiter Pro",
        slug="recruiter-pro",
        price=4900,
        stripe_price_id="price_pro",
        trial_days=14,
        features=["candidate_search", "featured_jobs"],
        limits={"candidate_searches": 2, "featured_listings": None},
    )
    await db.subscription_plans.insert_one(item.model_dump())
    await db.subscription_plans.insert_one(SubscriptionPlan(name="Legacy", slug="legacy", is_active=False).model_dump())
    return item


async def subscribe(db, user, plan, status="active", **fields):
    subscription = UserSubscription(
        user_id=user.id,
        plan_id=plan.id,
        status=status,
        stripe_subscription_id="sub_1",
        current_period_end=datetime.utcnow() + timedelta(days=30),
        **fields,
    )
    await db.user_subscriptions.insert_one(subscription.model_dump())
    return subscription


def test_stripe_status_mapping():
    assert subscriptions.map_stripe_status("trialing") == "trial"
    assert subscriptions.map_stripe_status("canceled") == "cancelled"
    assert subscriptions.map_stripe_status("unpaid") == "expired"
    assert subscriptions.map_stripe_status("incomplete", "past_due") == "past_due"


def test_period_falls_back_to_first_item():
    start, end = subscriptions.extract_period({
        "items": {"data": [{"current_period_start": 1760000000, "current_period_end": 1762678400}]},
    })

    assert start == datetime.utcfromtimestamp(1760000000)
    assert end == datetime.utcfromtimestamp(1762678400)


async def test_feature_access_follows_active_plan(db, buyer, plan):
    assert await subscriptions.has_feature_access(buyer.id, "candidate_search") is False

    await subscribe(db, buyer, plan)

    assert await subscriptions.has_feature_access(buyer.id, "candidate_search") is True
    assert await subscriptions.has_feature_access(buyer.id, "bulk_messaging") is False


async def test_expired_subscription_grants_nothing(db, buyer, plan):
    await subscribe(db, buyer, plan, status="expired")

    assert await subscriptions.has_active_subscription(buyer.id) is False
    assert await subscriptions.has_feature_access(buyer.id, "candidate_search") is False


async def test_usage_limits(db, buyer, plan):
    await subscribe(db, buyer, plan)

    await subscriptions.increment_usage(buyer.id, "candidate_searches")
    assert (await subscriptions.check_usage_limit(buyer.id, "candidate_searches"))["within_limit"] is True

    await subscriptions.increment_usage(buyer.id, "candidate_searches")
    result = await subscriptions.check_usage_limit(buyer.id, "candidate_searches")
    assert result == {"within_limit": False, "current": 2, "limit": 2, "has_subscription": True}

    unlimited = await subscriptions.check_usage_limit(buyer.id, "featured_listings")
    assert unlimited["within_limit"] is True
    assert unlimited["limit"] is None


async def test_increment_unknown_usage_key_raises(db, buyer, plan):
    await subscribe(db, buyer, plan)

    with pytest.raises(ValueError):
        await subscriptions.increment_usage(buyer.id, "downloads")


async def test_reset_usage_for_period(db, buyer, plan):
    subscription = await subscribe(db, buyer, plan)
    await subscriptions.increment_usage(buyer.id, "resource_uploads", 5)

    updated = await subscriptions.reset_usage_for_period(subscription.id)

    assert updated.usage.resource_uploads == 0


async def test_expiring_soon_lists_cancelling_subscriptions(db, buyer, seller, plan):
    await subscribe(db, buyer, plan, cancel_at_period_end=True, current_period_start=datetime.utcnow())
    await db.user_subscriptions.update_one(
        {"user_id": buyer.id}, {"$set": {"current_period_end": datetime.utcnow() + timedelta(days=3)}}
    )
    await subscribe(db, seller, plan)

    expiring = await subscriptions.get_expiring_soon(7)

    assert [s.user_id for s in expiring] == [buyer.id]


async def test_plans_endpoint_lists_active_plans(client, plan):
    response = client.get("/api/v1/subscriptions/plans")

    assert response.status_code == 200
    assert [p["slug"] for p in response.json()] == ["recruiter-pro"]


async def test_create_checkout_passes_plan_to_stripe(client, login_as, buyer, plan, mocker):
    checkout = mocker.patch(
        "app.services.stripe_service.create_subscription_checkout_session",
        return_value={"id": "cs_sub_1", "url": "https://checkout.stripe.test/cs_sub_1"},
    )
    login_as(buyer)

    response = client.post("/api/v1/subscriptions/create-checkout", json={"plan_id": plan.id})

    assert response.status_code == 200
    assert response.json()["checkout_url"] == "https://checkout.stripe.test/cs_sub_1"
    kwargs = checkout.call_args.kwargs
    assert kwargs["price_id"] == "price_pro"
    assert kwargs["trial_days"] == 14
    assert kwargs["metadata"]["userId"] == buyer.id
    assert kwargs["metadata"]["planId"] == plan.id


async def test_create_checkout_refuses_second_subscription(client, db, login_as, buyer, plan):
    await subscribe(db, buyer, plan)
    login_as(buyer)

    response = client.post("/api/v1/subscriptions/create-checkout", json={"plan_id": plan.id})

    assert response.status_code == 409


async def test_create_checkout_for_missing_plan(client, login_as, buyer):
    login_as(buyer)

    response = client.post("/api/v1/subscriptions/create-checkout", json={"plan_id": "nope"})

    assert response.status_code == 404


async def test_my_subscription_and_usage_endpoints(client, db, login_as, buyer, plan):
    await subscribe(db, buyer, plan)
    login_as(buyer)

    mine = client.get("/api/v1/subscriptions/my-subscription").json()
    usage = client.get("/api/v1/subscriptions/usage/candidate_searches").json()
    access = client.get("/api/v1/subscriptions/feature-access/featured_jobs").json()

    assert mine["has_subscription"] is True
    assert mine["plan"]["slug"] == "recruiter-pro"
    assert usage["limit"] == 2
    assert access["has_access"] is True
    assert client.get("/api/v1/subscriptions/usage/unknown").status_code == 400
