from datetime import datetime, timedelta

from app.models.sale import Sale
from app.services import seller_tier


async def add_sale(db, seller_id, net_price, currency="GBP", days_ago=0, status="completed"):
    sale = Sale(
        resource_id="res-1",
        seller_id=seller_id,
        buyer_id="buyer-1",
        price=net_price,
        currency=currency,
        net_price=net_price,
        platform_commission=0,
        seller_earnings=0,
        royalty_rate=0.6,
        seller_tier="Bronze",
        status=status,
        sale_date=datetime.utcnow() - timedelta(days=days_ago),
    )
    await db.sales.insert_one(sale.model_dump(exclude_none=True))


async def test_new_seller_starts_bronze(db):
    tier = await seller_tier.get_or_create_tier("seller-1")

    assert tier.current_tier == "Bronze"
    assert tier.royalty_rate == 0.6
    assert [change.tier for change in tier.tier_history] == ["Bronze"]
    assert await db.seller_tiers.count_documents({"seller_id": "seller-1"}) == 1


async def test_get_or_create_is_idempotent(db):
    first = await seller_tier.get_or_create_tier("seller-1")
    second = await seller_tier.get_or_create_tier("seller-1")

    assert first.id == second.id
    assert await db.seller_tiers.count_documents({}) == 1


async def test_trailing_sales_ignore_old_and_refunded(db):
    await add_sale(db, "seller-1", 50000)
    await add_sale(db, "seller-1", 30000, days_ago=200)
    await add_sale(db, "seller-1", 99999, days_ago=400)
    await add_sale(db, "seller-1", 99999, status="refunded")
    await add_sale(db, "seller-2", 99999)

    sales = await seller_tier.calculate_seller_sales("seller-1")

    assert sales["total_sales"] == 80000
    assert sales["total_sales_major"] == 800.0
    assert sales["count"] == 2


async def test_threshold_compares_major_units(db):
    # £1,000.00 net in pence reaches Silver
    await add_sale(db, "seller-1", 100000)

    tier = await seller_tier.recalculate_for_seller("seller-1")

    assert tier.current_tier == "Silver"
    assert tier.royalty_rate == 0.7
    assert tier.last_12_months_sales == 100000
    assert [change.tier for change in tier.tier_history] == ["Bronze", "Silver"]


async def test_just_below_threshold_stays_bronze(db):
    await add_sale(db, "seller-1", 99999)

    tier = await seller_tier.recalculate_for_seller("seller-1")

    assert tier.current_tier == "Bronze"
    assert len(tier.tier_history) == 1


async def test_record_sale_stats_accumulates_lifetime_totals(db):
    await seller_tier.get_or_create_tier("seller-1")
    await seller_tier.record_sale_stats("seller-1", 833, 500)
    await seller_tier.record_sale_stats("seller-1", 833, 500)

    doc = await db.seller_tiers.find_one({"seller_id": "seller-1"})
    assert doc["lifetime_sales"] == 1666
    assert doc["lifetime_earnings"] == 1000
    assert doc["lifetime_sales_count"] == 2


async def test_update_all_tiers_counts_movements(db):
    await seller_tier.get_or_create_tier("rising")
    await add_sale(db, "rising", 700000)

    await seller_tier.get_or_create_tier("steady")

    falling = await seller_tier.get_or_create_tier("falling")
    await db.seller_tiers.update_one(
        {"id": falling.id}, {"$set": {"current_tier": "Gold", "royalty_rate": 0.8}}
    )

    results = await seller_tier.update_all_tiers()

    assert results == {"updated": 3, "upgraded": 1, "downgraded": 1, "unchanged": 1}
    rising = await db.seller_tiers.find_one({"seller_id": "rising"})
    assert rising["current_tier"] == "Gold"
