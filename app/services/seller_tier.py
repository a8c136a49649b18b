from datetime import datetime, timedelta
from typing import Dict
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.db.session import db
from app.models.seller_tier import SellerTier, TierChange
from app.services.royalty import determine_seller_tier, from_smallest_unit, TIER_LEVELS, TIER_THRESHOLDS

logger = logging.getLogger(__name__)

RECALCULATION_INTERVAL = timedelta(days=30)


async def calculate_seller_sales(seller_id: str, months: int = 12, session=None) -> Dict[str, float]:
    """Trailing-window net sales for tier purposes.

    ``total_sales`` is the minor-unit sum (what is stored on the tier document);
    ``total_sales_major`` converts each currency to major units and sums them as
    GBP-equivalent for the threshold lookup.
    """
    start_date = datetime.utcnow() - timedelta(days=30 * months)
    rows = await db.sales.aggregate([
        {"$match": {
            "seller_id": seller_id,
            "status": "completed",
            "sale_date": {"$gte": start_date},
        }},
        {"$group": {
            "_id": "$currency",
            "total_sales": {"$sum": "$net_price"},
            "count": {"$sum": 1},
        }},
    ], session=session).to_list(None)

    return {
        "total_sales": sum(row["total_sales"] for row in rows),
        "total_sales_major": sum(from_smallest_unit(row["total_sales"], row["_id"]) for row in rows),
        "count": sum(row["count"] for row in rows),
    }


async def get_or_create_tier(seller_id: str, session=None) -> SellerTier:
    existing = await db.seller_tiers.find_one({"seller_id": seller_id}, session=session)
    if existing:
        return SellerTier(**existing)

    tier = SellerTier(
        seller_id=seller_id,
        current_tier="Bronze",
        royalty_rate=TIER_THRESHOLDS["Bronze"]["rate"],
        tier_history=[TierChange(tier="Bronze", sales_at_tier_change=0)],
    )
    try:
        await db.seller_tiers.insert_one(tier.model_dump(), session=session)
    except DuplicateKeyError:
        if session is not None:
            raise
        # Created concurrently by another sale for the same seller
        return SellerTier(**await db.seller_tiers.find_one({"seller_id": seller_id}))
    return tier


async def update_tier(tier: SellerTier, sales: Dict[str, float], session=None) -> SellerTier:
    """Recompute the tier from a ``calculate_seller_sales`` result and persist it"""
    previous_tier = tier.current_tier
    result = determine_seller_tier(sales["total_sales_major"])
    now = datetime.utcnow()

    update = {
        "last_12_months_sales": sales["total_sales"],
        "last_12_months_count": sales["count"],
        "current_tier": result["tier"],
        "royalty_rate": result["rate"],
        "last_calculated_at": now,
        "next_calculation_due": now + RECALCULATION_INTERVAL,
        "updated_at": now,
    }
    operation = {"$set": update}
    if previous_tier != result["tier"]:
        change = TierChange(tier=result["tier"], achieved_at=now, sales_at_tier_change=sales["total_sales"])
        operation["$push"] = {"tier_history": change.model_dump()}
        logger.info(f"Seller {tier.seller_id} tier changed: {previous_tier} -> {result['tier']}")

    updated = await db.seller_tiers.find_one_and_update(
        {"seller_id": tier.seller_id},
        operation,
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return SellerTier(**updated)


async def recalculate_for_seller(seller_id: str, session=None) -> SellerTier:
    tier = await get_or_create_tier(seller_id, session=session)
    sales = await calculate_seller_sales(seller_id, 12, session=session)
    return await update_tier(tier, sales, session=session)


async def record_sale_stats(seller_id: str, net_price: int, seller_earnings: int, session=None):
    await db.seller_tiers.update_one(
        {"seller_id": seller_id},
        {
            "$inc": {
                "lifetime_sales": net_price,
                "lifetime_earnings": seller_earnings,
                "lifetime_sales_count": 1,
            },
            "$set": {"updated_at": datetime.utcnow()},
        },
        session=session,
    )


async def update_all_tiers() -> Dict[str, int]:
    """Monthly batch recalculation across every seller with a tier document"""
    results = {"updated": 0, "upgraded": 0, "downgraded": 0, "unchanged": 0}
    tiers = await db.seller_tiers.find({}).to_list(None)

    for tier_doc in tiers:
        tier = SellerTier(**tier_doc)
        try:
            sales = await calculate_seller_sales(tier.seller_id, 12)
            updated = await update_tier(tier, sales)
        except Exception as e:
            logger.error(f"Error updating tier for seller {tier.seller_id}: {str(e)}")
            continue

        results["updated"] += 1
        if updated.current_tier == tier.current_tier:
            results["unchanged"] += 1
        elif TIER_LEVELS[updated.current_tier] > TIER_LEVELS[tier.current_tier]:
            results["upgraded"] += 1
        else:
            results["downgraded"] += 1

    logger.info(f"Seller tier recalculation finished: {results}")
    return results
