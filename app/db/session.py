from contextlib import asynccontextmanager
import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from app.core.config import settings

logger = logging.getLogger(__name__)

client = AsyncIOMotorClient(settings.MONGO_URL, maxPoolSize=10, minPoolSize=10)
db = client[settings.DB_NAME]

WEBHOOK_EVENT_TTL_SECONDS = 30 * 24 * 60 * 60
TRANSACTION_ATTEMPTS = 3
TRANSIENT_TRANSACTION_ERROR = "TransientTransactionError"

def close_mongo_connection():
    client.close()

async def ensure_indexes(database=None):
    """Create the indexes the settlement flow relies on for idempotency and lookups"""
    database = database if database is not None else db

    await database.webhook_events.create_index("event_id", unique=True)
    await database.webhook_events.create_index(
        "created_at", expireAfterSeconds=WEBHOOK_EVENT_TTL_SECONDS
    )
    await database.webhook_events.create_index([("type", ASCENDING), ("processed", ASCENDING)])

    await database.sales.create_index("stripe_session_id", unique=True, sparse=True)
    await database.sales.create_index("stripe_payment_intent_id", unique=True, sparse=True)
    await database.sales.create_index([("seller_id", ASCENDING), ("sale_date", DESCENDING)])
    await database.sales.create_index([("seller_id", ASCENDING), ("status", ASCENDING)])

    await database.seller_tiers.create_index("seller_id", unique=True)

    await database.balance_ledger.create_index(
        [("seller_id", ASCENDING), ("currency", ASCENDING), ("seq", ASCENDING)], unique=True
    )
    await database.balance_ledger.create_index([("seller_id", ASCENDING), ("date", DESCENDING)])

    await database.withdrawal_requests.create_index("stripe_payout_id", unique=True, sparse=True)
    await database.withdrawal_requests.create_index([("seller_id", ASCENDING), ("requested_at", DESCENDING)])

    await database.user_subscriptions.create_index([("user_id", ASCENDING), ("status", ASCENDING)])
    await database.user_subscriptions.create_index("stripe_subscription_id", sparse=True)

    await database.invoices.create_index("sale_id", unique=True)
    await database.invoices.create_index("invoice_number", unique=True)
    await database.invoices.create_index([("buyer.user_id", ASCENDING), ("issue_date", DESCENDING)])

    await database.notifications.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("MongoDB indexes ensured")

@asynccontextmanager
async def transaction():
    """Yield a session bound to a multi-document transaction, or None when disabled"""
    if not settings.MONGO_TRANSACTIONS:
        yield None
        return
    async with await client.start_session() as session:
        async with session.start_transaction():
            yield session

async def run_in_transaction(callback):
    """Run ``callback(session)`` inside ``transaction()`` and return its result.

    Write conflicts between concurrent transactions surface as errors labelled
    ``TransientTransactionError``; the whole callback is run again from the
    start, up to ``TRANSACTION_ATTEMPTS`` times.
    """
    for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
        try:
            async with transaction() as txn:
                return await callback(txn)
        except PyMongoError as e:
            if attempt == TRANSACTION_ATTEMPTS or not e.has_error_label(TRANSIENT_TRANSACTION_ERROR):
                raise
            logger.warning(f"Transient transaction error (attempt {attempt}/{TRANSACTION_ATTEMPTS}), retrying: {e}")
