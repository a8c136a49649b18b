import os

# Settings are read at import time
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "educate_test")
os.environ["MONGO_TRANSACTIONS"] = "false"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_123")

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import app.db.session
import app.routers.admin
import app.routers.auth
import app.routers.health
import app.routers.invoices
import app.routers.notifications
import app.routers.sales
import app.routers.subscriptions
import app.routers.withdrawals
import app.services.auth
import app.services.invoice
import app.services.ledger
import app.services.notification
import app.services.seller_tier
import app.services.subscription
import app.services.webhook_events
import app.services.webhooks
import app.services.withdrawal
from app.models.resource import Resource
from app.models.user import User
from app.services.auth import get_current_user
from server import app as fastapi_app

MODULES_USING_DB = [
    app.db.session,
    app.routers.admin,
    app.routers.auth,
    app.routers.health,
    app.routers.invoices,
    app.routers.notifications,
    app.routers.sales,
    app.routers.subscriptions,
    app.routers.withdrawals,
    app.services.auth,
    app.services.invoice,
    app.services.ledger,
    app.services.notification,
    app.services.seller_tier,
    app.services.subscription,
    app.services.webhook_events,
    app.services.webhooks,
    app.services.withdrawal,
]


@pytest.fixture
async def db(monkeypatch):
    test_db = AsyncMongoMockClient()["educate_test"]
    for module in MODULES_USING_DB:
        monkeypatch.setattr(module, "db", test_db)
    await app.db.session.ensure_indexes(test_db)
    yield test_db


@pytest.fixture(autouse=True)
def no_email(mocker):
    # Keep tests off the network; individual tests inspect this mock when they care
    return mocker.patch("app.services.emailing.send_email_smtp", return_value=True)


@pytest.fixture
async def seller(db):
    user = User(email="seller@example.com", first_name="Sam", last_name="Seller", role="teacher")
    await db.users.insert_one(user.model_dump())
    return user


@pytest.fixture
async def buyer(db):
    user = User(email="buyer@example.com", first_name="Bea", last_name="Buyer", role="school")
    await db.users.insert_one(user.model_dump())
    return user


@pytest.fixture
async def admin(db):
    user = User(email="admin@example.com", first_name="Ada", last_name="Admin", role="admin")
    await db.users.insert_one(user.model_dump())
    return user


@pytest.fixture
async def resource(db, seller):
    item = Resource(title="Fractions Worksheet", price=10.0, currency="GBP", seller_id=seller.id, status="approved")
    await db.resources.insert_one(item.model_dump())
    return item


@pytest.fixture
def client(db):
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def login_as():
    """Override the current user for HTTP tests"""
    def _login(user: User):
        fastapi_app.dependency_overrides[get_current_user] = lambda: user
    return _login
