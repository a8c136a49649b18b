from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
import logging

from app.core.config import settings
from app.core.errors import register_exception_handlers
from app.db.session import close_mongo_connection, ensure_indexes
from app.routers import (
    admin,
    auth,
    health,
    invoices,
    notifications,
    sales,
    subscriptions,
    webhooks,
    withdrawals,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app without a prefix; docs are hidden in production
app = FastAPI(
    title=settings.APP_NAME,
    docs_url=None if settings.is_production else "/api-docs",
    redoc_url=None,
    openapi_url=None if settings.is_production else "/api-docs/openapi.json",
)

# Create a router with the versioned API prefix
api_router = APIRouter(prefix="/api/v1")
api_router.include_router(health.router, tags=["health"])
api_router.include_router(auth.router, tags=["auth"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(sales.router, tags=["sales"])
api_router.include_router(invoices.router, tags=["invoices"])
api_router.include_router(withdrawals.router, tags=["withdrawals"])
api_router.include_router(subscriptions.router, tags=["subscriptions"])
api_router.include_router(notifications.router, tags=["notifications"])
api_router.include_router(admin.router, tags=["admin"])

# Include the router in the main app
app.include_router(api_router)
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_db_client():
    await ensure_indexes()
    logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")

@app.on_event("shutdown")
async def shutdown_db_client():
    close_mongo_connection()
