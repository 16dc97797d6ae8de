from fastapi import APIRouter

from subscription_engine.api.routes import admin, cron, health, payments, users, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(cron.router, prefix="/cron", tags=["cron"])
api_router.include_router(users.router, prefix="/users", tags=["users"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(admin.router, tags=["admin"])
