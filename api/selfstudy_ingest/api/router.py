from fastapi import APIRouter

from selfstudy_ingest.api.routes import health, imports, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(imports.router, prefix="/imports", tags=["imports"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
