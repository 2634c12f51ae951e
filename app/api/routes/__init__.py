"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.webhooks.whatsapp_cloud import router as whatsapp_router

router = APIRouter()

router.include_router(admin_router, prefix="/admin", tags=["Admin"])
router.include_router(whatsapp_router, prefix="/webhooks/whatsapp", tags=["Webhooks"])
