from fastapi import APIRouter
from ..config import settings
from ..services.presence import presence_hub
from ..services.realtime_bus import bus

router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name, "debug": settings.debug}


@router.get("/health/realtime", include_in_schema=False)
async def realtime_health():
    """Counts for the in-process realtime layer"""
    return {
        "status": "ok",
        "online_users": len(presence_hub.online_users()),
        "subscriptions": bus.subscription_count(),
    }
