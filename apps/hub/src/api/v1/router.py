from fastapi import APIRouter

from config import settings
from services.stations import list_localities
from .weather_router import router as weather_router

router = APIRouter(prefix="/api/v1", tags=["v1"])
router.include_router(weather_router)


@router.get("/health")
async def health():
    return {"status": "ok", "version": settings.app_version}


@router.get("/info")
async def info():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "cors_origins": settings.cors_origins,
        "weather_timezone": settings.weather_timezone,
        "weather_realtime_tolerance_minutes": settings.weather_realtime_tolerance_minutes,
        "providers": {
            "openweather_configured": bool(settings.openweather_api_key),
            "kma_configured": bool(settings.kma_hub_auth_key),
        },
        "scheduler": {
            "enabled": settings.weather_scheduler_enabled,
            "locality": settings.weather_locality,
            "poll_interval_minutes": settings.weather_poll_interval_minutes,
            "max_calls": settings.weather_max_calls,
        },
        "localities": [locality.name for locality in list_localities()],
    }
