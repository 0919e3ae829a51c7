from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import logging, time

from config import settings
from api.v1.router import router as v1_router
from services.kma_feed import kma_feed_client
from services.weather import weather_reconciler
from services.weather_scheduler import weather_scheduler

logger = logging.getLogger("greensync.hub")


def configure_logging(level: str | None = None) -> None:
    """Apply the configured level to the ``greensync.hub`` tree; basicConfig is a no-op once handlers exist."""
    value = logging.getLevelName((level or settings.log_level).upper())
    logger.setLevel(value if isinstance(value, int) else logging.INFO)
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=settings.app_name, version=settings.app_version)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, dur_ms)
        return response

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": settings.app_name, "version": settings.app_version}

    @app.get("/health", tags=["meta"])
    async def health():
        return JSONResponse({"status": "ok", "version": settings.app_version})

    app.include_router(v1_router)

    @app.on_event("startup")
    async def _startup():
        if settings.weather_scheduler_enabled:
            logger.info(
                "Weather scheduler enabled for %s (budget %d calls); starting...",
                settings.weather_locality,
                settings.weather_max_calls,
            )
            await weather_scheduler.start()
        else:
            logger.info("Weather scheduler disabled (set WEATHER_SCHEDULER_ENABLED=true to enable).")
        if not settings.openweather_api_key:
            logger.warning("OPENWEATHER_API_KEY is not set; provider calls will fail with an auth error")
        if not settings.kma_hub_auth_key:
            logger.warning("KMA_HUB_AUTH_KEY is not set; insolation will fall back to cached or zero values")

    @app.on_event("shutdown")
    async def _shutdown():
        await weather_scheduler.stop()
        await weather_reconciler.close()
        await kma_feed_client.close()

    return app

app = create_app()
