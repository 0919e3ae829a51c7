from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from services.stations import UnknownLocalityError, get_locality, list_localities
from services.weather import CanonicalReading, weather_reconciler
from services.weather_errors import (
    AuthError,
    BudgetExhaustedError,
    RateLimitError,
    TransportError,
    WeatherError,
)
from services.weather_scheduler import weather_scheduler
from services.weather_store import WeatherValidationError, weather_store

logger = logging.getLogger("greensync.hub.weather.api")

router = APIRouter(prefix="/weather", tags=["weather"])


class WeatherReading(BaseModel):
    observationTime: str = Field(description="Observation time as YYYYMMDDHHmm in the station timezone")
    windDirection: float | None = None
    windSpeed: float | None = Field(default=None, description="Wind speed in m/s")
    outsideTemp: float | None = Field(default=None, description="Ambient temperature in degC")
    dewPoint: float | None = Field(default=None, description="Dew point temperature in degC")
    insolation: float = Field(default=0.0, description="Solar irradiance reported by the station feed")
    isDay: bool
    isRain: bool
    localityId: str
    id: int | None = None
    farmId: int | None = None


class MappedFailure(BaseModel):
    localityId: str
    error: str


class MappedResponse(BaseModel):
    data: list[WeatherReading]
    failures: list[MappedFailure] = Field(default_factory=list)


def _resolve(name: str):
    try:
        return get_locality(name)
    except UnknownLocalityError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _http_error(exc: WeatherError) -> HTTPException:
    if isinstance(exc, (RateLimitError, BudgetExhaustedError)):
        status_code = 429
    elif isinstance(exc, TransportError):
        status_code = 504
    else:
        status_code = 502
    if isinstance(exc, AuthError):
        logger.error("Weather provider credentials rejected: %s", exc.describe())
    return HTTPException(status_code=status_code, detail=str(exc))


async def _store(reading: CanonicalReading, farm_id: Optional[int]) -> dict[str, Any]:
    payload = reading.to_payload()
    try:
        payload["id"] = await weather_store.record(reading, farm_id=farm_id)
    except WeatherValidationError as exc:
        logger.error("Weather reading for %s not stored: %s", reading.locality_id, exc)
        return payload
    payload["farmId"] = farm_id
    return payload


@router.get("/localities")
async def get_localities() -> list[dict[str, object]]:
    return [locality.to_dict() for locality in list_localities()]


@router.get("/city/{name}")
async def get_city_weather(name: str) -> dict[str, Any]:
    locality = _resolve(name)
    try:
        payload = await weather_reconciler.fetch_raw(locality)
    except WeatherError as exc:
        raise _http_error(exc) from exc
    return {"locality": locality.to_dict(), "data": payload}


@router.get("/mapped", response_model=MappedResponse)
async def get_mapped_weather(farm_id: Optional[int] = Query(default=None)) -> MappedResponse:
    outcomes = await weather_reconciler.reconcile_all(list_localities())
    data: list[WeatherReading] = []
    failures: list[MappedFailure] = []
    for outcome in outcomes:
        if outcome.reading is None:
            failures.append(MappedFailure(localityId=outcome.locality.name, error=str(outcome.error)))
            continue
        data.append(WeatherReading(**await _store(outcome.reading, farm_id)))
    return MappedResponse(data=data, failures=failures)


@router.get("/mapped/{name}", response_model=WeatherReading)
async def get_mapped_city_weather(name: str, farm_id: Optional[int] = Query(default=None)) -> WeatherReading:
    locality = _resolve(name)
    try:
        reading = await weather_reconciler.reconcile(locality)
    except WeatherError as exc:
        raise _http_error(exc) from exc
    return WeatherReading(**await _store(reading, farm_id))


@router.get("/latest", response_model=WeatherReading)
async def get_latest_weather(farm_id: Optional[int] = Query(default=None)) -> WeatherReading:
    stored = await weather_store.latest(farm_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="No weather readings recorded")
    return WeatherReading(**stored.as_payload())


@router.get("/stats")
async def get_weather_stats(period: str = Query(default="24h", description="24h, 7d or 30d")) -> dict[str, Any]:
    stats = await weather_store.stats(period)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"No weather readings in the last {period}")
    return {"period": period, "stats": stats}


@router.get("/scheduler")
async def get_scheduler_status() -> dict[str, Any]:
    return weather_scheduler.status()


@router.post("/scheduler/start")
async def start_scheduler() -> dict[str, Any]:
    await weather_scheduler.start()
    return weather_scheduler.status()


@router.post("/scheduler/stop")
async def stop_scheduler() -> dict[str, Any]:
    await weather_scheduler.stop()
    return weather_scheduler.status()


@router.post("/scheduler/reset")
async def reset_scheduler() -> dict[str, Any]:
    weather_scheduler.reset()
    return weather_scheduler.status()


@router.post("/scheduler/trigger")
async def trigger_scheduler() -> dict[str, Any]:
    try:
        await weather_scheduler.trigger()
    except BudgetExhaustedError as exc:
        raise _http_error(exc) from exc
    return weather_scheduler.status()
