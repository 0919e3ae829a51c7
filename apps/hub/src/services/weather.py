import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from config import settings
from .freshness import FreshnessStatus, classify
from .insolation import InsolationService, insolation_service
from .openweather import OpenWeatherClient, openweather_client
from .stations import Locality
from .weather_errors import UpstreamFormatError, WeatherError

logger = logging.getLogger("greensync.hub.weather")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CanonicalReading:
    observation_time: str
    wind_direction: Optional[float]
    wind_speed: Optional[float]
    outside_temp: Optional[float]
    dew_point: Optional[float]
    insolation: float
    is_day: bool
    is_rain: bool
    locality_id: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "observationTime": self.observation_time,
            "windDirection": self.wind_direction,
            "windSpeed": self.wind_speed,
            "outsideTemp": self.outside_temp,
            "dewPoint": self.dew_point,
            "insolation": self.insolation,
            "isDay": self.is_day,
            "isRain": self.is_rain,
            "localityId": self.locality_id,
        }

    def diff(self, previous: "CanonicalReading") -> dict[str, tuple[Any, Any]]:
        """Fields whose values changed since ``previous`` as ``{name: (before, after)}``."""
        before = asdict(previous)
        after = asdict(self)
        return {key: (before[key], value) for key, value in after.items() if before[key] != value}


@dataclass(frozen=True, slots=True)
class ReconcileOutcome:
    locality: Locality
    reading: Optional[CanonicalReading] = None
    error: Optional[WeatherError] = None


def format_observation_time(epoch_seconds: Any, tz: ZoneInfo) -> str:
    seconds = _coerce_float(epoch_seconds)
    if seconds is None:
        raise UpstreamFormatError(f"Observation timestamp is not numeric: {epoch_seconds!r}", source="openweather")
    try:
        observed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise UpstreamFormatError(
            f"Observation timestamp out of range: {epoch_seconds!r}", source="openweather"
        ) from exc
    return observed.astimezone(tz).strftime("%Y%m%d%H%M")


def derive_is_day(
    icon: Any,
    sunrise: Any,
    sunset: Any,
    now: datetime,
    tz: ZoneInfo,
    *,
    day_start_hour: int = 6,
    day_end_hour: int = 18,
) -> bool:
    """Decide day/night from the icon suffix, then sunrise/sunset, then the local clock."""
    if isinstance(icon, str) and icon:
        suffix = icon[-1]
        if suffix == "d":
            return True
        if suffix == "n":
            return False

    sunrise_s = _coerce_float(sunrise)
    sunset_s = _coerce_float(sunset)
    if sunrise_s and sunset_s:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        now_s = now.timestamp()
        return sunrise_s <= now_s <= sunset_s

    local = now if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)
    hour = local.astimezone(tz).hour
    return day_start_hour <= hour <= day_end_hour


def derive_is_rain(current: dict[str, Any]) -> bool:
    for key in ("rain", "snow"):
        amount = _precipitation_amount(current.get(key))
        if amount is not None and amount > 0.0:
            return True
    return False


def _precipitation_amount(value: Any) -> Optional[float]:
    if isinstance(value, dict):
        value = value.get("1h")
    return _coerce_float(value)


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def _first_icon(current: dict[str, Any]) -> Optional[str]:
    weather = current.get("weather")
    if isinstance(weather, list) and weather and isinstance(weather[0], dict):
        icon = weather[0].get("icon")
        if isinstance(icon, str):
            return icon
    return None


class WeatherReconciler:
    """Builds one canonical reading per locality from the provider and the station feed."""

    def __init__(
        self,
        weather_client: OpenWeatherClient,
        insolation: InsolationService,
        *,
        clock: Callable[[], datetime] = _utc_now,
        tz: Optional[ZoneInfo] = None,
        tolerance_minutes: Optional[int] = None,
    ) -> None:
        self._weather = weather_client
        self._insolation = insolation
        self._clock = clock
        self._tz = tz
        self._tolerance = tolerance_minutes

    @property
    def tz(self) -> ZoneInfo:
        return self._tz or ZoneInfo(settings.weather_timezone)

    async def fetch_raw(self, locality: Locality) -> dict[str, Any]:
        return await self._weather.fetch_current(locality)

    async def reconcile(self, locality: Locality) -> CanonicalReading:
        try:
            payload = await self._weather.fetch_current(locality)
        except WeatherError as exc:
            logger.error("Weather reconciliation aborted for %s: %s", locality.name, exc.describe())
            raise

        tz = self.tz
        now = self._clock()
        current = payload["current"]
        observation_time = format_observation_time(current.get("dt"), tz)

        freshness = classify(
            current.get("dt"),
            now,
            self._tolerance if self._tolerance is not None else settings.weather_realtime_tolerance_minutes,
        )
        if freshness.status is FreshnessStatus.REALTIME:
            logger.debug("Provider reading for %s is realtime (delta %s min)", locality.name, freshness.delta_minutes)
        else:
            logger.warning(
                "Provider reading for %s is %s (observed %s, delta %s min)",
                locality.name,
                freshness.status.value,
                observation_time,
                freshness.delta_minutes,
            )

        is_day = derive_is_day(
            _first_icon(current),
            current.get("sunrise"),
            current.get("sunset"),
            now,
            tz,
            day_start_hour=settings.weather_day_start_hour,
            day_end_hour=settings.weather_day_end_hour,
        )
        is_rain = derive_is_rain(current)

        if is_day:
            insolation = await self._insolation.get_insolation(locality.station_id)
        else:
            logger.info(
                "Night at %s (station %s, %s); skipping station feed and using zero insolation",
                locality.name,
                locality.station_id,
                observation_time,
            )
            insolation = 0.0
        if not math.isfinite(insolation) or insolation < 0.0:
            insolation = 0.0

        reading = CanonicalReading(
            observation_time=observation_time,
            wind_direction=_coerce_float(current.get("wind_deg")),
            wind_speed=_coerce_float(current.get("wind_speed")),
            outside_temp=_coerce_float(current.get("temp")),
            dew_point=_coerce_float(current.get("dew_point")),
            insolation=float(insolation),
            is_day=is_day,
            is_rain=is_rain,
            locality_id=locality.name,
        )
        logger.info(
            "Reconciled %s at %s: temp=%s insolation=%.2f day=%s rain=%s",
            locality.name,
            observation_time,
            reading.outside_temp,
            reading.insolation,
            reading.is_day,
            reading.is_rain,
        )
        return reading

    async def reconcile_all(self, localities: Iterable[Locality]) -> list[ReconcileOutcome]:
        outcomes: list[ReconcileOutcome] = []
        for locality in localities:
            try:
                reading = await self.reconcile(locality)
            except WeatherError as exc:
                logger.warning("Skipping %s: %s", locality.name, exc)
                outcomes.append(ReconcileOutcome(locality=locality, error=exc))
                continue
            outcomes.append(ReconcileOutcome(locality=locality, reading=reading))
        return outcomes

    async def close(self) -> None:
        await self._weather.close()


weather_reconciler = WeatherReconciler(openweather_client, insolation_service)

__all__ = [
    "CanonicalReading",
    "ReconcileOutcome",
    "WeatherReconciler",
    "derive_is_day",
    "derive_is_rain",
    "format_observation_time",
    "weather_reconciler",
]
