from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from config import settings
from .insolation_parser import InsolationParser, IrradianceSample, ParserConfig
from .kma_feed import KmaFeedClient, format_feed_timestamp, kma_feed_client
from .weather_errors import WeatherError

logger = logging.getLogger("greensync.hub.weather.insolation")

MAX_CANDIDATES = 4


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _top_of_hour(value: datetime, tz: ZoneInfo) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).replace(minute=0, second=0, microsecond=0)


def hour_key(value: datetime, tz: ZoneInfo) -> str:
    return _top_of_hour(value, tz).strftime("%Y%m%d%H")


def candidate_timestamps(now: datetime, *, count: int = MAX_CANDIDATES, tz: Optional[ZoneInfo] = None) -> List[datetime]:
    """Top-of-hour timestamps for ``now`` and the preceding hours, most recent first."""
    zone = tz or ZoneInfo(settings.weather_timezone)
    count = max(1, min(count, MAX_CANDIDATES))
    anchor = _top_of_hour(now, zone)
    seen: set[datetime] = set()
    result: List[datetime] = []
    for offset in range(count):
        # Subtract in UTC so DST transitions never yield duplicate or skipped hours.
        candidate = (anchor.astimezone(timezone.utc) - timedelta(hours=offset)).astimezone(zone)
        if candidate in seen:
            continue
        seen.add(candidate)
        result.append(candidate)
    return result


async def first_successful_sample(
    candidates: Iterable[datetime],
    attempt: Callable[[datetime], Awaitable[IrradianceSample]],
) -> Optional[IrradianceSample]:
    for candidate in candidates:
        sample = await attempt(candidate)
        if sample.success:
            return sample
    return None


@dataclass(slots=True)
class InsolationCacheEntry:
    hour_key: str
    value: float
    fresh: bool = True

    @property
    def hour_of_day(self) -> int:
        return int(self.hour_key[-2:])


class InsolationCache:
    """Per-station memo of the last irradiance value, valid for one clock hour."""

    def __init__(self) -> None:
        self._entries: Dict[str, InsolationCacheEntry] = {}

    def get(self, station_id: int | str, key: str) -> Optional[InsolationCacheEntry]:
        entry = self._entries.get(str(station_id))
        if entry is None or entry.hour_key != key:
            return None
        return entry

    def previous(self, station_id: int | str) -> Optional[InsolationCacheEntry]:
        return self._entries.get(str(station_id))

    def put(self, station_id: int | str, key: str, value: float, *, fresh: bool = True) -> InsolationCacheEntry:
        entry = InsolationCacheEntry(hour_key=key, value=value, fresh=fresh)
        self._entries[str(station_id)] = entry
        return entry

    def clear(self) -> None:
        self._entries.clear()


class InsolationService:
    def __init__(
        self,
        feed_client: KmaFeedClient,
        *,
        parser: Optional[InsolationParser] = None,
        cache: Optional[InsolationCache] = None,
        clock: Callable[[], datetime] = _utc_now,
        tz: Optional[ZoneInfo] = None,
        max_candidates: Optional[int] = None,
    ) -> None:
        self._feed = feed_client
        self._parser = parser or InsolationParser(ParserConfig.from_settings())
        self.cache = cache if cache is not None else InsolationCache()
        self._clock = clock
        self._tz = tz or ZoneInfo(settings.weather_timezone)
        self._max_candidates = max_candidates or settings.insolation_fallback_hours

    async def get_insolation(self, station_id: int | str) -> float:
        now = self._clock()
        key = hour_key(now, self._tz)
        cached = self.cache.get(station_id, key)
        if cached is not None:
            logger.debug("Insolation cache hit for station %s hour %s: %.2f", station_id, key, cached.value)
            return cached.value

        async def _attempt(candidate: datetime) -> IrradianceSample:
            return await self._fetch_sample(station_id, candidate)

        candidates = candidate_timestamps(now, count=self._max_candidates, tz=self._tz)
        sample = await first_successful_sample(candidates, _attempt)
        if sample is not None and sample.value is not None:
            self.cache.put(station_id, key, sample.value)
            logger.info(
                "Insolation for station %s: %.2f (feed tm=%s, %s)",
                station_id,
                sample.value,
                sample.source_timestamp,
                sample.strategy,
            )
            return sample.value

        previous = self.cache.previous(station_id)
        fallback = previous.value if previous is not None else 0.0
        self.cache.put(station_id, key, fallback, fresh=False)
        logger.warning(
            "No insolation data for station %s across %d candidate hours; using %s value %.2f",
            station_id,
            len(candidates),
            "cached" if previous is not None else "zero",
            fallback,
        )
        return fallback

    async def _fetch_sample(self, station_id: int | str, candidate: datetime) -> IrradianceSample:
        tm = format_feed_timestamp(candidate, self._tz)
        try:
            body = await self._feed.fetch_station_line(station_id, tm)
        except WeatherError as exc:
            logger.warning("Station feed fetch failed for station %s tm=%s: %s", station_id, tm, exc.describe())
            return IrradianceSample.failed(tm)
        sample = self._parser.parse(body)
        if not sample.success:
            logger.debug("No irradiance value in station feed for station %s tm=%s", station_id, tm)
        return sample


insolation_service = InsolationService(kma_feed_client)

__all__ = [
    "InsolationCache",
    "InsolationCacheEntry",
    "InsolationService",
    "candidate_timestamps",
    "first_successful_sample",
    "hour_key",
    "insolation_service",
]
