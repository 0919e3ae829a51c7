from __future__ import annotations

import asyncio
import logging
import math
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from zoneinfo import ZoneInfo

from config import settings
from .weather import CanonicalReading

logger = logging.getLogger("greensync.hub.weather.store")

OBSERVATION_TIME_RE = re.compile(r"^\d{12}$")
STATS_PERIODS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WeatherValidationError(ValueError):
    """Raised when a reading fails validation before it is stored."""

    def __init__(self, errors: List[str]) -> None:
        super().__init__("Weather reading failed validation: " + "; ".join(errors))
        self.errors = errors


class ReadingSink(Protocol):
    async def record(self, reading: CanonicalReading, *, farm_id: Optional[int] = None) -> int:
        ...


def validate_reading(reading: CanonicalReading) -> List[str]:
    errors: List[str] = []
    if not isinstance(reading.observation_time, str) or not OBSERVATION_TIME_RE.match(reading.observation_time):
        errors.append("observationTime must be a 12-digit YYYYMMDDHHmm string")
    if reading.wind_direction is not None and not (
        math.isfinite(reading.wind_direction) and 0.0 <= reading.wind_direction <= 360.0
    ):
        errors.append("windDirection must be between 0 and 360")
    if reading.wind_speed is not None and not (math.isfinite(reading.wind_speed) and reading.wind_speed >= 0.0):
        errors.append("windSpeed must be zero or greater")
    if reading.outside_temp is not None and not (
        math.isfinite(reading.outside_temp) and -50.0 <= reading.outside_temp <= 60.0
    ):
        errors.append("outsideTemp must be between -50 and 60 degC")
    if not isinstance(reading.insolation, (int, float)) or not math.isfinite(reading.insolation) or reading.insolation < 0.0:
        errors.append("insolation must be a finite value of zero or greater")
    if reading.dew_point is not None and not math.isfinite(reading.dew_point):
        errors.append("dewPoint must be numeric")
    if not isinstance(reading.is_day, bool):
        errors.append("isDay must be true or false")
    if not isinstance(reading.is_rain, bool):
        errors.append("isRain must be true or false")
    return errors


@dataclass(slots=True)
class StoredReading:
    id: int
    farm_id: Optional[int]
    reading: CanonicalReading
    created_at: str

    def as_payload(self) -> Dict[str, Any]:
        payload = self.reading.to_payload()
        payload["id"] = self.id
        payload["farmId"] = self.farm_id
        payload["createdAt"] = self.created_at
        return payload


class WeatherStore:
    """SQLite-backed store for canonical weather readings."""

    def __init__(self, *, db_path: Path) -> None:
        self._db_path = db_path
        self._lock = asyncio.Lock()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _initialize(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS weather (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    farm_id INTEGER,
                    locality_id TEXT NOT NULL,
                    observation_time TEXT NOT NULL,
                    wind_direction REAL,
                    wind_speed REAL,
                    outside_temp REAL,
                    dew_point REAL,
                    insolation REAL NOT NULL DEFAULT 0.0,
                    is_day INTEGER NOT NULL,
                    is_rain INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_weather_obs ON weather(observation_time);")
            conn.commit()

    async def record(self, reading: CanonicalReading, *, farm_id: Optional[int] = None) -> int:
        errors = validate_reading(reading)
        if errors:
            logger.error("Rejecting weather reading for %s: %s", reading.locality_id, "; ".join(errors))
            raise WeatherValidationError(errors)
        async with self._lock:
            reading_id = await asyncio.to_thread(self._insert_row, reading, farm_id)
        logger.debug("Stored weather reading %s for %s at %s", reading_id, reading.locality_id, reading.observation_time)
        return reading_id

    def _insert_row(self, reading: CanonicalReading, farm_id: Optional[int]) -> int:
        created = _utc_now().isoformat(timespec="seconds").replace("+00:00", "Z")
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO weather
                    (farm_id, locality_id, observation_time, wind_direction, wind_speed, outside_temp, dew_point, insolation, is_day, is_rain, created_at)
                VALUES
                    (:farm_id, :locality_id, :observation_time, :wind_direction, :wind_speed, :outside_temp, :dew_point, :insolation, :is_day, :is_rain, :created_at);
                """,
                {
                    "farm_id": farm_id,
                    "locality_id": reading.locality_id,
                    "observation_time": reading.observation_time,
                    "wind_direction": reading.wind_direction,
                    "wind_speed": reading.wind_speed,
                    "outside_temp": reading.outside_temp,
                    "dew_point": reading.dew_point,
                    "insolation": reading.insolation,
                    "is_day": 1 if reading.is_day else 0,
                    "is_rain": 1 if reading.is_rain else 0,
                    "created_at": created,
                },
            )
            conn.commit()
            return int(cursor.lastrowid)

    async def get(self, reading_id: int) -> Optional[StoredReading]:
        if reading_id <= 0:
            raise ValueError("reading_id must be a positive integer")
        async with self._lock:
            return await asyncio.to_thread(self._select_one, "WHERE id = ?", (reading_id,))

    async def latest(self, farm_id: Optional[int] = None) -> Optional[StoredReading]:
        clause, params = ("WHERE farm_id = ?", (farm_id,)) if farm_id is not None else ("", ())
        async with self._lock:
            return await asyncio.to_thread(
                self._select_one,
                f"{clause} ORDER BY observation_time DESC, id DESC",
                params,
            )

    def _select_one(self, clause: str, params: tuple) -> Optional[StoredReading]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT id, farm_id, locality_id, observation_time, wind_direction, wind_speed, outside_temp, dew_point, insolation, is_day, is_rain, created_at
                FROM weather
                {clause}
                LIMIT 1;
                """,
                params,
            ).fetchone()
        if row is None:
            return None
        return StoredReading(
            id=row["id"],
            farm_id=row["farm_id"],
            reading=CanonicalReading(
                observation_time=row["observation_time"],
                wind_direction=row["wind_direction"],
                wind_speed=row["wind_speed"],
                outside_temp=row["outside_temp"],
                dew_point=row["dew_point"],
                insolation=row["insolation"],
                is_day=bool(row["is_day"]),
                is_rain=bool(row["is_rain"]),
                locality_id=row["locality_id"],
            ),
            created_at=row["created_at"],
        )

    async def stats(self, period: str = "24h", *, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        window = STATS_PERIODS.get(period)
        if window is None:
            logger.warning("Unsupported weather stats period %r; using 24h", period)
            window = STATS_PERIODS["24h"]
        reference = now or _utc_now()
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        start = (reference - window).astimezone(ZoneInfo(settings.weather_timezone)).strftime("%Y%m%d%H%M")
        async with self._lock:
            return await asyncio.to_thread(self._aggregate, start)

    def _aggregate(self, start_observation_time: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    AVG(outside_temp) AS avg_temp,
                    MIN(outside_temp) AS min_temp,
                    MAX(outside_temp) AS max_temp,
                    AVG(wind_speed) AS avg_wind_speed,
                    SUM(insolation) AS total_insolation,
                    AVG(dew_point) AS avg_dew_point,
                    SUM(CASE WHEN is_rain = 1 THEN 1 ELSE 0 END) AS rain_count,
                    COUNT(id) AS record_count
                FROM weather
                WHERE observation_time >= ?;
                """,
                (start_observation_time,),
            ).fetchone()
        if row is None or not row["record_count"]:
            return None
        return {
            "avgTemp": row["avg_temp"],
            "minTemp": row["min_temp"],
            "maxTemp": row["max_temp"],
            "avgWindSpeed": row["avg_wind_speed"],
            "totalInsolation": row["total_insolation"],
            "avgDewPoint": row["avg_dew_point"],
            "rainCount": row["rain_count"],
            "recordCount": row["record_count"],
        }

    async def delete(self, reading_id: int) -> bool:
        if reading_id <= 0:
            raise ValueError("reading_id must be a positive integer")
        async with self._lock:
            deleted = await asyncio.to_thread(self._delete_row, reading_id)
        if not deleted:
            logger.warning("No weather reading with id %s to delete", reading_id)
        return deleted

    def _delete_row(self, reading_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM weather WHERE id = ?;", (reading_id,))
            conn.commit()
            return cursor.rowcount > 0

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._truncate)

    def _truncate(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM weather;")
            conn.commit()


def _resolve_db_path() -> Path:
    return Path(settings.weather_db)


weather_store = WeatherStore(db_path=_resolve_db_path())

__all__ = [
    "ReadingSink",
    "StoredReading",
    "WeatherStore",
    "WeatherValidationError",
    "validate_reading",
    "weather_store",
]
