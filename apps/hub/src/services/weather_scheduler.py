"""Timer-driven weather acquisition with a lifetime call budget."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from config import settings
from .stations import Locality, get_locality
from .weather import CanonicalReading, WeatherReconciler, weather_reconciler
from .weather_errors import BudgetExhaustedError, WeatherError
from .weather_store import ReadingSink, weather_store

logger = logging.getLogger("greensync.hub.weather.scheduler")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    iso = value.astimezone(timezone.utc).isoformat(timespec="seconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DISABLED = "disabled"


@dataclass(slots=True)
class BudgetCounter:
    max_calls: int
    call_count: int = 0

    @property
    def exhausted(self) -> bool:
        return self.call_count >= self.max_calls

    @property
    def remaining(self) -> int:
        return max(self.max_calls - self.call_count, 0)

    def increment(self) -> int:
        self.call_count += 1
        return self.call_count

    def reset(self) -> None:
        self.call_count = 0


class WeatherScheduler:
    def __init__(
        self,
        reconciler: WeatherReconciler,
        locality: Union[Locality, str],
        *,
        sink: Optional[ReadingSink] = None,
        farm_id: Optional[int] = None,
        budget: Optional[BudgetCounter] = None,
        interval_seconds: Optional[float] = None,
        warmup_seconds: Optional[float] = None,
        warning_remaining: Optional[int] = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._reconciler = reconciler
        self._locality = locality
        self._sink = sink
        self._farm_id = farm_id
        self.budget = budget if budget is not None else BudgetCounter(max_calls=settings.weather_max_calls)
        self._interval = interval_seconds if interval_seconds is not None else settings.weather_poll_interval_minutes * 60.0
        self._warmup = warmup_seconds if warmup_seconds is not None else settings.weather_warmup_seconds
        self._warning_remaining = (
            warning_remaining if warning_remaining is not None else settings.weather_budget_warning_remaining
        )
        self._clock = clock
        self._sleep = sleep
        self._timer = timer
        self._state = SchedulerState.IDLE
        self._task: Optional[asyncio.Task[None]] = None
        self._in_flight = False
        self._last_reading: Optional[CanonicalReading] = None
        self._last_error: Optional[str] = None
        self._last_run_at: Optional[datetime] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def locality(self) -> Locality:
        if isinstance(self._locality, str):
            self._locality = get_locality(self._locality)
        return self._locality

    @property
    def last_reading(self) -> Optional[CanonicalReading]:
        return self._last_reading

    async def start(self) -> None:
        if self._state is SchedulerState.RUNNING:
            logger.warning("Weather scheduler already running; ignoring start()")
            return
        if self._state is SchedulerState.DISABLED:
            logger.warning("Weather scheduler disabled after %d calls; reset the budget before starting", self.budget.call_count)
            return
        self._state = SchedulerState.RUNNING
        self._task = asyncio.create_task(self._loop(), name="weather-scheduler")
        logger.info(
            "Weather scheduler started for %s every %.0fs (%d/%d calls used)",
            self.locality.name,
            self._interval,
            self.budget.call_count,
            self.budget.max_calls,
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        self._state = SchedulerState.IDLE
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:  # pragma: no cover
            logger.warning("Weather scheduler stopped with error: %s", exc)
        logger.info("Weather scheduler stopped")

    def reset(self) -> None:
        self.budget.reset()
        if self._state is SchedulerState.DISABLED:
            self._state = SchedulerState.IDLE
        logger.info("Weather scheduler budget reset (0/%d)", self.budget.max_calls)

    async def trigger(self) -> Optional[CanonicalReading]:
        """Run one ad-hoc cycle against the same budget as the timer."""
        if self.budget.exhausted:
            raise BudgetExhaustedError(
                f"Weather call budget exhausted ({self.budget.call_count}/{self.budget.max_calls})",
                context={"locality": self.locality.name},
            )
        return await self.fire()

    async def _loop(self) -> None:
        if self._warmup > 0:
            await self._sleep(self._warmup)
        next_run = self._timer()
        while self._state is SchedulerState.RUNNING:
            try:
                await self.fire()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - keep the timer alive
                logger.exception("Weather scheduler cycle failed unexpectedly: %s", exc)
            if self._state is not SchedulerState.RUNNING:
                break
            # Fixed-rate schedule: slots missed by an overrunning cycle are skipped.
            now = self._timer()
            next_run += self._interval
            while next_run <= now:
                next_run += self._interval
            await self._sleep(next_run - now)

    async def fire(self) -> Optional[CanonicalReading]:
        if self._in_flight:
            logger.warning("Previous weather cycle still in flight; skipping this firing")
            return None
        if self.budget.exhausted:
            logger.warning("Weather call budget reached (%d/%d); disabling scheduler", self.budget.call_count, self.budget.max_calls)
            self._disable()
            return None

        count = self.budget.increment()
        self._in_flight = True
        self._last_run_at = self._clock()
        logger.info("Weather cycle %d/%d for %s", count, self.budget.max_calls, self.locality.name)
        try:
            reading = await self._run_cycle()
        finally:
            self._in_flight = False

        remaining = self.budget.remaining
        if self.budget.exhausted:
            logger.warning("Weather call budget reached (%d/%d); disabling scheduler", count, self.budget.max_calls)
            self._disable()
        elif remaining <= self._warning_remaining:
            logger.warning("Weather call budget running low: %d calls remaining", remaining)
        return reading

    async def _run_cycle(self) -> Optional[CanonicalReading]:
        locality = self.locality
        try:
            reading = await self._reconciler.reconcile(locality)
        except WeatherError as exc:
            self._last_error = exc.describe()
            logger.warning("Weather cycle for %s failed: %s", locality.name, self._last_error)
            return None

        self._last_error = None
        previous = self._last_reading
        if previous is not None:
            changes = reading.diff(previous)
            for name, (before, after) in changes.items():
                logger.info("Weather change for %s: %s %s -> %s", locality.name, name, before, after)
            if not changes:
                logger.info("Weather unchanged for %s", locality.name)
        self._last_reading = reading

        if self._sink is not None:
            try:
                await self._sink.record(reading, farm_id=self._farm_id)
            except Exception as exc:
                logger.error("Failed to persist weather reading for %s: %s", locality.name, exc)
        return reading

    def _disable(self) -> None:
        self._state = SchedulerState.DISABLED
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "locality": self.locality.name,
            "callCount": self.budget.call_count,
            "maxCalls": self.budget.max_calls,
            "remaining": self.budget.remaining,
            "inFlight": self._in_flight,
            "intervalSeconds": self._interval,
            "lastRunAt": _iso(self._last_run_at),
            "lastError": self._last_error,
            "lastReading": self._last_reading.to_payload() if self._last_reading else None,
        }


weather_scheduler = WeatherScheduler(
    weather_reconciler,
    settings.weather_locality,
    sink=weather_store,
    farm_id=settings.weather_farm_id,
)

__all__ = ["BudgetCounter", "SchedulerState", "WeatherScheduler", "weather_scheduler"]
