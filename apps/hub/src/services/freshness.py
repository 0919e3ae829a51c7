from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

DEFAULT_TOLERANCE_MINUTES = 15


class FreshnessStatus(str, Enum):
    REALTIME = "REALTIME"
    OUTDATED = "OUTDATED"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class FreshnessResult:
    is_realtime: bool
    delta_minutes: Optional[int]
    status: FreshnessStatus

    def to_dict(self) -> dict[str, object]:
        return {
            "isRealtime": self.is_realtime,
            "deltaMinutes": self.delta_minutes,
            "status": self.status.value,
        }


def _epoch_seconds(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            numeric = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return numeric if math.isfinite(numeric) else None


def classify(
    provider_timestamp: Any,
    now: Any,
    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES,
) -> FreshnessResult:
    """Compare a provider observation time against wall-clock ``now``.

    Both arguments accept epoch seconds (numbers or numeric strings) or
    datetimes; naive datetimes are treated as UTC. The result is advisory:
    callers record it and carry on.
    """
    provider_seconds = _epoch_seconds(provider_timestamp)
    now_seconds = _epoch_seconds(now)
    if provider_seconds is None or now_seconds is None:
        return FreshnessResult(is_realtime=False, delta_minutes=None, status=FreshnessStatus.ERROR)

    delta_seconds = now_seconds - provider_seconds
    delta_minutes = int(delta_seconds / 60.0)
    if abs(delta_seconds) <= tolerance_minutes * 60:
        return FreshnessResult(is_realtime=True, delta_minutes=delta_minutes, status=FreshnessStatus.REALTIME)
    return FreshnessResult(is_realtime=False, delta_minutes=delta_minutes, status=FreshnessStatus.OUTDATED)


__all__ = ["DEFAULT_TOLERANCE_MINUTES", "FreshnessResult", "FreshnessStatus", "classify"]
