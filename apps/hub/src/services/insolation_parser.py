"""Parser for the KMA hourly surface observation text feed.

The feed's column layout differs between stations and firmware revisions, so
the solar irradiance value is located with two strategies tried in order:

* ``MarkerOffsetStrategy`` reads the token a fixed distance after the first
  4-digit marker token on the data line.
* ``RangeScanStrategy`` picks the largest decimal token in the plausible
  irradiance range when the positional read yields nothing.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence, Tuple

from config import settings

TIMESTAMP_TOKEN_RE = re.compile(r"^\d{12}$")
MARKER_TOKEN_RE = re.compile(r"^\d{4}$")


@dataclass(frozen=True, slots=True)
class ParserConfig:
    comment_marker: str = "#"
    marker_offset: int = 2
    missing_sentinel: float = -9.0
    scan_min: float = 0.5
    scan_max: float = 10.0
    scan_excluded: Tuple[float, ...] = field(default=(1.0,))

    @classmethod
    def from_settings(cls) -> "ParserConfig":
        return cls(
            marker_offset=settings.insolation_marker_offset,
            missing_sentinel=settings.insolation_missing_sentinel,
            scan_min=settings.insolation_scan_min,
            scan_max=settings.insolation_scan_max,
            scan_excluded=tuple(settings.insolation_scan_excluded),
        )


@dataclass(frozen=True, slots=True)
class IrradianceSample:
    value: Optional[float]
    success: bool
    source_timestamp: Optional[str] = None
    strategy: Optional[str] = None

    @classmethod
    def failed(cls, source_timestamp: Optional[str] = None) -> "IrradianceSample":
        return cls(value=None, success=False, source_timestamp=source_timestamp)


class ExtractionStrategy(Protocol):
    name: str

    def extract(self, tokens: Sequence[str]) -> Optional[float]:
        ...


def _to_float(token: str) -> Optional[float]:
    try:
        value = float(token)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


class MarkerOffsetStrategy:
    name = "marker_offset"

    def __init__(self, config: ParserConfig) -> None:
        self._config = config

    def extract(self, tokens: Sequence[str]) -> Optional[float]:
        marker_index = next((i for i, token in enumerate(tokens) if MARKER_TOKEN_RE.match(token)), None)
        if marker_index is None:
            return None
        target = marker_index + self._config.marker_offset
        if target >= len(tokens):
            return None
        value = _to_float(tokens[target])
        if value is None or value == self._config.missing_sentinel or value < 0.0:
            return None
        return value


class RangeScanStrategy:
    name = "range_scan"

    def __init__(self, config: ParserConfig) -> None:
        self._config = config

    def extract(self, tokens: Sequence[str]) -> Optional[float]:
        candidates = []
        for token in tokens:
            if "." not in token:
                continue
            value = _to_float(token)
            if value is None:
                continue
            if not self._config.scan_min <= value <= self._config.scan_max:
                continue
            if value in self._config.scan_excluded:
                continue
            candidates.append(value)
        return max(candidates) if candidates else None


class InsolationParser:
    def __init__(
        self,
        config: Optional[ParserConfig] = None,
        strategies: Optional[Sequence[ExtractionStrategy]] = None,
    ) -> None:
        self._config = config or ParserConfig()
        self._strategies: Tuple[ExtractionStrategy, ...] = tuple(
            strategies
            if strategies is not None
            else (MarkerOffsetStrategy(self._config), RangeScanStrategy(self._config))
        )

    def find_data_line(self, raw: str) -> Optional[list[str]]:
        """Return the tokens of the first data line, or ``None`` when the body has none."""
        for line in (raw or "").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith(self._config.comment_marker):
                continue
            tokens = stripped.split()
            if TIMESTAMP_TOKEN_RE.match(tokens[0]):
                return tokens
        return None

    def parse(self, raw: str) -> IrradianceSample:
        tokens = self.find_data_line(raw)
        if tokens is None:
            return IrradianceSample.failed()
        timestamp, fields = tokens[0], tokens[1:]
        for strategy in self._strategies:
            value = strategy.extract(fields)
            if value is not None:
                return IrradianceSample(value=value, success=True, source_timestamp=timestamp, strategy=strategy.name)
        return IrradianceSample.failed(timestamp)


__all__ = [
    "ExtractionStrategy",
    "InsolationParser",
    "IrradianceSample",
    "MarkerOffsetStrategy",
    "ParserConfig",
    "RangeScanStrategy",
]
