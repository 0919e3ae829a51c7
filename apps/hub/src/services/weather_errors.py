from __future__ import annotations

from typing import Any, Mapping, Optional


class WeatherError(RuntimeError):
    """Base class for failures raised by the weather acquisition engine."""

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.source = source
        self.status_code = status_code
        self.context: dict[str, Any] = dict(context or {})

    def describe(self) -> str:
        parts = [str(self)]
        if self.source:
            parts.append(f"source={self.source}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        for key, value in self.context.items():
            parts.append(f"{key}={value}")
        return " ".join(parts)


class TransportError(WeatherError):
    """Connection refused, DNS failure or another transport-level problem."""


class ProviderTimeoutError(TransportError):
    """The upstream call exceeded its timeout."""


class AuthError(WeatherError):
    """Credentials were rejected or are not configured."""


class RateLimitError(WeatherError):
    """The upstream quota is exhausted."""


class UpstreamError(WeatherError):
    """Unexpected upstream HTTP status."""


class UpstreamFormatError(UpstreamError):
    """The upstream body is missing required fields or cannot be parsed."""


class BudgetExhaustedError(WeatherError):
    """The scheduler reached its lifetime call cap."""


def error_for_status(
    status_code: int,
    *,
    source: str,
    context: Optional[Mapping[str, Any]] = None,
    detail: str = "",
) -> WeatherError:
    """Translate a non-2xx upstream status into the matching error class."""
    suffix = f": {detail}" if detail else ""
    if status_code in (401, 403):
        return AuthError(
            f"{source} rejected credentials (HTTP {status_code}){suffix}",
            source=source,
            status_code=status_code,
            context=context,
        )
    if status_code == 429:
        return RateLimitError(
            f"{source} quota exhausted (HTTP 429){suffix}",
            source=source,
            status_code=status_code,
            context=context,
        )
    return UpstreamError(
        f"{source} returned HTTP {status_code}{suffix}",
        source=source,
        status_code=status_code,
        context=context,
    )


__all__ = [
    "error_for_status",
    "WeatherError",
    "TransportError",
    "ProviderTimeoutError",
    "AuthError",
    "RateLimitError",
    "UpstreamError",
    "UpstreamFormatError",
    "BudgetExhaustedError",
]
