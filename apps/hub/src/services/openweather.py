from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from config import settings
from .stations import Locality
from .weather_errors import (
    AuthError,
    ProviderTimeoutError,
    TransportError,
    UpstreamFormatError,
    error_for_status,
)

logger = logging.getLogger("greensync.hub.weather.openweather")

SOURCE = "openweather"
ONECALL_PATH = "/onecall"
ONECALL_EXCLUDE = "minutely,hourly,daily,alerts"
REQUIRED_CURRENT_FIELDS = ("dt", "temp", "dew_point")


class OpenWeatherClient:
    """Current-conditions client for the OpenWeatherMap One Call API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        language: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._language = language
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key if self._api_key is not None else settings.openweather_api_key

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": settings.weather_user_agent,
                "Accept": "application/json",
            }
            self._client = httpx.AsyncClient(
                base_url=(self._base_url or settings.openweather_base_url).rstrip("/"),
                headers=headers,
                timeout=self._timeout or settings.weather_request_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch_current(self, locality: Locality) -> dict[str, Any]:
        """Return the provider payload for ``locality``; the ``current`` block is validated."""
        _check_coordinates(locality)
        context = {"locality": locality.name, "lat": locality.latitude, "lon": locality.longitude}
        api_key = self.api_key
        if not api_key:
            raise AuthError("OpenWeather API key is not configured", source=SOURCE, context=context)

        params = {
            "lat": locality.latitude,
            "lon": locality.longitude,
            "appid": api_key,
            "units": "metric",
            "lang": self._language or settings.openweather_language,
            "exclude": ONECALL_EXCLUDE,
        }
        client = await self._get_client()
        logger.debug("Fetching current conditions for %s (%.4f, %.4f)", locality.name, locality.latitude, locality.longitude)
        try:
            response = await client.get(ONECALL_PATH, params=params)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(
                f"OpenWeather request timed out: {exc}", source=SOURCE, context=context
            ) from exc
        except httpx.TransportError as exc:
            raise TransportError(
                f"OpenWeather request failed: {exc}", source=SOURCE, context=context
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFormatError(
                f"OpenWeather response unreadable: {exc}", source=SOURCE, context=context
            ) from exc

        if response.status_code >= 400:
            raise error_for_status(
                response.status_code,
                source=SOURCE,
                context=context,
                detail=_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamFormatError(
                "OpenWeather returned a non-JSON body",
                source=SOURCE,
                status_code=response.status_code,
                context=context,
            ) from exc
        _validate_payload(payload, context)
        return payload


def _check_coordinates(locality: Locality) -> None:
    if not -90.0 <= locality.latitude <= 90.0 or not -180.0 <= locality.longitude <= 180.0:
        raise ValueError(f"Invalid coordinates for {locality.name}: ({locality.latitude}, {locality.longitude})")


def _validate_payload(payload: Any, context: dict[str, Any]) -> None:
    if not isinstance(payload, dict):
        raise UpstreamFormatError("OpenWeather payload is not an object", source=SOURCE, context=context)
    current = payload.get("current")
    if not isinstance(current, dict):
        raise UpstreamFormatError("OpenWeather payload has no current conditions block", source=SOURCE, context=context)
    missing = [key for key in REQUIRED_CURRENT_FIELDS if current.get(key) is None]
    if "dew_point" in missing:
        # Only One Call responses carry dew point; anything else is an incompatible API version.
        raise UpstreamFormatError(
            "OpenWeather payload missing dew_point; incompatible API version",
            source=SOURCE,
            context=context,
        )
    if missing:
        raise UpstreamFormatError(
            f"OpenWeather payload missing required fields: {', '.join(missing)}",
            source=SOURCE,
            context=context,
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, str):
            return message
    return ""


openweather_client = OpenWeatherClient()

__all__ = ["OpenWeatherClient", "openweather_client"]
