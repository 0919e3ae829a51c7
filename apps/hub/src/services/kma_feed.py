from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

import httpx

from config import settings
from .weather_errors import ProviderTimeoutError, TransportError, UpstreamFormatError, error_for_status

logger = logging.getLogger("greensync.hub.weather.kma")

SOURCE = "kma"
FEED_TIMESTAMP_RE = re.compile(r"^\d{12}$")


def format_feed_timestamp(value: datetime, tz: Optional[ZoneInfo] = None) -> str:
    """Render ``value`` as the feed's ``YYYYMMDDHHmm`` label in the station timezone."""
    zone = tz or ZoneInfo(settings.weather_timezone)
    if value.tzinfo is None:
        value = value.replace(tzinfo=zone)
    return value.astimezone(zone).strftime("%Y%m%d%H%M")


def _normalize_timestamp(timestamp: Union[datetime, str]) -> str:
    label = format_feed_timestamp(timestamp) if isinstance(timestamp, datetime) else str(timestamp).strip()
    if not FEED_TIMESTAMP_RE.match(label):
        raise ValueError(f"Feed timestamp must be YYYYMMDDHHmm, got {label!r}")
    if not label.endswith("00"):
        raise ValueError(f"Feed timestamp must be top-of-hour, got {label!r}")
    return label


class KmaFeedClient:
    """Client for the KMA API Hub hourly surface observation text feed."""

    def __init__(
        self,
        *,
        auth_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._auth_key = auth_key
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": settings.weather_user_agent,
                "Accept": "text/plain",
            }
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=self._timeout or settings.kma_request_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch_station_line(self, station_id: int | str, timestamp: Union[datetime, str]) -> str:
        """Fetch the raw text body for one station at one top-of-hour timestamp."""
        tm = _normalize_timestamp(timestamp)
        context = {"station": station_id, "tm": tm}
        params = {
            "tm": tm,
            "stn": station_id,
            "help": 1,
            "authKey": self._auth_key if self._auth_key is not None else (settings.kma_hub_auth_key or ""),
        }
        url = self._base_url or settings.kma_hub_base_url
        client = await self._get_client()
        logger.debug("Fetching station feed stn=%s tm=%s", station_id, tm)
        try:
            response = await client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"KMA feed request timed out: {exc}", source=SOURCE, context=context) from exc
        except httpx.TransportError as exc:
            raise TransportError(f"KMA feed request failed: {exc}", source=SOURCE, context=context) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFormatError(f"KMA feed response unreadable: {exc}", source=SOURCE, context=context) from exc

        if response.status_code >= 400:
            raise error_for_status(
                response.status_code,
                source=SOURCE,
                context=context,
                detail=response.text[:200].strip(),
            )
        return response.text


kma_feed_client = KmaFeedClient()

__all__ = ["KmaFeedClient", "format_feed_timestamp", "kma_feed_client"]
