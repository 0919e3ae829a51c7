from datetime import datetime, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import httpx
import pytest

from services.kma_feed import KmaFeedClient, format_feed_timestamp
from services.openweather import OpenWeatherClient
from services.stations import get_locality
from services.weather_errors import (
    AuthError,
    ProviderTimeoutError,
    RateLimitError,
    TransportError,
    UpstreamError,
    UpstreamFormatError,
)

KST = ZoneInfo("Asia/Seoul")


def _onecall_body(**current_overrides):
    current = {
        "dt": 1736913600,
        "temp": 3.2,
        "dew_point": -4.1,
        "wind_deg": 290,
        "wind_speed": 2.6,
        "weather": [{"id": 800, "icon": "01d"}],
    }
    current.update(current_overrides)
    return {"lat": 37.5665, "lon": 126.978, "timezone": "Asia/Seoul", "current": current}


def _openweather(handler, **kwargs) -> OpenWeatherClient:
    return OpenWeatherClient(
        api_key=kwargs.pop("api_key", "test-key"),
        base_url="https://owm.test/data/3.0",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.anyio
async def test_openweather_sends_onecall_params():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_onecall_body())

    client = _openweather(handler, language="kr")
    payload = await client.fetch_current(get_locality("seoul"))
    await client.close()

    assert payload["current"]["temp"] == 3.2
    request = seen[0]
    assert request.url.path == "/data/3.0/onecall"
    params = request.url.params
    assert params["appid"] == "test-key"
    assert params["units"] == "metric"
    assert params["lang"] == "kr"
    assert params["exclude"] == "minutely,hourly,daily,alerts"
    assert float(params["lat"]) == pytest.approx(37.5665)


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("status", "error_type"),
    [(401, AuthError), (403, AuthError), (429, RateLimitError), (500, UpstreamError)],
)
async def test_openweather_maps_error_statuses(status, error_type):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"cod": status, "message": "nope"})

    client = _openweather(handler)
    with pytest.raises(error_type) as excinfo:
        await client.fetch_current(get_locality("seoul"))
    await client.close()

    assert excinfo.value.status_code == status
    assert excinfo.value.source == "openweather"
    assert excinfo.value.context["locality"] == "seoul"


@pytest.mark.anyio
async def test_openweather_timeout_and_transport_failures():
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    def refused_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderTimeoutError):
        await _openweather(timeout_handler).fetch_current(get_locality("seoul"))
    with pytest.raises(TransportError) as excinfo:
        await _openweather(refused_handler).fetch_current(get_locality("seoul"))
    assert not isinstance(excinfo.value, ProviderTimeoutError)


@pytest.mark.anyio
async def test_openweather_requires_dew_point():
    body = _onecall_body()
    del body["current"]["dew_point"]

    client = _openweather(lambda request: httpx.Response(200, json=body))
    with pytest.raises(UpstreamFormatError, match="incompatible API version"):
        await client.fetch_current(get_locality("seoul"))


@pytest.mark.anyio
async def test_openweather_rejects_malformed_bodies():
    no_current = _openweather(lambda request: httpx.Response(200, json={"lat": 1}))
    not_json = _openweather(lambda request: httpx.Response(200, text="<html>"))

    with pytest.raises(UpstreamFormatError):
        await no_current.fetch_current(get_locality("seoul"))
    with pytest.raises(UpstreamFormatError):
        await not_json.fetch_current(get_locality("seoul"))


@pytest.mark.anyio
async def test_openweather_without_key_raises_auth_error(settings_override):
    settings_override(openweather_api_key=None)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_onecall_body())

    client = OpenWeatherClient(transport=httpx.MockTransport(handler))
    with pytest.raises(AuthError):
        await client.fetch_current(get_locality("seoul"))
    assert calls == []


@pytest.mark.anyio
async def test_openweather_rejects_invalid_coordinates():
    client = _openweather(lambda request: httpx.Response(200, json=_onecall_body()))
    bogus = SimpleNamespace(name="bogus", latitude=95.0, longitude=10.0, station_id=0)

    with pytest.raises(ValueError):
        await client.fetch_current(bogus)


def test_format_feed_timestamp_uses_station_timezone():
    value = datetime(2025, 1, 15, 4, 0, tzinfo=timezone.utc)
    assert format_feed_timestamp(value, KST) == "202501151300"
    assert format_feed_timestamp(datetime(2025, 1, 15, 13, 0), KST) == "202501151300"


@pytest.mark.anyio
async def test_kma_feed_sends_station_params():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="#START7777\n202501151300 108 0012 3 2.45\n#7777END\n")

    client = KmaFeedClient(
        auth_key="hub-key",
        base_url="https://kma.test/api/typ01/url/kma_sfctm2.php",
        transport=httpx.MockTransport(handler),
    )
    body = await client.fetch_station_line(108, "202501151300")
    await client.close()

    assert "2.45" in body
    params = seen[0].url.params
    assert params["tm"] == "202501151300"
    assert params["stn"] == "108"
    assert params["help"] == "1"
    assert params["authKey"] == "hub-key"


@pytest.mark.anyio
async def test_kma_feed_rejects_non_hourly_timestamps():
    client = KmaFeedClient(auth_key="k", transport=httpx.MockTransport(lambda r: httpx.Response(200)))

    with pytest.raises(ValueError):
        await client.fetch_station_line(108, "202501151330")
    with pytest.raises(ValueError):
        await client.fetch_station_line(108, "2025011513")


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("status", "error_type"),
    [(401, AuthError), (429, RateLimitError), (502, UpstreamError)],
)
async def test_kma_feed_maps_error_statuses(status, error_type):
    client = KmaFeedClient(
        auth_key="k",
        base_url="https://kma.test/feed",
        transport=httpx.MockTransport(lambda request: httpx.Response(status, text="error")),
    )

    with pytest.raises(error_type) as excinfo:
        await client.fetch_station_line(108, "202501151300")
    assert excinfo.value.context == {"station": 108, "tm": "202501151300"}


@pytest.mark.anyio
async def test_kma_feed_timeout_maps_to_provider_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    client = KmaFeedClient(auth_key="k", base_url="https://kma.test/feed", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderTimeoutError):
        await client.fetch_station_line(108, "202501151300")


def _corrupt_gzip(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip")


@pytest.mark.anyio
async def test_kma_feed_undecodable_body_maps_to_format_error():
    client = KmaFeedClient(auth_key="k", base_url="https://kma.test/feed", transport=httpx.MockTransport(_corrupt_gzip))

    with pytest.raises(UpstreamFormatError) as excinfo:
        await client.fetch_station_line(108, "202501151300")
    assert excinfo.value.source == "kma"


@pytest.mark.anyio
async def test_openweather_undecodable_body_maps_to_format_error():
    client = _openweather(_corrupt_gzip)

    with pytest.raises(UpstreamFormatError):
        await client.fetch_current(get_locality("seoul"))
