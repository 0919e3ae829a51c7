import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from api.v1 import weather_router
from config import settings
from main import configure_logging
from services.weather import CanonicalReading, ReconcileOutcome
from services.weather_errors import ProviderTimeoutError, RateLimitError, UpstreamFormatError
from services.weather_scheduler import BudgetCounter, WeatherScheduler
from services.weather_store import WeatherStore

READING = CanonicalReading(
    observation_time="202501151300",
    wind_direction=290.0,
    wind_speed=2.6,
    outside_temp=3.2,
    dew_point=-4.1,
    insolation=2.45,
    is_day=True,
    is_rain=False,
    locality_id="seoul",
)


class _StubReconciler:
    def __init__(self, error: Exception | None = None, failing: set[str] | None = None) -> None:
        self._error = error
        self._failing = failing or set()
        self.calls: list[str] = []

    async def fetch_raw(self, locality):
        self.calls.append(locality.name)
        if self._error is not None:
            raise self._error
        return {"current": {"dt": 1736913600, "temp": 3.2, "dew_point": -4.1}}

    async def reconcile(self, locality):
        self.calls.append(locality.name)
        if self._error is not None:
            raise self._error
        return replace(READING, locality_id=locality.name)

    async def reconcile_all(self, localities):
        outcomes = []
        for locality in localities:
            if locality.name in self._failing:
                error = RateLimitError("quota", source="openweather", status_code=429)
                outcomes.append(ReconcileOutcome(locality=locality, error=error))
            else:
                outcomes.append(ReconcileOutcome(locality=locality, reading=await self.reconcile(locality)))
        return outcomes


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> WeatherStore:
    store = WeatherStore(db_path=tmp_path / "weather.sqlite")
    monkeypatch.setattr(weather_router, "weather_store", store)
    return store


def _use_reconciler(monkeypatch: pytest.MonkeyPatch, reconciler: _StubReconciler) -> _StubReconciler:
    monkeypatch.setattr(weather_router, "weather_reconciler", reconciler)
    return reconciler


def test_meta_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": settings.app_version}


def test_v1_info(client: TestClient) -> None:
    response = client.get("/api/v1/info")
    assert response.status_code == 200
    payload = response.json()
    assert payload["name"] == settings.app_name
    assert payload["version"] == settings.app_version
    assert payload["cors_origins"] == settings.cors_origins
    assert payload["scheduler"]["enabled"] is False
    assert payload["scheduler"]["locality"] == settings.weather_locality
    assert payload["scheduler"]["max_calls"] == settings.weather_max_calls
    assert "seoul" in payload["localities"]


def test_info_reports_missing_provider_credentials(client: TestClient, settings_override) -> None:
    settings_override(openweather_api_key=None, kma_hub_auth_key="hub-key")

    providers = client.get("/api/v1/info").json()["providers"]

    assert providers == {"openweather_configured": False, "kma_configured": True}


def test_configure_logging_applies_level() -> None:
    configure_logging("debug")
    assert logging.getLogger("greensync.hub").level == logging.DEBUG
    configure_logging("bogus")
    assert logging.getLogger("greensync.hub").level == logging.INFO


def test_localities_endpoint(client: TestClient) -> None:
    response = client.get("/api/v1/weather/localities")
    assert response.status_code == 200
    names = [item["name"] for item in response.json()]
    assert "seoul" in names and "jeju" in names


def test_mapped_city_returns_and_stores_reading(
    monkeypatch: pytest.MonkeyPatch, client: TestClient, store: WeatherStore
) -> None:
    reconciler = _use_reconciler(monkeypatch, _StubReconciler())

    response = client.get("/api/v1/weather/mapped/서울", params={"farm_id": 4})

    assert response.status_code == 200
    payload = response.json()
    assert payload["observationTime"] == "202501151300"
    assert payload["localityId"] == "seoul"
    assert payload["farmId"] == 4
    assert payload["id"] >= 1
    assert reconciler.calls == ["seoul"]

    latest = client.get("/api/v1/weather/latest", params={"farm_id": 4})
    assert latest.status_code == 200
    assert latest.json()["insolation"] == pytest.approx(2.45)


def test_unknown_locality_is_404(monkeypatch: pytest.MonkeyPatch, client: TestClient) -> None:
    reconciler = _use_reconciler(monkeypatch, _StubReconciler())

    response = client.get("/api/v1/weather/mapped/atlantis")

    assert response.status_code == 404
    assert "Supported localities" in response.json()["detail"]
    assert reconciler.calls == []


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (RateLimitError("quota", source="openweather", status_code=429), 429),
        (ProviderTimeoutError("slow", source="openweather"), 504),
        (UpstreamFormatError("missing dew_point", source="openweather"), 502),
    ],
)
def test_provider_errors_map_to_http_status(
    monkeypatch: pytest.MonkeyPatch, client: TestClient, store: WeatherStore, error: Exception, status: int
) -> None:
    _use_reconciler(monkeypatch, _StubReconciler(error=error))

    assert client.get("/api/v1/weather/mapped/seoul").status_code == status
    assert client.get("/api/v1/weather/city/seoul").status_code == status


def test_city_endpoint_returns_raw_payload(monkeypatch: pytest.MonkeyPatch, client: TestClient) -> None:
    _use_reconciler(monkeypatch, _StubReconciler())

    response = client.get("/api/v1/weather/city/busan")

    assert response.status_code == 200
    body = response.json()
    assert body["locality"]["stationId"] == 159
    assert body["data"]["current"]["dew_point"] == -4.1


def test_mapped_all_reports_partial_failures(
    monkeypatch: pytest.MonkeyPatch, client: TestClient, store: WeatherStore
) -> None:
    _use_reconciler(monkeypatch, _StubReconciler(failing={"busan"}))

    response = client.get("/api/v1/weather/mapped")

    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]) == 10
    assert body["failures"] == [{"localityId": "busan", "error": "quota"}]


def test_latest_and_stats_are_404_when_empty(client: TestClient, store: WeatherStore) -> None:
    assert client.get("/api/v1/weather/latest").status_code == 404
    assert client.get("/api/v1/weather/stats").status_code == 404


def test_stats_endpoint(monkeypatch: pytest.MonkeyPatch, client: TestClient, store: WeatherStore) -> None:
    now_label = datetime.now(timezone.utc).astimezone(ZoneInfo(settings.weather_timezone)).strftime("%Y%m%d%H%M")

    class _NowReconciler(_StubReconciler):
        async def reconcile(self, locality):
            return replace(READING, observation_time=now_label, locality_id=locality.name)

    _use_reconciler(monkeypatch, _NowReconciler())
    client.get("/api/v1/weather/mapped/seoul")

    response = client.get("/api/v1/weather/stats", params={"period": "7d"})

    assert response.status_code == 200
    body = response.json()
    assert body["period"] == "7d"
    assert body["stats"]["recordCount"] == 1


def test_scheduler_trigger_and_budget(monkeypatch: pytest.MonkeyPatch, client: TestClient) -> None:
    scheduler = WeatherScheduler(_StubReconciler(), "seoul", budget=BudgetCounter(max_calls=1))
    monkeypatch.setattr(weather_router, "weather_scheduler", scheduler)

    first = client.post("/api/v1/weather/scheduler/trigger")
    assert first.status_code == 200
    assert first.json()["callCount"] == 1
    assert first.json()["state"] == "disabled"
    assert first.json()["lastReading"]["localityId"] == "seoul"

    assert client.post("/api/v1/weather/scheduler/trigger").status_code == 429

    reset = client.post("/api/v1/weather/scheduler/reset")
    assert reset.json()["state"] == "idle"
    assert reset.json()["remaining"] == 1

    status = client.get("/api/v1/weather/scheduler")
    assert status.json()["maxCalls"] == 1
