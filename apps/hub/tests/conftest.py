
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Keep the module-level reading store out of the working tree.
os.environ.setdefault("WEATHER_DB", str(Path(tempfile.mkdtemp(prefix="greensync-tests-")) / "weather.sqlite"))
os.environ.setdefault("WEATHER_SCHEDULER_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from config import settings
from main import create_app
from services.insolation import insolation_service
from services.weather_scheduler import weather_scheduler


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_weather_services() -> None:
    insolation_service.cache.clear()
    weather_scheduler.reset()
    yield
    insolation_service.cache.clear()
    weather_scheduler.reset()


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def disable_scheduler(settings_override: Callable[..., None]) -> None:
    settings_override(weather_scheduler_enabled=False)
    yield


@pytest.fixture
def client(disable_scheduler: None) -> TestClient:
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
