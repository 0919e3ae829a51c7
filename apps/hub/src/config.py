from pathlib import Path
from typing import Annotated, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

class Settings(BaseSettings):
    # Load apps/hub/.env and accept env keys in any case
    _env_file = Path(__file__).resolve().parent.parent / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "GreenSync Hub"
    app_version: str = "0.1.0"
    debug: bool = True
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8000
    log_level: str = Field(default="INFO", description="Level for the greensync.hub logger tree.")

    # Global weather provider (OpenWeatherMap One Call)
    openweather_api_key: str | None = None
    openweather_base_url: str = Field(
        default="https://api.openweathermap.org/data/3.0",
        description="Base URL for the One Call current-conditions endpoint.",
    )
    openweather_language: str = Field(default="kr", description="Language code for provider descriptions.")
    weather_user_agent: str = Field(
        default="GreenSyncHub/0.1.0 (support@example.com)",
        description="User-Agent sent to upstream weather providers.",
    )
    weather_request_timeout: float = Field(default=5.0, ge=1.0, description="Timeout in seconds for provider HTTP calls")

    # National station text feed (KMA API Hub)
    kma_hub_auth_key: str | None = None
    kma_hub_base_url: str = Field(
        default="https://apihub.kma.go.kr/api/typ01/url/kma_sfctm2.php",
        description="Hourly surface observation text endpoint.",
    )
    kma_request_timeout: float = Field(
        default=10.0,
        ge=1.0,
        description="Timeout in seconds for station feed calls; the feed is slower than the provider.",
    )

    # Reconciliation
    weather_timezone: str = Field(default="Asia/Seoul", description="Timezone used for observation timestamps.")
    weather_realtime_tolerance_minutes: int = Field(
        default=15,
        ge=0,
        description="Maximum provider observation age before a reading is classified OUTDATED.",
    )
    weather_day_start_hour: int = Field(default=6, ge=0, le=23)
    weather_day_end_hour: int = Field(default=18, ge=0, le=23)

    # Scheduler
    weather_scheduler_enabled: bool = Field(default=False, description="Start the acquisition scheduler on startup.")
    weather_locality: str = Field(default="seoul", description="Locality polled by the scheduler.")
    weather_farm_id: int | None = Field(default=1, description="Farm id attached to scheduled readings.")
    weather_poll_interval_minutes: float = Field(default=5.0, gt=0.0)
    weather_warmup_seconds: float = Field(default=3.0, ge=0.0)
    weather_max_calls: int = Field(default=1000, ge=1, description="Lifetime cap on scheduled acquisition calls.")
    weather_budget_warning_remaining: int = Field(
        default=50,
        ge=0,
        description="Log a warning once this many scheduled calls remain.",
    )
    weather_db: str = Field(
        default="data/weather.sqlite",
        description="SQLite database path for canonical weather readings.",
    )

    # Station feed parsing
    insolation_fallback_hours: int = Field(
        default=4,
        ge=1,
        le=4,
        description="Number of top-of-hour timestamps tried when the current hour has no data.",
    )
    insolation_marker_offset: int = Field(default=2, ge=1)
    insolation_missing_sentinel: float = -9.0
    insolation_scan_min: float = 0.5
    insolation_scan_max: float = 10.0
    insolation_scan_excluded: Annotated[List[float], NoDecode] = Field(default_factory=lambda: [1.0])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def normalize_cors(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

    @field_validator("insolation_scan_excluded", mode="before")
    @classmethod
    def normalize_excluded(cls, v):
        if isinstance(v, (int, float)):
            return [float(v)]
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            return [float(p) for p in s.split(",") if p.strip()]
        return v

settings = Settings()
