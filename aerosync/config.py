"""Engine configuration pulled from environment variables via pydantic."""
from typing import List, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from aerosync.domain import DEFAULT_SEVERITY_BANDS, DEFAULT_TRACKED_FACTORS, SeverityBand
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="config")

SUPPORTED_SOURCES = ("aqicn", "open_meteo")
SUPPORTED_FALLBACKS = ("none", "synthetic")


class Settings(BaseSettings):
    """Environment-driven configuration for the aerosync engine."""
    model_config = SettingsConfigDict(env_prefix="AEROSYNC_", extra="ignore")

    data_source: str = "aqicn"  # options: aqicn, open_meteo
    aqicn_base_url: str = "https://api.waqi.info"
    aqicn_api_token: str = "demo"
    open_meteo_air_url: str = "https://air-quality-api.open-meteo.com/v1/air-quality"
    open_meteo_geocoding_url: str = "https://geocoding-api.open-meteo.com/v1/search"
    request_timeout_seconds: float = 10.0

    poll_interval_seconds: float = 300.0
    min_fetch_interval_seconds: float = 60.0
    max_retries: int = 3
    retry_delay_seconds: float = 30.0

    enable_cache: bool = True
    cache_max_entries: int | None = None
    current_ttl_seconds: float = 300.0
    historical_ttl_seconds: float = 7200.0
    search_ttl_seconds: float = 1800.0
    forecast_ttl_seconds: float = 3600.0
    forecast_days: int = 7
    report_ttl_seconds: float = 7200.0
    report_window_days: int = 7
    coordinate_precision: int = 4

    severity_bands: List[SeverityBand] = Field(default_factory=lambda: list(DEFAULT_SEVERITY_BANDS))
    tracked_factors: Tuple[str, ...] = DEFAULT_TRACKED_FACTORS
    report_fallback: str = "none"  # options: none, synthetic

    api_key: str | None = None
    log_level: str = "INFO"
    job_name: str = "aerosync"

    @field_validator("aqicn_base_url", "open_meteo_air_url", "open_meteo_geocoding_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URLs to avoid double slashes."""
        return str(v).rstrip("/")

    @field_validator("data_source", "report_fallback", mode="after")
    @classmethod
    def lowercase(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator(
        "poll_interval_seconds",
        "retry_delay_seconds",
        "request_timeout_seconds",
        "current_ttl_seconds",
        "historical_ttl_seconds",
        "search_ttl_seconds",
        "forecast_ttl_seconds",
        "report_ttl_seconds",
        mode="after",
    )
    @classmethod
    def positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("min_fetch_interval_seconds", "max_retries", mode="after")
    @classmethod
    def non_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("report_window_days", mode="after")
    @classmethod
    def at_least_one_day(cls, v: int) -> int:
        if v < 1:
            raise ValueError("report_window_days must be at least 1")
        return v

    @field_validator("forecast_days", mode="after")
    @classmethod
    def forecast_horizon(cls, v: int) -> int:
        if not 1 <= v <= 7:
            raise ValueError("forecast_days must be between 1 and 7")
        return v

    @field_validator("coordinate_precision", mode="after")
    @classmethod
    def sane_precision(cls, v: int) -> int:
        if not 0 <= v <= 8:
            raise ValueError("coordinate_precision must be between 0 and 8")
        return v

    @field_validator("severity_bands", mode="after")
    @classmethod
    def ascending_bands(cls, bands: List[SeverityBand]) -> List[SeverityBand]:
        """Bands must be non-empty and strictly ascending; only the last may be unbounded."""
        validate_bands(bands)
        return bands

    @model_validator(mode="after")
    def known_choices(self) -> "Settings":
        if self.data_source not in SUPPORTED_SOURCES:
            raise ValueError(f"data_source must be one of {SUPPORTED_SOURCES}, got '{self.data_source}'")
        if self.report_fallback not in SUPPORTED_FALLBACKS:
            raise ValueError(f"report_fallback must be one of {SUPPORTED_FALLBACKS}, got '{self.report_fallback}'")
        return self


def validate_bands(bands) -> None:
    """Raise ValueError unless `bands` is a usable ordered band set."""
    if not bands:
        raise ValueError("at least one severity band is required")
    previous = None
    for i, band in enumerate(bands):
        if band.upper is None:
            if i != len(bands) - 1:
                raise ValueError("only the last severity band may be unbounded")
            continue
        if previous is not None and band.upper <= previous:
            raise ValueError("severity band boundaries must be strictly ascending")
        previous = band.upper


settings = Settings()


if __name__ == "__main__":
    logger.setLevel("DEBUG")
    logger.debug(f"Loaded settings: {settings.model_dump_json(indent=4)}")
