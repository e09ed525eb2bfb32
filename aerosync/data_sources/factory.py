"""Factory helpers for choosing a data source at startup."""

from __future__ import annotations

from aerosync import config
from aerosync.cache import TTLCache
from aerosync.data_sources.aqicn_client import DEMO_TOKEN, AqicnDataSource
from aerosync.data_sources.base import AirQualityDataSource
from aerosync.data_sources.caching import CachingDataSource
from aerosync.data_sources.open_meteo_client import OpenMeteoAirQualityDataSource
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="data_sources/factory")


DEFAULT_SOURCE_NAME = "aqicn"


def build_upstream(settings: config.Settings | None = None) -> AirQualityDataSource:
    """Instantiate the configured upstream provider without caching."""
    settings = settings or config.settings
    source = (settings.data_source or DEFAULT_SOURCE_NAME).lower()

    if source == "aqicn":
        token = settings.aqicn_api_token
        if not token or token == DEMO_TOKEN:
            logger.warning("Using the AQICN demo token; historical reports will be unavailable")
        logger.info("Using AQICN data source", extra={"base_url": settings.aqicn_base_url})
        return AqicnDataSource(
            base_url=settings.aqicn_base_url,
            token=token,
            timeout=settings.request_timeout_seconds,
            forecast_days=settings.forecast_days,
        )

    if source == "open_meteo":
        logger.info("Using Open-Meteo data source")
        return OpenMeteoAirQualityDataSource(
            air_url=settings.open_meteo_air_url,
            geocoding_url=settings.open_meteo_geocoding_url,
            timeout=settings.request_timeout_seconds,
            forecast_days=settings.forecast_days,
        )

    raise ValueError(f"Unknown data source '{source}'")


def build_data_source(settings: config.Settings | None = None, cache: TTLCache | None = None) -> AirQualityDataSource:
    """Instantiate the configured provider, wrapped in a read-through cache when enabled."""
    settings = settings or config.settings
    upstream = build_upstream(settings)
    if not settings.enable_cache:
        logger.info("Data source caching disabled")
        return upstream
    return CachingDataSource(
        upstream,
        cache if cache is not None else TTLCache(max_entries=settings.cache_max_entries),
        current_ttl_seconds=settings.current_ttl_seconds,
        historical_ttl_seconds=settings.historical_ttl_seconds,
        search_ttl_seconds=settings.search_ttl_seconds,
        forecast_ttl_seconds=settings.forecast_ttl_seconds,
        precision=settings.coordinate_precision,
    )
