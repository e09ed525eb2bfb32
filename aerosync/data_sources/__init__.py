"""Data source implementations and factories for plugging different air-quality backends."""

from .base import AirQualityDataSource, CallableAirQualityDataSource
from .caching import CachingDataSource
from .factory import build_data_source, build_upstream
from .aqicn_client import AqicnDataSource
from .open_meteo_client import OpenMeteoAirQualityDataSource

__all__ = [
    "build_data_source",
    "build_upstream",
    "AirQualityDataSource",
    "CallableAirQualityDataSource",
    "CachingDataSource",
    "AqicnDataSource",
    "OpenMeteoAirQualityDataSource",
]
