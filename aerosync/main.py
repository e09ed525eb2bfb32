"""FastAPI application setup and engine wiring for AeroSync."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional

from fastapi import FastAPI

from aerosync import config
from aerosync.api import router as api_router
from aerosync.cache import TTLCache
from aerosync.data_sources import CachingDataSource, build_data_source
from aerosync.data_sources.base import AirQualityDataSource
from aerosync.poller import Poller
from aerosync.registry import PollerRegistry
from aerosync.report_service import WeeklyReportService
from aerosync.scheduling import Scheduler, ThreadingScheduler, monotonic_clock
from utils.logging_utils import get_tagged_logger, setup_logging

logger = get_tagged_logger(__name__, tag="main")


@dataclass
class Engine:
    """Everything the API needs, built once per application."""
    settings: config.Settings
    cache: TTLCache
    data_source: AirQualityDataSource
    registry: PollerRegistry
    reports: WeeklyReportService


def build_engine(
    settings: Optional[config.Settings] = None,
    *,
    data_source: Optional[AirQualityDataSource] = None,
    scheduler: Optional[Scheduler] = None,
    clock: Callable[[], float] = monotonic_clock,
) -> Engine:
    """Wire cache, data source, poller registry and report service together.

    Passing `data_source` skips the factory (and its read-through cache), which
    is how tests plug in fakes. Pollers read current values through the
    cache's live view so that every poll and refresh reaches the provider.
    """
    settings = settings or config.settings
    cache = TTLCache(clock=clock, max_entries=settings.cache_max_entries)
    if data_source is None:
        data_source = build_data_source(settings, cache=cache)
    scheduler = scheduler or ThreadingScheduler(name=settings.job_name)
    poll_source = data_source.live() if isinstance(data_source, CachingDataSource) else data_source

    registry = PollerRegistry(
        partial(Poller.from_settings, poll_source, settings, clock=clock, scheduler=scheduler),
        precision=settings.coordinate_precision,
    )
    reports = WeeklyReportService.from_settings(data_source, cache, settings)
    return Engine(settings=settings, cache=cache, data_source=data_source, registry=registry, reports=reports)


def create_app(
    settings: Optional[config.Settings] = None,
    *,
    data_source: Optional[AirQualityDataSource] = None,
    scheduler: Optional[Scheduler] = None,
    clock: Callable[[], float] = monotonic_clock,
) -> FastAPI:
    """Build the FastAPI app; pollers are disposed when the app shuts down."""
    settings = settings or config.settings
    engine = build_engine(settings, data_source=data_source, scheduler=scheduler, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        disposed = engine.registry.dispose_all()
        logger.info("Shutdown complete", extra={"disposed_pollers": disposed})

    app = FastAPI(title="AeroSync", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(api_router, prefix="/v1")
    return app


def create_default_app() -> FastAPI:
    """Entry point for uvicorn's factory mode."""
    setup_logging(level=config.settings.log_level, job_name=config.settings.job_name)
    return create_app(config.settings)
