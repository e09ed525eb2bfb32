"""HTTP API over the polling engine, the report service and the shared cache."""

import hmac
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from pydantic import BaseModel

from aerosync.domain import DailyPoint, PollerStatus, Reading, StationSummary, WeeklyReport
from aerosync.errors import FailureKind, FetchError, RateLimitedError
from aerosync.fallback import generate_report_with_fallback
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="api")


def get_engine(request: Request):
    """Engine built by `aerosync.main.create_app` and stored on the app."""
    return request.app.state.engine


def require_api_key(request: Request, x_api_key: str | None = Header(default=None)):
    """
    Validate the X-API-Key header against the configured api_key.
    """
    expected = get_engine(request).settings.api_key
    # If no key is configured, allow requests (dev/default mode).
    if not expected:
        logger.debug("No API key configured; allowing all requests")
        return

    if not x_api_key:
        logger.debug("No API key provided")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    if hmac.compare_digest(str(x_api_key), str(expected)):
        return

    logger.debug("Invalid API key provided")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


router = APIRouter(dependencies=[Depends(require_api_key)])


class ReadingResponse(BaseModel):
    """Current reading for a location plus its poller status."""
    location: str
    reading: Optional[Reading] = None
    status: PollerStatus


class RefreshResponse(ReadingResponse):
    """Refresh outcome; `fetched` is False when the minimum interval suppressed the call."""
    fetched: bool


class PollerStatusEntry(BaseModel):
    location: str
    status: PollerStatus


class CacheStatsResponse(BaseModel):
    total: int
    valid: int
    expired: int


class ForecastResponse(BaseModel):
    """Upcoming daily values for a location, earliest first."""
    location: str
    days: List[DailyPoint]


class ReportResponse(BaseModel):
    """Weekly report; `warning` is set when a synthetic report replaced a failed fetch."""
    report: WeeklyReport
    warning: Optional[str] = None


def _http_error_for(exc: FetchError) -> HTTPException:
    """Map a data-source failure onto an HTTP status."""
    if exc.kind is FailureKind.CLIENT:
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if exc.kind is FailureKind.RATE_LIMITED:
        headers = None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            headers = {"Retry-After": str(int(exc.retry_after))}
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc), headers=headers)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("/readings/current", response_model=ReadingResponse)
def current_reading(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    engine=Depends(get_engine),
):
    """Return the latest reading, starting a poller for the location if needed."""
    poller = engine.registry.acquire(latitude, longitude)
    reading = poller.current_reading
    if reading is None:
        error = poller.last_error
        if error is not None:
            raise _http_error_for(error)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No reading available yet")
    return ReadingResponse(location=engine.registry.key(latitude, longitude), reading=reading, status=poller.status())


@router.post("/readings/refresh", response_model=RefreshResponse)
def refresh_reading(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    engine=Depends(get_engine),
):
    """Ask an existing poller to fetch now (still subject to the minimum interval)."""
    poller = engine.registry.get(latitude, longitude)
    if poller is None or not poller.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active poller for location")
    fetched = poller.refresh()
    error = poller.last_error
    if fetched and error is not None and poller.current_reading is None:
        raise _http_error_for(error)
    return RefreshResponse(
        location=engine.registry.key(latitude, longitude),
        reading=poller.current_reading,
        status=poller.status(),
        fetched=fetched,
    )


@router.delete("/pollers", status_code=status.HTTP_204_NO_CONTENT)
def dispose_poller(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    engine=Depends(get_engine),
):
    """Stop and forget the poller for a location."""
    if not engine.registry.dispose(latitude, longitude):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No poller for location")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/pollers/status", response_model=List[PollerStatusEntry])
def pollers_status(engine=Depends(get_engine)):
    return [PollerStatusEntry(location=key, status=poller.status()) for key, poller in engine.registry.items()]


@router.get("/reports/weekly", response_model=ReportResponse)
def weekly_report(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    location_label: str | None = None,
    engine=Depends(get_engine),
):
    """Weekly report for a location, served from the report cache when fresh."""
    result = generate_report_with_fallback(
        engine.reports,
        latitude,
        longitude,
        location_label,
        fallback=engine.settings.report_fallback,
    )
    if result.report is None:
        if result.error is not None:
            raise _http_error_for(result.error)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No historical data for location")
    warning = f"Synthetic data served: {result.error}" if result.error is not None else None
    return ReportResponse(report=result.report, warning=warning)


@router.get("/forecast/daily", response_model=ForecastResponse)
def daily_forecast(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    engine=Depends(get_engine),
):
    try:
        days = engine.data_source.fetch_forecast(latitude, longitude)
    except FetchError as exc:
        logger.warning("Forecast fetch failed", extra={"kind": exc.kind.value, "error": str(exc)})
        raise _http_error_for(exc)
    return ForecastResponse(location=engine.registry.key(latitude, longitude), days=days)


@router.get("/stations/search", response_model=List[StationSummary])
def search_stations(keyword: str = Query(..., min_length=1), engine=Depends(get_engine)):
    try:
        return engine.data_source.search(keyword)
    except FetchError as exc:
        logger.warning("Station search failed", extra={"keyword": keyword, "kind": exc.kind.value})
        raise _http_error_for(exc)


@router.get("/cache/stats", response_model=CacheStatsResponse)
def cache_stats(engine=Depends(get_engine)):
    stats = engine.cache.stats()
    return CacheStatsResponse(total=stats.total, valid=stats.valid, expired=stats.expired)
