"""Rate-limited polling of the current reading for a single location.

A Poller owns one recurring timer and at most one outstanding fetch. Each
fetch cycle is gated by a minimum interval, retried with exponential backoff
on retryable failures, and only reported to subscribers when the reading
changed materially.

State machine::

    idle -> fetching -> success -> idle
                     -> failure -> backoff -> fetching
                                -> gave_up   (next regular tick starts a new episode)
                                -> blocked   (non-retryable; ticks skipped until restart)
"""

from __future__ import annotations

import threading
from enum import Enum
from functools import partial
from typing import Callable, List, Optional

from aerosync import config
from aerosync.data_sources.base import AirQualityDataSource
from aerosync.domain import (
    DEFAULT_COORDINATE_PRECISION,
    ConnectionState,
    Coordinates,
    PollerPhase,
    PollerState,
    PollerStatus,
    Reading,
)
from aerosync.errors import FetchError, PollerNotStartedError, RateLimitedError, TransientFetchError
from aerosync.scheduling import Scheduler, ThreadingScheduler, TimerHandle, monotonic_clock
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="poller")

UpdateCallback = Callable[[Reading], None]
ErrorCallback = Callable[[FetchError], None]
ConnectionCallback = Callable[[ConnectionState], None]


class _Trigger(str, Enum):
    START = "start"
    TICK = "tick"
    REFRESH = "refresh"
    RETRY = "retry"


def is_material_change(previous: Optional[Reading], current: Reading) -> bool:
    """True when subscribers should hear about `current`."""
    if previous is None:
        return True
    return (
        previous.value != current.value
        or previous.source_name != current.source_name
        or previous.location_label != current.location_label
        or previous.observed_at != current.observed_at
    )


class Subscription:
    """Handle returned by `Poller.subscribe`; `unsubscribe()` may be called any number of times."""

    def __init__(
        self,
        poller: "Poller",
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_connection_change: Optional[ConnectionCallback] = None,
    ) -> None:
        self._poller = poller
        self.on_update = on_update
        self.on_error = on_error
        self.on_connection_change = on_connection_change
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving callbacks."""
        if not self.active:
            return
        self.active = False
        self._poller._remove_subscription(self)


class Poller:
    """Keeps the current reading for one location fresh."""

    def __init__(
        self,
        data_source: AirQualityDataSource,
        *,
        poll_interval_seconds: float = 300.0,
        min_fetch_interval_seconds: float = 60.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 30.0,
        precision: int = DEFAULT_COORDINATE_PRECISION,
        clock: Callable[[], float] = monotonic_clock,
        scheduler: Scheduler | None = None,
    ) -> None:
        """Validate the timing configuration and prepare an idle poller."""
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be greater than zero")
        if min_fetch_interval_seconds < 0:
            raise ValueError("min_fetch_interval_seconds must not be negative")
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if retry_delay_seconds <= 0:
            raise ValueError("retry_delay_seconds must be greater than zero")

        self.data_source = data_source
        self.poll_interval_seconds = poll_interval_seconds
        self.min_fetch_interval_seconds = min_fetch_interval_seconds
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.precision = precision
        self._clock = clock
        self._scheduler = scheduler or ThreadingScheduler()

        self._lock = threading.RLock()
        self._subscriptions: List[Subscription] = []
        self._location: Coordinates | None = None
        self._active = False
        self._started = False
        self._epoch = 0
        self._fetching = False
        self._deferred_start_epoch: int | None = None
        self._poll_handle: TimerHandle | None = None
        self._retry_handle: TimerHandle | None = None

        self._last_reading: Reading | None = None
        self._retry_count = 0
        self._retry_delays: List[float] = []
        self._last_fetch_at: float | None = None
        self._last_error: FetchError | None = None
        self._connection = ConnectionState.DISCONNECTED
        self._phase = PollerPhase.IDLE

    @classmethod
    def from_settings(
        cls,
        data_source: AirQualityDataSource,
        settings: config.Settings | None = None,
        **kwargs,
    ) -> "Poller":
        """Build a poller using the timing values from Settings."""
        settings = settings or config.settings
        return cls(
            data_source,
            poll_interval_seconds=settings.poll_interval_seconds,
            min_fetch_interval_seconds=settings.min_fetch_interval_seconds,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            precision=settings.coordinate_precision,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(
        self,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_connection_change: Optional[ConnectionCallback] = None,
    ) -> Subscription:
        """Register callbacks; they are invoked synchronously from fetch completion."""
        subscription = Subscription(self, on_update, on_error, on_connection_change)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def start(self, latitude: float, longitude: float) -> None:
        """Fetch immediately, then keep polling every `poll_interval_seconds`.

        No-op when already polling the same rounded location.
        """
        location = Coordinates(latitude=latitude, longitude=longitude).rounded(self.precision)
        with self._lock:
            if self._active and self._location == location:
                logger.debug("Poller already active for location", extra={"location": location.key(self.precision)})
                return
            restarting = self._active
        if restarting:
            self.stop()

        with self._lock:
            if self._location is not None and self._location != location:
                self._last_reading = None
            self._location = location
            self._active = True
            self._started = True
            self._epoch += 1
            epoch = self._epoch
            self._reset_episode_locked()
            self._last_error = None
            self._phase = PollerPhase.IDLE
            connection_changed = self._set_connection_locked(ConnectionState.CONNECTING)
            subscriptions = list(self._subscriptions)

        logger.info(
            "Starting poller",
            extra={"location": location.key(self.precision), "poll_interval_seconds": self.poll_interval_seconds},
        )
        if connection_changed:
            self._notify(subscriptions, "on_connection_change", ConnectionState.CONNECTING)

        self._fetch_cycle(epoch, _Trigger.START)

        with self._lock:
            if self._active and self._epoch == epoch and self._poll_handle is None:
                self._poll_handle = self._scheduler.call_every(
                    self.poll_interval_seconds, partial(self._on_tick, epoch)
                )

    def stop(self) -> None:
        """Cancel the recurring timer and any pending retry; idempotent."""
        with self._lock:
            if not self._active:
                return
            self._active = False
            self._epoch += 1
            self._cancel_poll_locked()
            self._cancel_retry_locked()
            self._phase = PollerPhase.IDLE
            connection_changed = self._set_connection_locked(ConnectionState.DISCONNECTED)
            subscriptions = list(self._subscriptions)
            location = self._location

        logger.info("Stopped poller", extra={"location": location.key(self.precision) if location else None})
        if connection_changed:
            self._notify(subscriptions, "on_connection_change", ConnectionState.DISCONNECTED)

    def refresh(self) -> bool:
        """Fetch now, still honouring the minimum interval. Returns True if a fetch ran."""
        with self._lock:
            if not self._started:
                raise PollerNotStartedError("refresh() called on a poller that was never started")
            if not self._active:
                logger.debug("Ignoring refresh on a stopped poller")
                return False
            epoch = self._epoch
        return self._fetch_cycle(epoch, _Trigger.REFRESH)

    def update_location(self, latitude: float, longitude: float) -> None:
        """Move the poller; an active poller is restarted at the new location."""
        with self._lock:
            active = self._active
        if active:
            self.stop()
            self.start(latitude, longitude)
            return
        location = Coordinates(latitude=latitude, longitude=longitude).rounded(self.precision)
        with self._lock:
            if self._location != location:
                self._last_reading = None
            self._location = location
            if self._phase is PollerPhase.BLOCKED:
                self._phase = PollerPhase.IDLE

    def dispose(self) -> None:
        """Stop polling and drop every subscription."""
        self.stop()
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.active = False

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def location(self) -> Coordinates | None:
        with self._lock:
            return self._location

    @property
    def current_reading(self) -> Reading | None:
        """Last known-good reading; kept through failures."""
        with self._lock:
            return self._last_reading

    @property
    def last_error(self) -> FetchError | None:
        """Failure from the most recent fetch; cleared by the next success."""
        with self._lock:
            return self._last_error

    @property
    def state(self) -> PollerState:
        """Point-in-time snapshot of the poller's state."""
        with self._lock:
            return PollerState(
                is_active=self._active,
                last_reading=self._last_reading,
                retry_count=self._retry_count,
                last_fetch_at=self._last_fetch_at,
                connection=self._connection,
                phase=self._phase,
                last_error=str(self._last_error) if self._last_error else None,
                retry_delays=list(self._retry_delays),
                location=self._location,
            )

    def status(self) -> PollerStatus:
        """Compact status for display."""
        with self._lock:
            return PollerStatus(
                is_polling=self._active,
                last_update=self._last_reading.observed_at if self._last_reading else None,
                retry_count=self._retry_count,
                connection=self._connection,
                phase=self._phase,
            )

    # ------------------------------------------------------------------
    # Fetch cycle
    # ------------------------------------------------------------------

    def _on_tick(self, epoch: int) -> None:
        self._fetch_cycle(epoch, _Trigger.TICK)

    def _on_retry(self, epoch: int) -> None:
        self._fetch_cycle(epoch, _Trigger.RETRY)

    def _fetch_cycle(self, epoch: int, trigger: _Trigger) -> bool:
        """Run one gated fetch; returns True if the data source was called."""
        with self._lock:
            if not self._active or epoch != self._epoch:
                return False
            if self._fetching:
                if trigger is _Trigger.START:
                    # a fetch from before the restart is still out; run this one when it lands
                    self._deferred_start_epoch = epoch
                    logger.debug("Previous fetch still in flight; deferring first fetch")
                else:
                    logger.debug("Fetch already in flight; ignoring", extra={"trigger": trigger.value})
                return False
            if trigger is _Trigger.TICK and self._phase in (PollerPhase.BLOCKED, PollerPhase.BACKOFF):
                logger.debug("Skipping tick", extra={"phase": self._phase.value})
                return False

            now = self._clock()
            if trigger is not _Trigger.RETRY and self._last_fetch_at is not None:
                elapsed = now - self._last_fetch_at
                if elapsed < self.min_fetch_interval_seconds:
                    logger.debug(
                        "Rate limiting: skipping fetch",
                        extra={"trigger": trigger.value, "remaining_seconds": round(self.min_fetch_interval_seconds - elapsed, 1)},
                    )
                    return False

            if trigger is _Trigger.RETRY:
                self._retry_handle = None
            else:
                self._cancel_retry_locked()
                if self._phase is PollerPhase.GAVE_UP:
                    self._reset_episode_locked()

            self._fetching = True
            self._last_fetch_at = now
            self._phase = PollerPhase.FETCHING
            location = self._location

        logger.debug("Fetching current reading", extra={"trigger": trigger.value, "location": location.key(self.precision)})
        try:
            try:
                reading = self.data_source.fetch_current(location.latitude, location.longitude)
            except FetchError as exc:
                self._complete_failure(epoch, exc)
            except Exception as exc:
                logger.exception("Unexpected data source error")
                error = TransientFetchError(f"Unexpected data source error: {exc}")
                error.__cause__ = exc
                self._complete_failure(epoch, error)
            else:
                self._complete_success(epoch, reading)
        finally:
            with self._lock:
                self._fetching = False
                deferred = self._deferred_start_epoch
                self._deferred_start_epoch = None
                if deferred is not None and (deferred != self._epoch or not self._active):
                    deferred = None
        if deferred is not None:
            self._fetch_cycle(deferred, _Trigger.START)
        return True

    def _complete_success(self, epoch: int, reading: Reading) -> None:
        with self._lock:
            if not self._active or epoch != self._epoch:
                logger.info("Discarding late response for a stopped poller")
                return
            changed = is_material_change(self._last_reading, reading)
            if changed:
                self._last_reading = reading
            self._reset_episode_locked()
            self._last_error = None
            self._cancel_retry_locked()
            self._phase = PollerPhase.IDLE
            connection_changed = self._set_connection_locked(ConnectionState.CONNECTED)
            subscriptions = list(self._subscriptions)

        if changed:
            logger.info("Reading updated", extra={"value": reading.value, "source": reading.source_name})
            self._notify(subscriptions, "on_update", reading)
        else:
            logger.debug("Reading unchanged, skipping update")
        if connection_changed:
            self._notify(subscriptions, "on_connection_change", ConnectionState.CONNECTED)

    def _complete_failure(self, epoch: int, error: FetchError) -> None:
        with self._lock:
            if not self._active or epoch != self._epoch:
                logger.info("Discarding late failure for a stopped poller")
                return
            self._last_error = error
            self._cancel_retry_locked()
            if not error.retryable:
                self._phase = PollerPhase.BLOCKED
                new_state = ConnectionState.DISCONNECTED
                logger.error(
                    "Non-retryable fetch failure; polling paused until the location changes",
                    extra={"error": str(error), "kind": error.kind.value},
                )
            elif self._retry_count < self.max_retries:
                self._retry_count += 1
                delay = self._backoff_delay(error)
                self._retry_delays.append(delay)
                self._retry_handle = self._scheduler.call_later(delay, partial(self._on_retry, epoch))
                self._phase = PollerPhase.BACKOFF
                new_state = ConnectionState.CONNECTING
                logger.warning(
                    "Fetch failed; retrying",
                    extra={"error": str(error), "attempt": self._retry_count, "max_retries": self.max_retries, "delay_seconds": delay},
                )
            else:
                self._phase = PollerPhase.GAVE_UP
                new_state = ConnectionState.DISCONNECTED
                logger.warning("Max retries reached, stopping automatic retries", extra={"error": str(error)})
            connection_changed = self._set_connection_locked(new_state)
            subscriptions = list(self._subscriptions)

        self._notify(subscriptions, "on_error", error)
        if connection_changed:
            self._notify(subscriptions, "on_connection_change", new_state)

    def _backoff_delay(self, error: FetchError) -> float:
        """Delay before the next retry; honours a provider retry-after hint."""
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return error.retry_after
        return self.retry_delay_seconds * 2 ** (self._retry_count - 1)

    # ------------------------------------------------------------------
    # Helpers (callers hold the lock)
    # ------------------------------------------------------------------

    def _reset_episode_locked(self) -> None:
        self._retry_count = 0
        self._retry_delays = []

    def _set_connection_locked(self, state: ConnectionState) -> bool:
        if self._connection is state:
            return False
        self._connection = state
        return True

    def _cancel_poll_locked(self) -> None:
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None

    def _cancel_retry_locked(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _notify(self, subscriptions: List[Subscription], attr: str, payload) -> None:
        for subscription in subscriptions:
            callback = getattr(subscription, attr)
            if callback is None or not subscription.active:
                continue
            try:
                callback(payload)
            except Exception:
                logger.exception("Subscriber callback failed", extra={"callback": attr})
