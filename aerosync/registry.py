"""One poller per rounded location, shared by every consumer in the process."""
from __future__ import annotations

import threading
from typing import Callable, Dict, List, Tuple

from aerosync.domain import DEFAULT_COORDINATE_PRECISION, Coordinates
from aerosync.poller import Poller
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="registry")


class PollerRegistry:
    """Creates pollers lazily through `factory` and disposes of them on request."""

    def __init__(self, factory: Callable[[], Poller], *, precision: int = DEFAULT_COORDINATE_PRECISION) -> None:
        self._factory = factory
        self._precision = precision
        self._pollers: Dict[str, Poller] = {}
        self._lock = threading.Lock()

    def key(self, latitude: float, longitude: float) -> str:
        return Coordinates(latitude=latitude, longitude=longitude).key(self._precision)

    def get(self, latitude: float, longitude: float) -> Poller | None:
        with self._lock:
            return self._pollers.get(self.key(latitude, longitude))

    def acquire(self, latitude: float, longitude: float) -> Poller:
        """Return the poller for a location, creating and starting it if needed."""
        key = self.key(latitude, longitude)
        with self._lock:
            poller = self._pollers.get(key)
            created = poller is None
            if created:
                poller = self._factory()
                self._pollers[key] = poller
        if created:
            logger.info("Created poller", extra={"location": key})
        if not poller.is_active:
            poller.start(latitude, longitude)
        return poller

    def dispose(self, latitude: float, longitude: float) -> bool:
        """Stop and forget the poller for a location; False if there was none."""
        key = self.key(latitude, longitude)
        with self._lock:
            poller = self._pollers.pop(key, None)
        if poller is None:
            return False
        poller.dispose()
        logger.info("Disposed poller", extra={"location": key})
        return True

    def dispose_all(self) -> int:
        with self._lock:
            pollers, self._pollers = list(self._pollers.values()), {}
        for poller in pollers:
            poller.dispose()
        if pollers:
            logger.info("Disposed all pollers", extra={"count": len(pollers)})
        return len(pollers)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._pollers)

    def items(self) -> List[Tuple[str, Poller]]:
        with self._lock:
            return list(self._pollers.items())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._pollers

    def __len__(self) -> int:
        with self._lock:
            return len(self._pollers)
