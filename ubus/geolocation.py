"""
Geolocation sources for the location publisher.

``DeviceGeolocation`` is fed by the driver's device: the device pushes fixes
(over HTTP or the tracking WebSocket) and the publisher asks for a position
with the usual options (high accuracy, bounded wait, no cached fixes).

``SimulatedGeolocation`` random-walks around the last known location and is used
when ``UBUS_SIMULATE_LOCATION`` is set, e.g. when testing from a desktop.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from pydantic import BaseModel

from ubus.errors import GeolocationError
from ubus.models import Location
from ubus.scope import Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionOptions:
    high_accuracy: bool = True
    timeout_ms: int = 10000
    force_fresh: bool = True


class Position(BaseModel):
    lat: float
    lng: float
    accuracy: Optional[float] = None


class GeolocationSource(Protocol):
    async def get_current_position(self, options: PositionOptions) -> Position: ...


class DeviceGeolocation:
    def __init__(self):
        self._fix: Optional[Position] = None
        self._seq = 0
        self._denied: Optional[str] = None
        self._changed = asyncio.Event()
        self._request_listeners: List[Callable[[PositionOptions], None]] = []

    @property
    def last_fix(self) -> Optional[Position]:
        return self._fix

    def report(self, lat: float, lng: float, accuracy: Optional[float] = None) -> Position:
        self._fix = Position(lat=lat, lng=lng, accuracy=accuracy)
        self._seq += 1
        self._denied = None
        self._wake()
        return self._fix

    def deny(self, message: str = "User denied Geolocation") -> None:
        self._denied = message
        self._wake()

    def on_request(self, callback: Callable[[PositionOptions], None]) -> Subscription:
        """Be told whenever a position is requested, so the device can be asked for a fix."""
        self._request_listeners.append(callback)

        def _remove():
            if callback in self._request_listeners:
                self._request_listeners.remove(callback)

        return Subscription(_remove, name="position-requests")

    async def get_current_position(self, options: PositionOptions) -> Position:
        if self._denied:
            raise GeolocationError(GeolocationError.PERMISSION_DENIED, self._denied)
        if not options.force_fresh and self._fix is not None:
            return self._fix

        seen = self._seq
        for listener in list(self._request_listeners):
            try:
                listener(options)
            except Exception:
                logger.exception("Position request listener failed")

        try:
            return await asyncio.wait_for(self._next_fix(seen), timeout=options.timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise GeolocationError(GeolocationError.TIMEOUT, "Timeout expired")

    async def _next_fix(self, seen: int) -> Position:
        while True:
            if self._denied:
                raise GeolocationError(GeolocationError.PERMISSION_DENIED, self._denied)
            if self._seq > seen and self._fix is not None:
                return self._fix
            await self._changed.wait()

    def _wake(self):
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()


class SimulatedGeolocation:
    """Random walk around the last known location, or the default center when there is none."""

    STEP = 0.001

    def __init__(self, center_lat: float, center_lng: float,
                 last_known: Optional[Callable[[], Optional[Location]]] = None,
                 rng: Optional[random.Random] = None):
        self.center = (center_lat, center_lng)
        self._last_known = last_known
        self._rng = rng or random.Random()

    async def get_current_position(self, options: PositionOptions) -> Position:
        known = self._last_known() if self._last_known is not None else None
        lat, lng = (known.lat, known.lng) if known is not None else self.center
        return Position(
            lat=lat + (self._rng.random() - 0.5) * self.STEP,
            lng=lng + (self._rng.random() - 0.5) * self.STEP,
        )
