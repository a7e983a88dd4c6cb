"""
Driver-side location publisher.

Two states, IDLE and PUBLISHING. Starting a trip publishes one location right
away, marks the bus as trip-active and arms a wall-clock periodic timer; every
tick samples the geolocation source and writes ``{location, isTripActive}`` to
the bus the trip was started on. Ticks do not wait for the previous tick's
write, so slow writes may overlap and the last one to land wins.

A failed sample or write only updates the status line. It never stops the
timer or changes state; the next tick tries again from scratch.

Each published location goes through two phases: ``pending_location`` while
the write is in flight, then ``confirmed_location`` once it has landed. A
failed write drops the pending value and keeps the previous confirmed one.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional, Set

from ubus.errors import GeolocationError, NoBusAssignedError, PublisherError, StoreError
from ubus.geolocation import GeolocationSource, PositionOptions
from ubus.models import BUSES, Location
from ubus.scope import Subscription
from ubus.store import DirectoryStore

logger = logging.getLogger(__name__)

LOCATION_UNAVAILABLE = "Could not get location. Please enable location services."
SEND_FAILED = "Failed to send location. Is connection lost?"
TRIP_STATUS_FAILED = "Failed to update trip status."


def epoch_millis() -> int:
    return int(time.time() * 1000)


class PublisherState(str, Enum):
    IDLE = "idle"
    PUBLISHING = "publishing"


class LocationPublisher:
    def __init__(
        self,
        store: DirectoryStore,
        geolocation: GeolocationSource,
        bus_lookup: Callable[[], Optional[str]],
        interval: float = 10.0,
        timeout_ms: int = 10000,
        clock: Callable[[], int] = epoch_millis,
        name: str = "",
    ):
        self.store = store
        self.geolocation = geolocation
        self.interval = interval
        self.options = PositionOptions(high_accuracy=True, timeout_ms=timeout_ms, force_fresh=True)
        self.name = name
        self._bus_lookup = bus_lookup
        self._clock = clock

        self.state = PublisherState.IDLE
        self.trip_bus_id: Optional[str] = None
        self.pending_location: Optional[Location] = None
        self.confirmed_location: Optional[Location] = None
        self.status: Optional[str] = None
        self.error: Optional[str] = None
        self.closed = False

        self._timer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._observers: List[Callable[["LocationPublisher"], None]] = []

    @property
    def is_publishing(self) -> bool:
        return self.state is PublisherState.PUBLISHING

    @property
    def has_timer(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def last_known_location(self) -> Optional[Location]:
        return self.pending_location or self.confirmed_location

    def observe(self, callback: Callable[["LocationPublisher"], None]) -> Subscription:
        self._observers.append(callback)

        def _remove():
            if callback in self._observers:
                self._observers.remove(callback)

        return Subscription(_remove, name=f"publisher-observer {self.name}")

    async def start(self) -> bool:
        """Start the trip. Returns False when a trip is already being published."""
        if self.closed:
            raise PublisherError("Session has ended.")
        if self.is_publishing:
            return False
        bus_id = self._bus_lookup()
        if bus_id is None:
            raise NoBusAssignedError()

        self.state = PublisherState.PUBLISHING
        self.trip_bus_id = bus_id
        self._set_status("Starting trip...")
        logger.info("Trip started on bus %s (%s)", bus_id, self.name)

        first = self._spawn_cycle()
        await asyncio.wait({first})
        if not self.is_publishing:
            # stopped or torn down while the first sample was in flight
            return True

        published = not first.cancelled() and first.exception() is None and first.result()
        if not published:
            try:
                await self.store.update(BUSES, bus_id, {"isTripActive": True})
            except StoreError:
                logger.warning("Could not mark bus %s trip-active", bus_id, exc_info=True)
                self._set_error(TRIP_STATUS_FAILED)

        if self.is_publishing and self._timer is None:
            self._timer = asyncio.create_task(self._run_timer(), name=f"publisher-timer {self.name}")
        return True

    async def stop(self) -> bool:
        """Stop the trip. Returns False when already idle. The last location is left on the bus."""
        if not self.is_publishing:
            return False
        bus_id = self.trip_bus_id
        self.state = PublisherState.IDLE
        self.trip_bus_id = None
        self._release()
        logger.info("Trip stopped on bus %s (%s)", bus_id, self.name)

        try:
            await self.store.update(BUSES, bus_id, {"isTripActive": False})
        except StoreError:
            logger.warning("Could not clear trip-active on bus %s", bus_id, exc_info=True)
            self._set_error(TRIP_STATUS_FAILED)
        else:
            self._set_status("Trip stopped.")
        return True

    def close(self) -> None:
        """Release the timer and any in-flight cycles without writing anything."""
        if self.closed:
            return
        self.closed = True
        self.state = PublisherState.IDLE
        self.trip_bus_id = None
        self._release()
        self._observers.clear()

    cancel = close

    # --- timer and cycles ---
    async def _run_timer(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            now = loop.time()
            while next_tick <= now:
                next_tick += self.interval
            self._spawn_cycle()

    def _spawn_cycle(self) -> asyncio.Task:
        task = asyncio.create_task(self._cycle(), name=f"publisher-cycle {self.name}")
        self._inflight.add(task)
        task.add_done_callback(self._cycle_done)
        return task

    def _cycle_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Publish cycle crashed", exc_info=task.exception())

    async def _cycle(self) -> bool:
        bus_id = self.trip_bus_id
        if bus_id is None:
            return False
        if self._bus_lookup() != bus_id:
            self._set_error("Your bus assignment changed; location not sent.")
            return False

        try:
            position = await self.geolocation.get_current_position(self.options)
        except GeolocationError as exc:
            logger.warning("Geolocation failed (%s): %s", exc.code, exc.message)
            self._set_status(f"Error: {exc.message}")
            self._set_error(LOCATION_UNAVAILABLE)
            return False

        location = Location(lat=position.lat, lng=position.lng, timestamp=self._clock())
        self.pending_location = location
        self._set_status(f"Reported location: {location.lat:.4f}, {location.lng:.4f}")

        try:
            await self.store.update(BUSES, bus_id, {"location": location.to_doc(), "isTripActive": True})
        except StoreError:
            logger.warning("Publishing location to bus %s failed", bus_id, exc_info=True)
            if self.pending_location is location:
                self.pending_location = None
            self._set_error(SEND_FAILED)
            return False

        if self.pending_location is location:
            self.pending_location = None
        if self.confirmed_location is None or location.timestamp >= self.confirmed_location.timestamp:
            self.confirmed_location = location
        self.error = None
        logger.debug("Location published to bus %s: %s", bus_id, location)
        self._notify()
        return True

    def _release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in list(self._inflight):
            task.cancel()
        self._inflight.clear()
        self.pending_location = None

    # --- status ---
    def _set_status(self, message: str) -> None:
        self.status = message
        self._notify()

    def _set_error(self, message: str) -> None:
        self.error = message
        self._notify()

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception:
                logger.exception("Publisher observer failed")
