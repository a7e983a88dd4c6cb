"""
Live role views.

Each view owns the store subscriptions for one role and keeps a state model
up to date from the snapshots they push. The state models form a tagged union
on ``kind`` so a client can tell them apart without knowing the user's role.

Views are cancellable: closing one cancels every subscription it holds and
ends all of its watchers.
"""

import asyncio
import logging
from typing import Annotated, AsyncIterator, Callable, Dict, List, Literal, Optional, Union, assert_never

from pydantic import BaseModel, Field

from ubus.errors import MissingIndexError, UBusError
from ubus.mapping import MapMarker
from ubus.models import BUSES, ROUTES, USERS, Bus, Location, Role, Route, User
from ubus.publisher import LocationPublisher
from ubus.scope import ResourceScope, Subscription
from ubus.store import DirectoryStore, Snapshot

logger = logging.getLogger(__name__)

NO_ROUTE = "You do not have a bus route assigned to your account."
NO_BUS_FOR_ROUTE = "No bus is currently assigned to your route."
BUS_LIVE = "Bus is LIVE!"
TRIP_NOT_STARTED = "Bus trip has not started."
STUDENT_LOAD_FAILED = "Could not load bus data. Please try again later."
NOT_ASSIGNED = "You are not assigned to any bus."
DRIVER_LOAD_FAILED = "Could not load your assignment."
TRIP_LIVE = "TRIP IS LIVE"
TRIP_INACTIVE = "TRIP INACTIVE"
INDEX_REQUIRED = "Error: This query requires an index. Please create one."
MESSAGE_TTL_SECONDS = 3.0


class StudentViewState(BaseModel):
    kind: Literal["student"] = "student"
    status: Literal["loading", "no_route", "no_bus", "inactive", "live"] = "loading"
    message: Optional[str] = None
    route_number: Optional[str] = None
    bus: Optional[Bus] = None
    map: Optional[MapMarker] = None
    error: Optional[str] = None


class DriverViewState(BaseModel):
    kind: Literal["driver"] = "driver"
    status: Literal["loading", "unassigned", "inactive", "live"] = "loading"
    message: Optional[str] = None
    bus: Optional[Bus] = None
    trip: Literal["idle", "publishing"] = "idle"
    status_line: Optional[str] = None
    my_location: Optional[Location] = None
    map: Optional[MapMarker] = None
    error: Optional[str] = None


class AdminViewState(BaseModel):
    kind: Literal["admin"] = "admin"
    routes: List[Route] = []
    buses: List[Bus] = []
    drivers: List[User] = []
    loaded: List[str] = []
    message: Optional[str] = None
    error: Optional[str] = None


ViewState = Annotated[
    Union[StudentViewState, DriverViewState, AdminViewState],
    Field(discriminator="kind"),
]


def first_match(docs: Snapshot, what: str) -> Optional[Bus]:
    """Pick the bus a single-bus view shows. With several matches the first one wins."""
    if not docs:
        return None
    if len(docs) > 1:
        logger.warning("%d buses match %s; showing %s", len(docs), what, docs[0]["id"])
    return Bus.from_doc(docs[0])


class LiveView:
    role: Role

    def __init__(self, store: DirectoryStore, user: User):
        self.store = store
        self.user = user
        self.scope = ResourceScope(f"{self.role.value}-view {user.uid}")
        self.state = self.initial_state()
        self.closed = False
        self._watchers: List[asyncio.Queue] = []

    def initial_state(self):
        raise NotImplementedError

    def open(self) -> "LiveView":
        self._subscribe()
        return self

    def _subscribe(self) -> None:
        raise NotImplementedError

    def subscribe(self, collection: str, filters: Optional[Dict], on_change: Callable[[Snapshot], None],
                  on_error: Callable[[UBusError], None]) -> Subscription:
        return self.scope.add(self.store.subscribe(collection, filters, on_change, on_error))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.scope.close()
        for queue in list(self._watchers):
            queue.put_nowait(None)

    cancel = close

    def _update(self, **changes) -> None:
        self.state = self.state.model_copy(update=changes)
        for queue in list(self._watchers):
            queue.put_nowait(self.state)

    async def watch(self) -> AsyncIterator[BaseModel]:
        """Yield the current state, then every new state until the view is closed."""
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.append(queue)
        try:
            yield self.state
            while not self.closed:
                state = await queue.get()
                if state is None:
                    return
                yield state
        finally:
            self._watchers.remove(queue)


class StudentView(LiveView):
    role = Role.STUDENT

    def initial_state(self) -> StudentViewState:
        return StudentViewState(route_number=self.user.route_number)

    def _subscribe(self) -> None:
        if not self.user.route_number:
            self._update(status="no_route", message=NO_ROUTE)
            return
        self.subscribe(BUSES, {"routeNumber": self.user.route_number}, self._on_buses, self._on_error)

    def _on_buses(self, docs: Snapshot) -> None:
        bus = first_match(docs, f"route {self.user.route_number}")
        if bus is None:
            self._update(status="no_bus", message=NO_BUS_FOR_ROUTE, bus=None, map=None, error=None)
        elif bus.is_trip_active:
            self._update(status="live", message=BUS_LIVE, bus=bus,
                         map=MapMarker.for_location(bus.location), error=None)
        else:
            self._update(status="inactive", message=TRIP_NOT_STARTED, bus=bus, map=None, error=None)

    def _on_error(self, exc: UBusError) -> None:
        logger.error("Student view for %s lost its subscription: %s", self.user.uid, exc)
        self._update(error=INDEX_REQUIRED if isinstance(exc, MissingIndexError) else STUDENT_LOAD_FAILED)


class DriverView(LiveView):
    role = Role.DRIVER

    def __init__(self, store: DirectoryStore, user: User, publisher: LocationPublisher):
        self.publisher = publisher
        super().__init__(store, user)

    def initial_state(self) -> DriverViewState:
        return DriverViewState()

    @property
    def bus_id(self) -> Optional[str]:
        return self.state.bus.id if self.state.bus is not None else None

    @property
    def last_known_location(self) -> Optional[Location]:
        return self.state.my_location

    def _subscribe(self) -> None:
        self.subscribe(BUSES, {"driverId": self.user.uid}, self._on_buses, self._on_error)
        self.scope.add(self.publisher.observe(self._on_publisher))
        self._on_publisher(self.publisher)

    def _on_buses(self, docs: Snapshot) -> None:
        bus = first_match(docs, f"driver {self.user.uid}")
        if bus is None:
            self._update(status="unassigned", message=NOT_ASSIGNED, bus=None, map=None, error=self.publisher.error)
            return
        my_location = bus.location or self.state.my_location
        self._update(
            status="live" if bus.is_trip_active else "inactive",
            message=TRIP_LIVE if bus.is_trip_active else TRIP_INACTIVE,
            bus=bus,
            my_location=my_location,
            map=self._map_for(bus, my_location),
            error=self.publisher.error,
        )

    def _on_publisher(self, publisher: LocationPublisher) -> None:
        my_location = publisher.last_known_location or self.state.my_location
        self._update(
            trip=publisher.state.value,
            status_line=publisher.status,
            error=publisher.error,
            my_location=my_location,
            map=self._map_for(self.state.bus, my_location),
        )

    @staticmethod
    def _map_for(bus: Optional[Bus], location: Optional[Location]) -> Optional[MapMarker]:
        if bus is None or not bus.is_trip_active:
            return None
        return MapMarker.for_location(location)

    def _on_error(self, exc: UBusError) -> None:
        logger.error("Driver view for %s lost its subscription: %s", self.user.uid, exc)
        self._update(error=INDEX_REQUIRED if isinstance(exc, MissingIndexError) else DRIVER_LOAD_FAILED)


class AdminView(LiveView):
    role = Role.ADMIN

    def __init__(self, store: DirectoryStore, user: User):
        super().__init__(store, user)
        self._flash_handle: Optional[asyncio.TimerHandle] = None

    def initial_state(self) -> AdminViewState:
        return AdminViewState()

    def _subscribe(self) -> None:
        self.subscribe(ROUTES, None, self._on_routes, self._error_handler("routes"))
        self.subscribe(BUSES, None, self._on_buses, self._error_handler("buses"))
        self.subscribe(USERS, {"role": Role.DRIVER.value}, self._on_drivers, self._error_handler("drivers"))

    def _loaded(self, name: str) -> List[str]:
        return self.state.loaded if name in self.state.loaded else self.state.loaded + [name]

    def _on_routes(self, docs: Snapshot) -> None:
        self._update(routes=[Route.from_doc(doc) for doc in docs], loaded=self._loaded("routes"))

    def _on_buses(self, docs: Snapshot) -> None:
        self._update(buses=[Bus.from_doc(doc) for doc in docs], loaded=self._loaded("buses"))

    def _on_drivers(self, docs: Snapshot) -> None:
        self._update(drivers=[User.from_doc(doc) for doc in docs], loaded=self._loaded("drivers"))

    def _error_handler(self, name: str) -> Callable[[UBusError], None]:
        def _on_error(exc: UBusError) -> None:
            logger.error("Admin view failed to fetch %s: %s", name, exc)
            self._update(error=INDEX_REQUIRED if isinstance(exc, MissingIndexError) else f"Failed to fetch {name}")
        return _on_error

    def flash(self, message: str, ttl: float = MESSAGE_TTL_SECONDS) -> None:
        """Show a short-lived success message."""
        if self.closed:
            return
        # One pending clear at a time; a newer message restarts the countdown
        self._drop_flash_handle()
        self._update(message=message)
        self._flash_handle = self.scope.add(asyncio.get_running_loop().call_later(ttl, self._clear_message))

    def _drop_flash_handle(self) -> None:
        if self._flash_handle is not None:
            self._flash_handle.cancel()
            self.scope.discard(self._flash_handle)
            self._flash_handle = None

    def _clear_message(self) -> None:
        self._drop_flash_handle()
        self._update(message=None)


LiveViewType = Union[StudentView, DriverView, AdminView]


def open_view(store: DirectoryStore, user: User, publisher: Optional[LocationPublisher] = None) -> LiveViewType:
    """Open the live view for ``user``'s role."""
    role = Role(user.role)
    if role is Role.STUDENT:
        view = StudentView(store, user)
    elif role is Role.DRIVER:
        if publisher is None:
            raise ValueError("A driver view needs the session's location publisher")
        view = DriverView(store, user, publisher)
    elif role is Role.ADMIN:
        view = AdminView(store, user)
    else:
        assert_never(role)
    view.open()
    return view
