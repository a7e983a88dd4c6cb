import asyncio

import pytest

from ubus.models import BUSES, ROUTES, Role, User
from ubus.publisher import LocationPublisher
from ubus.store import DirectoryStore
from ubus.views import (
    BUS_LIVE,
    INDEX_REQUIRED,
    NO_BUS_FOR_ROUTE,
    NO_ROUTE,
    NOT_ASSIGNED,
    TRIP_INACTIVE,
    TRIP_NOT_STARTED,
    AdminView,
    DriverView,
    StudentView,
    open_view,
)

from .conftest import add_bus, add_user


def student(route_number="R10"):
    return User(uid="s1", email="s1@college.edu", role=Role.STUDENT, name="S1", collegeId="S1",
                routeNumber=route_number)


def driver():
    return User(uid="d1", email="d1@college.edu", role=Role.DRIVER, name="D1", collegeId="D1")


def admin():
    return User(uid="a1", email="a1@college.edu", role=Role.ADMIN, name="A1", collegeId="ADMIN")


def driver_view(store, geolocation):
    holder = {}
    publisher = LocationPublisher(store, geolocation, bus_lookup=lambda: holder["view"].bus_id, interval=0.05)
    holder["view"] = open_view(store, driver(), publisher)
    return holder["view"], publisher


async def test_student_without_bus_on_route(memory_store):
    view = open_view(memory_store, student())

    assert isinstance(view, StudentView)
    assert view.state.status == "no_bus"
    assert view.state.message == NO_BUS_FOR_ROUTE
    assert view.state.map is None


async def test_student_without_route(memory_store):
    view = open_view(memory_store, student(route_number=None))

    assert view.state.status == "no_route"
    assert view.state.message == NO_ROUTE
    assert memory_store.listener_count() == 0


async def test_student_sees_trip_start_without_polling(memory_store, geolocation):
    bus_id = await add_bus(memory_store, routeNumber="R10", driverId="d1")
    student_view = open_view(memory_store, student())
    assert student_view.state.status == "inactive"
    assert student_view.state.message == TRIP_NOT_STARTED

    driver_view_, publisher = driver_view(memory_store, geolocation)
    await publisher.start()
    publisher.close()

    state = student_view.state
    assert state.status == "live"
    assert state.message == BUS_LIVE
    assert state.bus.id == bus_id
    assert state.map.center == (30.7, 76.7)
    assert driver_view_.state.status == "live"


async def test_first_matching_bus_wins(memory_store, caplog):
    first = await add_bus(memory_store, "A", routeNumber="R10")
    await add_bus(memory_store, "B", routeNumber="R10")

    view = open_view(memory_store, student())

    assert view.state.bus.id == first
    assert "2 buses match route R10" in caplog.text


async def test_driver_view_follows_assignment(memory_store, geolocation):
    view, publisher = driver_view(memory_store, geolocation)
    assert isinstance(view, DriverView)
    assert view.state.status == "unassigned"
    assert view.state.message == NOT_ASSIGNED
    assert view.bus_id is None

    bus_id = await add_bus(memory_store, driverId="d1")

    assert view.bus_id == bus_id
    assert view.state.status == "inactive"
    assert view.state.message == TRIP_INACTIVE
    assert view.state.map is None


async def test_driver_view_tracks_publisher_status(memory_store, geolocation):
    await add_bus(memory_store, driverId="d1")
    view, publisher = driver_view(memory_store, geolocation)

    await publisher.start()
    assert view.state.trip == "publishing"
    assert view.state.my_location.lat == 30.7
    assert view.state.map is not None

    await publisher.stop()
    assert view.state.trip == "idle"
    assert view.state.status_line == "Trip stopped."
    assert view.state.status == "inactive"
    assert view.state.map is None


def test_driver_view_needs_a_publisher(memory_store):
    with pytest.raises(ValueError):
        open_view(memory_store, driver())


async def test_admin_view_lists_everything(memory_store):
    await memory_store.create(ROUTES, {"routeNumber": "R10"})
    await add_bus(memory_store, "A")
    await add_user(memory_store, "d1", "driver")
    await add_user(memory_store, "s1", "student", route_number="R10")

    view = open_view(memory_store, admin())

    assert isinstance(view, AdminView)
    assert [route.route_number for route in view.state.routes] == ["R10"]
    assert [bus.bus_number for bus in view.state.buses] == ["A"]
    assert [user.uid for user in view.state.drivers] == ["d1"]
    assert sorted(view.state.loaded) == ["buses", "drivers", "routes"]


async def test_admin_missing_index_shows_banner_but_keeps_other_lists():
    store = DirectoryStore(indexes={BUSES: ("routeNumber", "driverId")})
    await store.create(ROUTES, {"routeNumber": "R10"})

    view = open_view(store, admin())

    assert view.state.error == INDEX_REQUIRED
    assert sorted(view.state.loaded) == ["buses", "routes"]
    assert len(view.state.routes) == 1


async def test_admin_flash_message_expires(memory_store):
    view = open_view(memory_store, admin())

    view.flash("Route added!", ttl=0.05)
    assert view.state.message == "Route added!"

    await asyncio.sleep(0.1)
    assert view.state.message is None


async def test_closing_an_admin_view_cancels_pending_flash(memory_store):
    view = open_view(memory_store, admin())
    view.flash("Bus added!", ttl=0.05)

    view.close()
    await asyncio.sleep(0.1)

    assert view.state.message == "Bus added!"
    assert memory_store.listener_count() == 0


async def test_watch_yields_updates_until_closed(memory_store):
    view = open_view(memory_store, student())
    seen = []

    async def consume():
        async for state in view.watch():
            seen.append(state.status)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await add_bus(memory_store, routeNumber="R10")
    await asyncio.sleep(0)
    view.close()
    await asyncio.wait_for(consumer, timeout=1)

    assert seen == ["no_bus", "inactive"]


async def test_expired_flash_messages_release_their_timers(memory_store):
    view = open_view(memory_store, admin())
    subscriptions = len(view.scope)

    for n in range(50):
        view.flash(f"Bus {n} added!", ttl=0)
    await asyncio.sleep(0.05)

    assert view.state.message is None
    assert len(view.scope) == subscriptions


async def test_newer_flash_restarts_the_countdown(memory_store):
    view = open_view(memory_store, admin())

    view.flash("Route added!", ttl=0.05)
    await asyncio.sleep(0.03)
    view.flash("Bus added!", ttl=0.1)
    await asyncio.sleep(0.05)

    assert view.state.message == "Bus added!"
    await asyncio.sleep(0.1)
    assert view.state.message is None
