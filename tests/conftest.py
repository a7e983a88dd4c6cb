import asyncio
from typing import List, Optional, Union

import pytest
from fastapi.testclient import TestClient

from ubus.config import Settings
from ubus.errors import GeolocationError
from ubus.geolocation import Position, PositionOptions
from ubus.identity import IdentityProvider
from ubus.main import create_app
from ubus.models import BUSES, USERS, new_bus_doc
from ubus.session import SessionManager
from ubus.store import DirectoryStore

ADMIN_EMAIL = "admin@college.edu"
ADMIN_PASSWORD = "adminpass"


class FakeGeolocation:
    """Scripted geolocation source: returns queued results, then a fixed position."""

    def __init__(self, lat: float = 30.7, lng: float = 76.7, delay: float = 0.0):
        self.default = Position(lat=lat, lng=lng)
        self.delay = delay
        self.script: List[Union[Position, GeolocationError]] = []
        self.requests: List[PositionOptions] = []

    def queue(self, *results: Union[Position, GeolocationError]) -> None:
        self.script.extend(results)

    async def get_current_position(self, options: PositionOptions) -> Position:
        self.requests.append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.script.pop(0) if self.script else self.default
        if isinstance(result, GeolocationError):
            raise result
        return result


class BusRecorder:
    """Collects every snapshot a bus subscription delivers."""

    def __init__(self, store: DirectoryStore, bus_id: str):
        self.snapshots = []
        self.errors = []
        self.handle = store.subscribe(BUSES, {"id": bus_id}, self.snapshots.append, self.errors.append)

    @property
    def latest(self) -> Optional[dict]:
        docs = self.snapshots[-1] if self.snapshots else []
        return docs[0] if docs else None

    @property
    def locations(self):
        return [docs[0]["location"] for docs in self.snapshots if docs and docs[0]["location"]]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path,
        publish_interval_seconds=0.05,
        simulated_publish_interval_seconds=0.05,
        geolocation_timeout_ms=200,
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
    )


@pytest.fixture
def store(tmp_path):
    return DirectoryStore(tmp_path)


@pytest.fixture
def memory_store():
    return DirectoryStore()


@pytest.fixture
def identity(settings):
    return IdentityProvider(settings, settings.data_dir)


@pytest.fixture
def sessions(store, identity, settings):
    return SessionManager(store, identity, settings)


@pytest.fixture
def geolocation():
    return FakeGeolocation()


async def add_bus(store: DirectoryStore, bus_number: str = "PB 01 9999", **fields) -> str:
    doc = new_bus_doc(bus_number)
    doc.update(fields)
    return await store.create(BUSES, doc)


async def add_user(store: DirectoryStore, uid: str, role: str, route_number: Optional[str] = None) -> dict:
    doc = {"uid": uid, "email": f"{uid}@college.edu", "role": role, "name": uid.title(), "collegeId": uid.upper()}
    if route_number is not None:
        doc["routeNumber"] = route_number
    await store.create(USERS, doc, doc_id=uid)
    return doc


@pytest.fixture
def api_settings(settings):
    return settings.model_copy(update={"simulate_location": True})


@pytest.fixture
def client(api_settings):
    app = create_app(api_settings)
    with TestClient(app) as test_client:
        yield test_client
