import logging
from enum import Enum
from typing import Optional

from ubus.errors import AssignmentError, UBusError
from ubus.models import BUSES, ROUTES, Route, new_bus_doc
from ubus.store import DirectoryStore, Transaction

logger = logging.getLogger(__name__)


class AssignmentField(str, Enum):
    ROUTE = "route"
    DRIVER = "driver"

    @property
    def doc_field(self) -> str:
        return "routeNumber" if self is AssignmentField.ROUTE else "driverId"


class AssignmentCoordinator:
    """Admin-side writes to buses and routes.

    A driver is on at most one bus: assigning a driver clears every other bus
    holding that driver in the same transaction that sets the new one.
    """

    def __init__(self, store: DirectoryStore):
        self.store = store

    async def assign(self, bus_id: str, field: AssignmentField, value: Optional[str]) -> None:
        field = AssignmentField(field)
        value = value or None
        try:
            if field is AssignmentField.DRIVER and value is not None:
                await self.store.run_transaction(lambda txn: self._move_driver(txn, bus_id, value))
            else:
                await self.store.update(BUSES, bus_id, {field.doc_field: value})
        except UBusError as exc:
            logger.error("Assignment of %s=%r to bus %s failed", field.value, value, bus_id, exc_info=True)
            raise AssignmentError() from exc
        logger.info("Bus %s: %s set to %r", bus_id, field.value, value)

    @staticmethod
    def _move_driver(txn: Transaction, bus_id: str, driver_id: str) -> None:
        for bus in txn.query(BUSES, {"driverId": driver_id}):
            if bus["id"] != bus_id:
                txn.update(BUSES, bus["id"], {"driverId": None})
        txn.update(BUSES, bus_id, {"driverId": driver_id})

    async def add_route(self, route_number: str) -> Route:
        route_number = route_number.strip()
        if not route_number:
            raise AssignmentError("Route number is required.")
        route_id = await self.store.create(ROUTES, {"routeNumber": route_number})
        return Route(id=route_id, route_number=route_number)

    async def add_bus(self, bus_number: str) -> str:
        bus_number = bus_number.strip()
        if not bus_number:
            raise AssignmentError("Bus number is required.")
        return await self.store.create(BUSES, new_bus_doc(bus_number))

    async def delete(self, collection: str, doc_id: str) -> None:
        # Deleting a route leaves buses that reference its number untouched
        await self.store.delete(collection, doc_id)
