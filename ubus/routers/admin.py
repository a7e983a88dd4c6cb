from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from ubus.assignment import AssignmentCoordinator, AssignmentField
from ubus.errors import UBusError
from ubus.models import BUSES, ROUTES, Role, Route
from ubus.routers.auth import require_role, to_http_exception
from ubus.session import Session
from ubus.views import AdminViewState

router = APIRouter()


class RouteCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    route_number: str = Field(..., alias="routeNumber")


class BusCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bus_number: str = Field(..., alias="busNumber")


class AssignmentUpdate(BaseModel):
    field: AssignmentField
    value: Optional[str] = None


def get_coordinator(request: Request) -> AssignmentCoordinator:
    return request.app.state.db.assignments


get_admin_session = require_role(Role.ADMIN)


@router.get("/overview", response_model=AdminViewState, tags=["Admin"])
async def get_overview(session: Session = Depends(get_admin_session)):
    return session.view.state


@router.post("/routes", response_model=Route, tags=["Admin"])
async def add_route(route: RouteCreate, session: Session = Depends(get_admin_session),
                    coordinator: AssignmentCoordinator = Depends(get_coordinator)):
    try:
        new_route = await coordinator.add_route(route.route_number)
    except UBusError as exc:
        raise to_http_exception(exc)
    session.view.flash(f"Route {new_route.route_number} added!")
    return new_route


@router.delete("/routes/{route_id}", tags=["Admin"])
async def delete_route(route_id: str, session: Session = Depends(get_admin_session),
                       coordinator: AssignmentCoordinator = Depends(get_coordinator)):
    try:
        await coordinator.delete(ROUTES, route_id)
    except UBusError as exc:
        raise to_http_exception(exc)
    session.view.flash("Item deleted.")
    return {"message": "Route deleted successfully"}


@router.post("/buses", tags=["Admin"])
async def add_bus(bus: BusCreate, session: Session = Depends(get_admin_session),
                  coordinator: AssignmentCoordinator = Depends(get_coordinator)):
    try:
        bus_id = await coordinator.add_bus(bus.bus_number)
    except UBusError as exc:
        raise to_http_exception(exc)
    session.view.flash(f"Bus {bus.bus_number.strip()} added!")
    return {"id": bus_id, "busNumber": bus.bus_number.strip()}


@router.delete("/buses/{bus_id}", tags=["Admin"])
async def delete_bus(bus_id: str, session: Session = Depends(get_admin_session),
                     coordinator: AssignmentCoordinator = Depends(get_coordinator)):
    try:
        await coordinator.delete(BUSES, bus_id)
    except UBusError as exc:
        raise to_http_exception(exc)
    session.view.flash("Item deleted.")
    return {"message": "Bus deleted successfully"}


@router.put("/buses/{bus_id}/assignment", tags=["Admin"])
async def update_assignment(bus_id: str, update: AssignmentUpdate, session: Session = Depends(get_admin_session),
                            coordinator: AssignmentCoordinator = Depends(get_coordinator)):
    try:
        await coordinator.assign(bus_id, update.field, update.value)
    except UBusError as exc:
        raise to_http_exception(exc)
    session.view.flash("Assignment updated!")
    return {"message": "Assignment updated!"}
