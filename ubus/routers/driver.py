from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ubus.errors import UBusError
from ubus.models import Role
from ubus.routers.auth import require_role, to_http_exception
from ubus.session import Session
from ubus.views import DriverViewState

router = APIRouter()


class PositionReport(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)


class PositionDenied(BaseModel):
    message: str = "User denied Geolocation"


class TripResponse(BaseModel):
    message: str
    state: DriverViewState


@router.get("/my_bus", response_model=DriverViewState, tags=["Driver"])
async def get_my_bus(session: Session = Depends(require_role(Role.DRIVER))):
    state = session.view.state
    if state.bus is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No bus assigned to this driver.")
    return state


@router.post("/trip/start", response_model=TripResponse, tags=["Driver"])
async def start_trip(session: Session = Depends(require_role(Role.DRIVER))):
    try:
        started = await session.publisher.start()
    except UBusError as exc:
        raise to_http_exception(exc)
    message = "Trip started successfully" if started else "Trip already active for this driver"
    return TripResponse(message=message, state=session.view.state)


@router.post("/trip/stop", response_model=TripResponse, tags=["Driver"])
async def stop_trip(session: Session = Depends(require_role(Role.DRIVER))):
    stopped = await session.publisher.stop()
    message = "Trip ended successfully" if stopped else "No active trip for this driver"
    return TripResponse(message=message, state=session.view.state)


def _device(session: Session):
    if session.device is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This session simulates its location.")
    return session.device


@router.post("/position", tags=["Driver"])
async def report_position(report: PositionReport, session: Session = Depends(require_role(Role.DRIVER))):
    """Position fix pushed by the driver's device."""
    _device(session).report(report.lat, report.lng, report.accuracy)
    return {"message": "Position received"}


@router.post("/position/denied", tags=["Driver"])
async def report_position_denied(denied: PositionDenied, session: Session = Depends(require_role(Role.DRIVER))):
    _device(session).deny(denied.message)
    return {"message": "Location access marked as denied"}
