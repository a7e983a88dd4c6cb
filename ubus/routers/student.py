from fastapi import APIRouter, Depends

from ubus.models import Role
from ubus.routers.auth import require_role
from ubus.session import Session
from ubus.views import StudentViewState

router = APIRouter()


@router.get("/bus", response_model=StudentViewState, tags=["Students"])
async def get_my_route_bus(session: Session = Depends(require_role(Role.STUDENT))):
    """Current state of the bus serving the student's route. Live updates come over /tracking/ws."""
    return session.view.state
