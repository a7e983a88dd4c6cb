import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import HTMLResponse
from pydantic import ValidationError

from ubus.errors import InvalidTokenError
from ubus.geolocation import PositionOptions
from ubus.mapping import render_map_html
from ubus.models import BUSES, Bus
from ubus.routers.auth import get_current_session
from ubus.scope import ResourceScope
from ubus.session import Session

logger = logging.getLogger(__name__)

router = APIRouter()

# Close code sent to WebSocket clients without a valid session token
UNAUTHORIZED_CLOSE_CODE = 4001


async def _load_bus(request: Request, bus_id: str) -> Bus:
    doc = await request.app.state.db.store.get(BUSES, bus_id)
    if doc is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bus not found")
    return Bus.from_doc(doc)


@router.get("/bus/{bus_id}", tags=["Tracking"])
async def get_bus_current_location(bus_id: str, request: Request, session: Session = Depends(get_current_session)):
    bus = await _load_bus(request, bus_id)
    return {
        "busId": bus.id,
        "busNumber": bus.bus_number,
        "isTripActive": bus.is_trip_active,
        "location": bus.location.to_doc() if bus.location else None,
    }


@router.get("/map/{bus_id}", response_class=HTMLResponse, tags=["Tracking"])
async def get_bus_map(bus_id: str, request: Request, session: Session = Depends(get_current_session)):
    bus = await _load_bus(request, bus_id)
    if bus.location is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bus location not available yet.")
    return HTMLResponse(render_map_html(bus.location, title=bus.bus_number))


def _position_request(options: PositionOptions) -> Dict[str, Any]:
    return {
        "type": "position_request",
        "highAccuracy": options.high_accuracy,
        "timeoutMs": options.timeout_ms,
        "forceFresh": options.force_fresh,
    }


def _handle_client_message(session: Session, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Apply a message sent by the client; returns an error reply when it can't be applied."""
    kind = message.get("type")
    device = session.device
    if kind not in ("position", "position_denied"):
        return {"type": "error", "detail": f"Unsupported message type: {kind!r}"}
    if device is None:
        return {"type": "error", "detail": "This session does not accept device positions."}
    if kind == "position_denied":
        device.deny(message.get("message") or "User denied Geolocation")
        return None
    try:
        device.report(float(message["lat"]), float(message["lng"]), message.get("accuracy"))
    except (KeyError, TypeError, ValueError, ValidationError):
        return {"type": "error", "detail": "Position messages need numeric lat and lng."}
    return None


@router.websocket("/ws")
async def websocket_view(websocket: WebSocket):
    """Stream the caller's live view; drivers' devices also push positions over this socket."""
    token = websocket.query_params.get("token", "")
    try:
        session = websocket.app.state.db.sessions.get(token)
    except InvalidTokenError:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    scope = ResourceScope(f"websocket {session.user.uid}")
    view = session.open_view()
    scope.add(view)
    if session.device is not None:
        scope.add(session.device.on_request(lambda options: outbox.put_nowait(_position_request(options))))

    async def pump_view():
        async for state in view.watch():
            outbox.put_nowait({"type": "state", "data": state.model_dump(mode="json", by_alias=True)})
        outbox.put_nowait(None)

    async def send():
        while True:
            message = await outbox.get()
            if message is None:
                return
            await websocket.send_json(message)

    async def receive():
        while True:
            try:
                message = await websocket.receive_json()
            except WebSocketDisconnect:
                return
            except ValueError:
                outbox.put_nowait({"type": "error", "detail": "Messages must be JSON objects."})
                continue
            if not isinstance(message, dict):
                outbox.put_nowait({"type": "error", "detail": "Messages must be JSON objects."})
                continue
            reply = _handle_client_message(session, message)
            if reply is not None:
                outbox.put_nowait(reply)

    def log_failure(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("WebSocket for %s failed", session.user.uid, exc_info=task.exception())

    feeder = asyncio.create_task(pump_view())
    sender = asyncio.create_task(send())
    receiver = asyncio.create_task(receive())
    for task in (feeder, sender, receiver):
        task.add_done_callback(log_failure)
    view_ended = False
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        view_ended = receiver not in done and sender.exception() is None
    finally:
        # Nothing is awaited here: the handler may itself be getting cancelled
        for task in (feeder, sender, receiver):
            task.cancel()
        scope.close()
        session.scope.discard(view)

    # The view ended because the session was closed
    if view_ended:
        await websocket.close()
