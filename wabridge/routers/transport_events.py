"""Inbound events from the connection bridge."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from fastapi.exceptions import RequestValidationError
from pydantic import TypeAdapter, ValidationError

from wabridge.config import settings
from wabridge.logging_config import get_logger
from wabridge.schemas.transport import EventAcceptedResponse, TransportEvent
from wabridge.services.session_supervisor import SessionSupervisor, get_supervisor

router = APIRouter(prefix="/transport", tags=["transport"])
logger = get_logger("routers.transport_events")

event_adapter = TypeAdapter(TransportEvent)


def _require_bridge_token(provided: Optional[str]) -> None:
    expected = settings.bridge_token
    if not expected:
        raise HTTPException(status_code=500, detail="BRIDGE_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid bridge token")


@router.post("/{session_id}/events", status_code=202, response_model=EventAcceptedResponse)
async def receive_event(
    session_id: UUID,
    payload: dict = Body(...),
    x_bridge_token: Optional[str] = Header(default=None),
    supervisor: SessionSupervisor = Depends(get_supervisor),
):
    """Validate and schedule one event; processing happens after the response."""
    _require_bridge_token(x_bridge_token)

    try:
        event = event_adapter.validate_python(payload)
    except ValidationError as e:
        logger.warning(f"Rejected event {payload.get('event')!r} for session {session_id}")
        raise RequestValidationError(e.errors(include_url=False, include_context=False))

    task = supervisor.dispatch(session_id, event)
    if task is None:
        logger.warning(f"Event {event.event} for inactive session {session_id} not accepted")
        return EventAcceptedResponse(accepted=False, event=event.event)
    return EventAcceptedResponse(accepted=True, event=event.event)
