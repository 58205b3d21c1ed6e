from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from wabridge.database import get_db
from wabridge.logging_config import get_logger
from wabridge.models import WhatsAppSession
from wabridge.services.session_service import get_session, purge_session_data, update_session_state
from wabridge.services.session_supervisor import SessionSupervisor, get_supervisor

router = APIRouter(prefix="/sessions", tags=["sessions"])
logger = get_logger("routers.sessions")


class SessionStatusResponse(BaseModel):
    session_id: UUID
    active: bool
    is_ready: bool
    qr: str | None = None


@router.post("/{session_id}/start", response_model=SessionStatusResponse)
async def start_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    supervisor: SessionSupervisor = Depends(get_supervisor),
):
    session = get_session(db, session_id)
    if session is None:
        session = WhatsAppSession(id=session_id)
        db.add(session)
        db.commit()
        db.refresh(session)

    await supervisor.start(session_id)
    return SessionStatusResponse(
        session_id=session_id,
        active=supervisor.is_active(session_id),
        is_ready=bool(session.is_ready),
        qr=session.qr or None,
    )


@router.post("/{session_id}/logout", response_model=SessionStatusResponse)
async def logout_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    supervisor: SessionSupervisor = Depends(get_supervisor),
):
    """Unlink the device, purge the session's data and restart it for re-pairing."""
    session = get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")

    await supervisor.stop(session_id, logout=True)
    purged = purge_session_data(db, session_id)
    update_session_state(db, session_id, is_ready=False, qr="", should_disconnect=False)
    db.commit()
    logger.info(f"Session {session_id} logged out", extra={"context": purged})

    await supervisor.start(session_id)
    return SessionStatusResponse(
        session_id=session_id,
        active=supervisor.is_active(session_id),
        is_ready=False,
        qr=None,
    )
