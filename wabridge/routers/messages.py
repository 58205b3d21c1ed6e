from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from wabridge.database import get_db
from wabridge.errors import InvalidAddress, StoreUnavailable
from wabridge.logging_config import get_logger
from wabridge.schemas.message import OutboundSendRequest, OutboundSendResponse
from wabridge.services.outbound_service import queue_outbound_message
from wabridge.services.session_service import get_session

router = APIRouter(prefix="/messages", tags=["messages"])
logger = get_logger("routers.messages")


@router.post("/send", response_model=OutboundSendResponse)
def send_message(request: OutboundSendRequest, db: Session = Depends(get_db)):
    """Queue an outgoing text. The outbound worker delivers it; replays return the first row."""
    session = get_session(db, request.session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{request.session_id}' not found")
    if not session.is_ready:
        raise HTTPException(status_code=409, detail="Session is not connected")

    try:
        message, chat, created = queue_outbound_message(
            db,
            request.session_id,
            request.target_address,
            request.text,
            request.client_request_id,
        )
        db.commit()
    except InvalidAddress as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    except StoreUnavailable as e:
        db.rollback()
        logger.error(f"Store unavailable while queueing send: {e}")
        raise HTTPException(status_code=503, detail="Store unavailable")

    return OutboundSendResponse(
        success=True,
        created=created,
        chat_id=chat.id,
        message_id=message.id,
        status=message.status,
        remote_address=message.remote_address,
        message="Queued" if created else "Already queued",
    )
