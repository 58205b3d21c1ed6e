from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wabridge.logging_config import get_logger
from wabridge.models import Chat, JidMapping, Message, WhatsAppSession

logger = get_logger("session_service")


def get_session(db: Session, session_id: UUID) -> Optional[WhatsAppSession]:
    return db.query(WhatsAppSession).filter(WhatsAppSession.id == session_id).first()


def update_session_state(
    db: Session,
    session_id: UUID,
    *,
    is_ready: Optional[bool] = None,
    qr: Optional[str] = None,
    should_disconnect: Optional[bool] = None,
) -> Optional[WhatsAppSession]:
    session = get_session(db, session_id)
    if session is None:
        logger.warning(f"Session {session_id} not found, state update ignored")
        return None

    if is_ready is not None:
        session.is_ready = is_ready
    if qr is not None:
        session.qr = qr
    if should_disconnect is not None:
        session.should_disconnect = should_disconnect
    session.updated_at = datetime.now(timezone.utc)
    db.flush()
    return session


def purge_session_data(db: Session, session_id: UUID) -> dict:
    """Bulk purge on logout: messages, chats and learned mappings of the session."""
    messages = db.query(Message).filter(Message.session_id == session_id).delete(synchronize_session=False)
    chats = db.query(Chat).filter(Chat.session_id == session_id).delete(synchronize_session=False)
    mappings = db.query(JidMapping).filter(JidMapping.session_id == session_id).delete(synchronize_session=False)
    db.flush()

    counts = {"messages": messages, "chats": chats, "jid_mappings": mappings}
    logger.info("Session data purged", extra={"context": {"session_id": str(session_id), **counts}})
    return counts


def list_sessions(db: Session) -> list[WhatsAppSession]:
    return db.query(WhatsAppSession).all()
