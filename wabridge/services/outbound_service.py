"""Locally-queued outbound sends and their reconciliation with transport echoes."""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from wabridge.config import settings
from wabridge.errors import StoreUnavailable, TransportSendFailure
from wabridge.logging_config import get_logger
from wabridge.models import Chat, Message
from wabridge.services.chat_resolver import resolve_chat
from wabridge.services.identity import coerce_target_address, is_local_id_address, is_phone_address
from wabridge.services.mapping_service import record_mapping
from wabridge.services.transport_client import TransportClient

logger = get_logger("outbound_service")

RECONCILABLE_STATUSES = ("pending", "sending", "sent")


def find_message_by_client_request_id(db: Session, session_id: UUID, client_request_id: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.session_id == session_id, Message.client_request_id == client_request_id)
        .first()
    )


def queue_outbound_message(
    db: Session,
    session_id: UUID,
    target_address: str,
    text: str,
    client_request_id: str,
) -> Tuple[Message, Chat, bool]:
    """Create a pending outgoing row; repeated calls with the same client_request_id return the first row.

    Returns (message, chat, created). Raises InvalidAddress for a bad target.
    """
    try:
        existing = find_message_by_client_request_id(db, session_id, client_request_id)
        if existing:
            logger.info(f"Outbound send replayed: client_request_id={client_request_id}, message={existing.id}")
            return existing, existing.chat, False

        address = coerce_target_address(target_address)
        chat, _ = resolve_chat(db, session_id, address, last_message=text)

        now = datetime.now(timezone.utc)
        message = Message(
            chat_id=chat.id,
            session_id=session_id,
            remote_address=chat.remote_address,
            sender="agent",
            body=text,
            is_outgoing=True,
            status="pending",
            client_request_id=client_request_id,
            timestamp=now,
            created_at=now,
        )
        try:
            with db.begin_nested():
                db.add(message)
                db.flush()
        except IntegrityError:
            winner = find_message_by_client_request_id(db, session_id, client_request_id)
            if winner is None:
                raise
            logger.info(f"Outbound send raced on client_request_id={client_request_id}, returning {winner.id}")
            return winner, winner.chat, False

        chat.last_message = text
        chat.last_message_at = now
        chat.updated_at = now
        db.flush()

        logger.info(
            "Outbound message queued",
            extra={
                "context": {
                    "session_id": str(session_id),
                    "chat_id": str(chat.id),
                    "message_id": str(message.id),
                    "client_request_id": client_request_id,
                }
            },
        )
        return message, chat, True
    except OperationalError as e:
        raise StoreUnavailable(str(e)) from e


def find_reconcilable_message(
    db: Session,
    session_id: UUID,
    body: str,
    event_time: datetime,
    window_minutes: Optional[int] = None,
) -> Optional[Message]:
    """Most recent outgoing row without a provider id whose body matches, inside the trailing window."""
    window = window_minutes if window_minutes is not None else settings.reconcile_window_minutes
    window_start = event_time - timedelta(minutes=window)
    return (
        db.query(Message)
        .filter(
            Message.session_id == session_id,
            Message.is_outgoing.is_(True),
            Message.provider_message_id.is_(None),
            Message.status.in_(RECONCILABLE_STATUSES),
            Message.body == body,
            Message.created_at >= window_start,
        )
        .order_by(Message.created_at.desc())
        .first()
    )


def reconcile_outgoing_echo(
    db: Session,
    pending: Message,
    provider_message_id: str,
    remote_address: str,
    event_time: datetime,
) -> bool:
    """Promote a queued row to 'sent' using the echo's identity. False if the provider id is already taken."""
    try:
        with db.begin_nested():
            pending.provider_message_id = provider_message_id
            pending.status = "sent"
            pending.remote_address = remote_address
            pending.timestamp = event_time
            db.flush()
    except IntegrityError:
        logger.info(f"Echo provider id {provider_message_id} already stored, pending={pending.id} left as is")
        return False

    chat = db.query(Chat).filter(Chat.id == pending.chat_id).first()
    if chat and is_local_id_address(remote_address):
        phone = chat.stable_phone_address
        if not phone and is_phone_address(chat.remote_address):
            phone = chat.remote_address
        if phone:
            record_mapping(db, pending.session_id, remote_address, phone)
            logger.info(f"Linked {remote_address} -> {phone} via pending={pending.id}")

    logger.info(f"Outgoing echo reconciled: provider={provider_message_id}, pending={pending.id}")
    return True


def claim_pending_messages(db: Session, *, limit: int = 10) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.status == "pending", Message.provider_message_id.is_(None))
        .order_by(Message.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )


def mark_message_sending(db: Session, message_id: UUID) -> bool:
    """pending -> sending in one conditional UPDATE. False when another worker got there first."""
    claimed = (
        db.query(Message)
        .filter(Message.id == message_id, Message.status == "pending")
        .update({"status": "sending", "claimed_at": datetime.now(timezone.utc)}, synchronize_session=False)
    )
    db.commit()
    return claimed == 1


def release_stale_sending(db: Session, *, stale_seconds: int) -> int:
    """Return rows stuck in 'sending' (worker died mid-send) to the queue."""
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_seconds)
    released = (
        db.query(Message)
        .filter(
            Message.status == "sending",
            Message.provider_message_id.is_(None),
            Message.claimed_at < cutoff,
        )
        .update({"status": "pending", "claimed_at": None}, synchronize_session=False)
    )
    db.commit()
    if released:
        logger.warning(f"Released {released} stale outbound rows back to pending")
    return released


async def dispatch_pending_message(db: Session, message: Message, transport: TransportClient) -> str:
    """Send one queued row.

    Returns 'sent', 'skipped' (claimed by another worker or already reconciled),
    'already_reconciled' (echo landed during the send), 'duplicate' or 'failed'.
    """
    target = message.remote_address
    message_id = message.id
    session_id = message.session_id
    body = message.body or ""

    if not mark_message_sending(db, message_id):
        logger.info(f"Outbound message {message_id} no longer pending, skipping")
        return "skipped"

    try:
        receipt = await transport.send_text(target, body)
    except TransportSendFailure as e:
        logger.error(f"Outbound send failed: message={message_id}, jid={target}, error={e.reason}")
        db.query(Message).filter(Message.id == message_id, Message.status == "sending").update(
            {"status": "failed"}, synchronize_session=False
        )
        db.commit()
        return "failed"

    actual_address = receipt.remote_address or target
    if actual_address != target and is_phone_address(target) and is_local_id_address(actual_address):
        record_mapping(db, session_id, actual_address, target)
        db.commit()

    try:
        updated = (
            db.query(Message)
            .filter(Message.id == message_id, Message.status == "sending")
            .update(
                {
                    "status": "sent",
                    "provider_message_id": receipt.provider_message_id,
                    "remote_address": actual_address,
                    "timestamp": datetime.now(timezone.utc),
                },
                synchronize_session=False,
            )
        )
        db.commit()
    except IntegrityError:
        # The echo was already stored as its own row; drop the queued copy.
        db.rollback()
        db.query(Message).filter(Message.id == message_id).delete(synchronize_session=False)
        db.commit()
        logger.info(f"Outbound message {message_id} duplicated provider={receipt.provider_message_id}, removed")
        return "duplicate"

    if not updated:
        logger.info(f"Outbound message {message_id} was reconciled by its echo first")
        return "already_reconciled"

    logger.info(f"Outbound sent: message={message_id}, provider={receipt.provider_message_id}, jid={actual_address}")
    return "sent"
