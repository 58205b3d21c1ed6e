"""Find-or-create the single canonical chat for a contact.

Exclusion between concurrent writers comes from the unique constraints on
(session_id, remote_address) and (session_id, stable_phone_address): writes
happen inside a SAVEPOINT and a conflict re-reads the winning row.
"""

from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wabridge.errors import ConflictRetryable
from wabridge.logging_config import get_logger
from wabridge.models import Chat
from wabridge.services.identity import address_digits, is_group_address, is_phone_address
from wabridge.services.state_machine import ChatMode

logger = get_logger("chat_resolver")


def find_chat_by_address(db: Session, session_id: UUID, address: str) -> Optional[Chat]:
    return db.query(Chat).filter(Chat.session_id == session_id, Chat.remote_address == address).first()


def find_chat_by_stable_phone(db: Session, session_id: UUID, phone_address: str) -> Optional[Chat]:
    return (
        db.query(Chat)
        .filter(Chat.session_id == session_id, Chat.stable_phone_address == phone_address)
        .first()
    )


def attach_stable_phone(db: Session, chat: Chat, phone_address: str) -> bool:
    """Set chat.stable_phone_address if unset and not already owned by another chat."""
    if chat.stable_phone_address:
        return chat.stable_phone_address == phone_address

    owner = find_chat_by_stable_phone(db, chat.session_id, phone_address)
    if owner is not None and owner.id != chat.id:
        logger.warning(
            "Stable phone already owned by another chat, not merging",
            extra={
                "context": {
                    "chat_id": str(chat.id),
                    "owner_chat_id": str(owner.id),
                    "phone_address": phone_address,
                }
            },
        )
        return False

    try:
        with db.begin_nested():
            chat.stable_phone_address = phone_address
            chat.updated_at = datetime.now(timezone.utc)
            db.flush()
    except IntegrityError:
        db.refresh(chat)
        logger.info(f"Concurrent writer claimed stable phone {phone_address}, chat={chat.id}")
        return False
    return True


def relink_canonical_address(db: Session, chat: Chat, observed_address: str) -> Optional[Chat]:
    old_address = chat.remote_address
    try:
        with db.begin_nested():
            chat.remote_address = observed_address
            chat.updated_at = datetime.now(timezone.utc)
            db.flush()
    except IntegrityError:
        # Another writer created a chat under observed_address meanwhile.
        db.refresh(chat)
        return find_chat_by_address(db, chat.session_id, observed_address)

    logger.info(f"Linked chat {chat.id}: {old_address} -> {observed_address}")
    return chat


def resolve_chat(
    db: Session,
    session_id: UUID,
    observed_address: str,
    known_phone_address: Optional[str] = None,
    *,
    name: Optional[str] = None,
    chat_type: Optional[str] = None,
    last_message: Optional[str] = None,
    last_message_at: Optional[datetime] = None,
) -> Tuple[Chat, bool]:
    """Return (chat, is_new) for the contact behind observed_address.

    Lookup order, first match wins:
    1. canonical address == observed_address
    2. stable phone == known_phone_address (canonical address is rewritten in place)
    3. stable phone == observed_address, when observed_address is phone-form
    4. insert
    """
    known_phone = known_phone_address if is_phone_address(known_phone_address) else None

    chat = find_chat_by_address(db, session_id, observed_address)
    if chat:
        if known_phone and not chat.stable_phone_address:
            attach_stable_phone(db, chat, known_phone)
        return chat, False

    if known_phone:
        chat = find_chat_by_stable_phone(db, session_id, known_phone)
        if chat:
            if chat.remote_address != observed_address:
                linked = relink_canonical_address(db, chat, observed_address)
                if linked is not None:
                    return linked, False
            else:
                return chat, False

    if is_phone_address(observed_address):
        chat = find_chat_by_stable_phone(db, session_id, observed_address)
        if chat:
            return chat, False

    return _insert_chat(
        db,
        session_id,
        observed_address,
        known_phone,
        name=name,
        chat_type=chat_type,
        last_message=last_message,
        last_message_at=last_message_at,
    )


def _insert_chat(
    db: Session,
    session_id: UUID,
    observed_address: str,
    known_phone: Optional[str],
    *,
    name: Optional[str],
    chat_type: Optional[str],
    last_message: Optional[str],
    last_message_at: Optional[datetime],
) -> Tuple[Chat, bool]:
    if is_phone_address(observed_address):
        stable_phone = observed_address
    else:
        stable_phone = known_phone

    now = datetime.now(timezone.utc)
    chat = Chat(
        session_id=session_id,
        remote_address=observed_address,
        stable_phone_address=stable_phone,
        name=name or address_digits(observed_address),
        chat_type=chat_type or ("group" if is_group_address(observed_address) else "individual"),
        status="inbox",
        mode=ChatMode.AI.value,
        needs_human=False,
        is_muted=False,
        is_archived=False,
        unread_count=0,
        last_message=last_message or None,
        last_message_at=last_message_at or (now if last_message else None),
        created_at=now,
        updated_at=now,
    )

    try:
        with db.begin_nested():
            db.add(chat)
            db.flush()
    except IntegrityError:
        logger.info(
            "Chat insert raced with a concurrent writer, re-reading winner",
            extra={"context": {"session_id": str(session_id), "address": observed_address}},
        )
        winner = find_chat_by_address(db, session_id, observed_address)
        if winner is None and stable_phone:
            winner = find_chat_by_stable_phone(db, session_id, stable_phone)
        if winner is None:
            raise ConflictRetryable(f"Chat conflict for {observed_address} but no winning row found")
        return winner, False

    logger.info(f"Created chat {chat.id} for {observed_address} (stable_phone={stable_phone})")
    return chat, True
