"""Learned local-id <-> phone associations per tenant session."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wabridge.logging_config import get_logger
from wabridge.models import Chat, JidMapping
from wabridge.services.chat_resolver import (
    attach_stable_phone,
    find_chat_by_address,
    find_chat_by_stable_phone,
    relink_canonical_address,
)
from wabridge.services.identity import is_local_id_address, is_phone_address

logger = get_logger("mapping_service")


def get_phone_for_local_id(db: Session, session_id: UUID, local_id_address: str) -> Optional[str]:
    mapping = (
        db.query(JidMapping)
        .filter(JidMapping.session_id == session_id, JidMapping.local_id_address == local_id_address)
        .first()
    )
    return mapping.phone_address if mapping else None


def _upsert_mapping(db: Session, session_id: UUID, local_id_address: str, phone_address: str) -> JidMapping:
    now = datetime.now(timezone.utc)
    mapping = (
        db.query(JidMapping)
        .filter(JidMapping.session_id == session_id, JidMapping.local_id_address == local_id_address)
        .first()
    )
    if mapping is None:
        mapping = JidMapping(
            session_id=session_id,
            local_id_address=local_id_address,
            phone_address=phone_address,
            last_seen_at=now,
        )
        try:
            with db.begin_nested():
                db.add(mapping)
                db.flush()
            return mapping
        except IntegrityError:
            mapping = (
                db.query(JidMapping)
                .filter(JidMapping.session_id == session_id, JidMapping.local_id_address == local_id_address)
                .one()
            )

    if mapping.phone_address != phone_address:
        logger.warning(
            "Local id remapped to a different phone",
            extra={
                "context": {
                    "session_id": str(session_id),
                    "local_id": local_id_address,
                    "old_phone": mapping.phone_address,
                    "new_phone": phone_address,
                }
            },
        )
    mapping.phone_address = phone_address
    mapping.last_seen_at = now
    db.flush()
    return mapping


def record_mapping(
    db: Session,
    session_id: UUID,
    local_id_address: str,
    phone_address: str,
    *,
    relink: bool = True,
) -> Optional[JidMapping]:
    """Store local_id -> phone and retarget chats the way resolver step 2 would.

    - chat canonicalized under the local id: stable phone is set when unset
    - otherwise a chat whose stable phone is phone_address is re-canonicalized to the local id,
      unless relink is False (the caller is about to address the chat by its phone)

    Two distinct chats (one per address) are left alone; there is no merge.
    """
    if not is_local_id_address(local_id_address) or not is_phone_address(phone_address):
        logger.debug(f"Ignoring mapping {local_id_address} -> {phone_address}: wrong address forms")
        return None

    mapping = _upsert_mapping(db, session_id, local_id_address, phone_address)

    lid_chat = find_chat_by_address(db, session_id, local_id_address)
    if lid_chat is not None:
        if not lid_chat.stable_phone_address:
            attach_stable_phone(db, lid_chat, phone_address)
        elif lid_chat.stable_phone_address != phone_address:
            logger.warning(
                f"Chat {lid_chat.id} already has stable phone {lid_chat.stable_phone_address}, "
                f"mapping says {phone_address}"
            )
        return mapping

    phone_chat = find_chat_by_stable_phone(db, session_id, phone_address)
    if relink and phone_chat is not None and phone_chat.remote_address != local_id_address:
        relink_canonical_address(db, phone_chat, local_id_address)

    logger.info(f"Recorded mapping {local_id_address} -> {phone_address} for session {session_id}")
    return mapping


def backfill_mappings(db: Session, session_id: UUID) -> int:
    """Set stable phone on chats created under a local id before the mapping was known.

    Idempotent: a second run finds nothing left to update.
    """
    mappings = db.query(JidMapping).filter(JidMapping.session_id == session_id).all()
    updated = 0

    for mapping in mappings:
        chats = (
            db.query(Chat)
            .filter(
                Chat.session_id == session_id,
                Chat.remote_address == mapping.local_id_address,
                Chat.stable_phone_address.is_(None),
            )
            .all()
        )
        for chat in chats:
            if attach_stable_phone(db, chat, mapping.phone_address):
                updated += 1

    if updated:
        logger.info(f"Backfilled stable phone on {updated} chats for session {session_id}")
    return updated
