"""Write exactly one message row per real-world message, whichever stream sees it first.

Gates, in order:
1. dedupe on (session_id, provider identity)
2. self-sent echo -> promote the matching queued row (see outbound_service)
3. resolve chat, insert row, refresh the chat's list cache
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from wabridge.errors import StoreUnavailable
from wabridge.logging_config import get_logger
from wabridge.models import Chat, Message
from wabridge.schemas.transport import MessageContent, TransportMessage
from wabridge.services.chat_resolver import resolve_chat
from wabridge.services.identity import (
    is_group_address,
    is_local_id_address,
    is_phone_address,
    require_routable_address,
    should_ignore_address,
)
from wabridge.services.mapping_service import get_phone_for_local_id, record_mapping
from wabridge.services.outbound_service import find_reconcilable_message, reconcile_outgoing_echo

logger = get_logger("ingest_service")


class StreamKind(str, Enum):
    LIVE = "live"
    HISTORY = "history"


# messages.upsert batch type -> stream. Only fresh notifications are live.
UPSERT_TYPE_STREAMS = {
    "notify": StreamKind.LIVE,
    "append": StreamKind.HISTORY,
    "history": StreamKind.HISTORY,
}

PLACEHOLDER_IMAGE = "📷 Image"
PLACEHOLDER_VIDEO = "🎥 Video"
PLACEHOLDER_VOICE_NOTE = "🎤 Voice message"
PLACEHOLDER_AUDIO = "🎵 Audio file"
PLACEHOLDER_STICKER = "🎨 Sticker"
PLACEHOLDER_DOCUMENT = "File"


@dataclass
class ExtractedContent:
    body: str
    media_kind: Optional[str] = None
    media_url: Optional[str] = None


@dataclass
class IngestResult:
    outcome: str  # created, duplicate, reconciled, skipped
    message: Optional[Message] = None
    chat: Optional[Chat] = None

    @property
    def created(self) -> bool:
        return self.outcome == "created"


def stream_for_upsert_type(upsert_type: str) -> StreamKind:
    return UPSERT_TYPE_STREAMS.get(upsert_type, StreamKind.HISTORY)


def extract_content(content: Optional[MessageContent]) -> Optional[ExtractedContent]:
    """Body/media kind by fixed precedence; None when there is neither text nor media."""
    if content is None:
        return None

    extracted: Optional[ExtractedContent] = None
    if content.conversation:
        extracted = ExtractedContent(body=content.conversation)
    elif content.extendedTextMessage and content.extendedTextMessage.text:
        extracted = ExtractedContent(body=content.extendedTextMessage.text)
    elif content.imageMessage:
        media = content.imageMessage
        extracted = ExtractedContent(body=media.caption or PLACEHOLDER_IMAGE, media_kind="image", media_url=media.url)
    elif content.videoMessage:
        media = content.videoMessage
        extracted = ExtractedContent(body=media.caption or PLACEHOLDER_VIDEO, media_kind="video", media_url=media.url)
    elif content.audioMessage:
        media = content.audioMessage
        placeholder = PLACEHOLDER_VOICE_NOTE if media.ptt else PLACEHOLDER_AUDIO
        extracted = ExtractedContent(body=placeholder, media_kind="audio", media_url=media.url)
    elif content.stickerMessage:
        extracted = ExtractedContent(
            body=PLACEHOLDER_STICKER, media_kind="sticker", media_url=content.stickerMessage.url
        )
    elif content.documentMessage:
        media = content.documentMessage
        file_name = media.fileName or PLACEHOLDER_DOCUMENT
        extracted = ExtractedContent(body=f"📎 {file_name}", media_kind="document", media_url=media.url)

    if extracted is None:
        return None
    if not extracted.body.strip() and not extracted.media_kind:
        return None
    return extracted


def message_timestamp(epoch_seconds: Optional[int]) -> datetime:
    if epoch_seconds:
        return datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc)
    return datetime.now(timezone.utc)


def build_provider_identity(
    provider_message_id: Optional[str],
    address: str,
    epoch_seconds: Optional[int],
    body: str,
    from_me: bool,
) -> str:
    if provider_message_id and provider_message_id.strip():
        return provider_message_id.strip()
    payload = f"{address}|{epoch_seconds or ''}|{body}|{int(from_me)}"
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


def find_message_by_provider_id(db: Session, session_id: UUID, provider_message_id: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.session_id == session_id, Message.provider_message_id == provider_message_id)
        .first()
    )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _learn_mapping_from_key(db: Session, session_id: UUID, address: str, alt_address: Optional[str]) -> Optional[str]:
    """Record a local-id/phone pair carried on the message key; return the phone for the resolver."""
    if is_phone_address(address):
        if is_local_id_address(alt_address):
            # Resolved by phone right after, so the phone chat keeps its address.
            record_mapping(db, session_id, alt_address, address, relink=False)
        return address

    if is_local_id_address(address):
        if is_phone_address(alt_address):
            record_mapping(db, session_id, address, alt_address)
            return alt_address
        return get_phone_for_local_id(db, session_id, address)

    return None


def _update_chat_cache(chat: Chat, body: str, timestamp: datetime, from_me: bool) -> None:
    last_at = _as_utc(chat.last_message_at)
    if last_at is None or timestamp >= last_at or not chat.last_message:
        chat.last_message = body
        chat.last_message_at = timestamp
    if not from_me:
        chat.unread_count = (chat.unread_count or 0) + 1
    chat.updated_at = datetime.now(timezone.utc)


def ingest_message(
    db: Session,
    session_id: UUID,
    transport_message: TransportMessage,
    stream_kind: StreamKind,
) -> IngestResult:
    """Ingest one transport message. Caller commits.

    Raises InvalidAddress for unroutable addresses and StoreUnavailable on store failures.
    """
    key = transport_message.key
    address = key.remoteJid
    if should_ignore_address(address):
        return IngestResult(outcome="skipped")
    require_routable_address(address)

    content = extract_content(transport_message.message)
    if content is None:
        logger.debug(f"Skip empty message provider={key.id} jid={address}")
        return IngestResult(outcome="skipped")

    from_me = key.fromMe
    timestamp = message_timestamp(transport_message.messageTimestamp)
    provider_id = build_provider_identity(key.id, address, transport_message.messageTimestamp, content.body, from_me)

    try:
        existing = find_message_by_provider_id(db, session_id, provider_id)
        if existing:
            logger.debug(f"Duplicate skipped provider={provider_id} existing={existing.id}")
            return IngestResult(outcome="duplicate", message=existing)

        if from_me:
            pending = find_reconcilable_message(db, session_id, content.body, timestamp)
            if pending:
                if reconcile_outgoing_echo(db, pending, provider_id, address, timestamp):
                    return IngestResult(outcome="reconciled", message=pending, chat=pending.chat)
                return IngestResult(outcome="duplicate")

        if is_group_address(address):
            known_phone = None
            chat_type = "group"
        else:
            known_phone = _learn_mapping_from_key(db, session_id, address, key.remoteJidAlt)
            chat_type = "individual"

        chat, _ = resolve_chat(
            db,
            session_id,
            address,
            known_phone,
            name=None if from_me else transport_message.pushName,
            chat_type=chat_type,
            last_message_at=timestamp,
        )

        message = Message(
            chat_id=chat.id,
            session_id=session_id,
            remote_address=address,
            sender="agent" if from_me else "user",
            body=content.body,
            media_kind=content.media_kind,
            media_url=content.media_url,
            is_outgoing=from_me,
            status="sent" if from_me else "delivered",
            provider_message_id=provider_id,
            timestamp=timestamp,
            created_at=timestamp,
        )
        try:
            with db.begin_nested():
                db.add(message)
                db.flush()
        except IntegrityError:
            logger.info(f"Duplicate blocked by unique provider={provider_id}")
            return IngestResult(outcome="duplicate", chat=chat)

        _update_chat_cache(chat, content.body, timestamp, from_me)
        db.flush()
    except OperationalError as e:
        raise StoreUnavailable(str(e)) from e

    logger.info(
        "Saved message",
        extra={
            "context": {
                "session_id": str(session_id),
                "provider_message_id": provider_id,
                "chat_id": str(chat.id),
                "stream": stream_kind.value,
                "from_me": from_me,
            }
        },
    )
    return IngestResult(outcome="created", message=message, chat=chat)
