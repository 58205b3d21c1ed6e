import asyncio
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from wabridge.config import settings
from wabridge.errors import TransportSendFailure
from wabridge.logging_config import get_logger
from wabridge.models import Chat, Message
from wabridge.services.ai_service import AIResponder, build_conversation_history
from wabridge.services.ingest_service import StreamKind
from wabridge.services.result import Result
from wabridge.services.state_machine import ChatMode, hand_off
from wabridge.services.transport_client import TransportClient

logger = get_logger("mode_service")


def requests_human(text: str, phrases: Optional[Iterable[str]] = None) -> bool:
    """Case-insensitive substring match against the configured handoff phrases."""
    normalized = (text or "").lower().strip()
    if not normalized:
        return False
    phrases = settings.handoff_phrases if phrases is None else phrases
    return any(phrase.lower() in normalized for phrase in phrases if phrase)


def switch_to_human(db: Session, chat: Chat) -> None:
    """ai -> human; sets needs_human. Raises InvalidTransitionError from any other mode."""
    chat.mode = hand_off(ChatMode(chat.mode)).value
    chat.needs_human = True
    chat.updated_at = datetime.now(timezone.utc)
    db.flush()


def _record_automated_reply(db: Session, chat: Chat, text: str) -> None:
    # Send-only: the transport echoes the reply back and ingest stores it.
    now = datetime.now(timezone.utc)
    chat.last_message = text
    chat.last_message_at = now
    chat.updated_at = now
    db.flush()


async def handle_inbound_text(
    db: Session,
    chat: Chat,
    message: Message,
    stream_kind: StreamKind,
    transport: TransportClient,
    responder: AIResponder,
) -> Result:
    """Route one newly stored inbound text message: handoff phrase, AI reply, or nothing.

    Only live messages are routed; history replays never notify the contact.
    """
    if stream_kind != StreamKind.LIVE:
        return Result.success("history_skipped")

    if chat.chat_type == "group":
        return Result.success("group_skipped")

    if chat.mode == ChatMode.HUMAN.value:
        logger.info(f"Chat {chat.id} is in human mode, skipping AI")
        return Result.success("human_mode")

    body = message.body or ""
    address = chat.remote_address

    if requests_human(body):
        switch_to_human(db, chat)
        db.commit()

        confirmation = settings.handoff_confirmation_text
        try:
            await transport.send_text(address, confirmation)
        except TransportSendFailure as e:
            logger.error(f"Handoff confirmation not sent: chat={chat.id}, error={e.reason}")
            return Result.from_exception(e, "send_failed")

        _record_automated_reply(db, chat, confirmation)
        db.commit()
        logger.info(f"Switched chat {chat.id} to human mode (handoff phrase)")
        return Result.success("handoff_phrase")

    history = build_conversation_history(
        db, chat.id, limit=settings.ai_history_limit, exclude_message_id=message.id
    )
    chat_context = {"chat_id": str(chat.id), "name": chat.name}
    ai_reply = await asyncio.to_thread(responder.respond, history, body, chat_context)

    try:
        await transport.send_text(address, ai_reply.reply)
    except TransportSendFailure as e:
        logger.error(f"AI reply not sent, leaving chat {chat.id} in mode {chat.mode}: {e.reason}")
        return Result.from_exception(e, "send_failed")

    _record_automated_reply(db, chat, ai_reply.reply)

    if ai_reply.handoff:
        switch_to_human(db, chat)
        db.commit()
        logger.info(f"AI requested handoff for chat {chat.id}: {ai_reply.handoff_reason}")
        return Result.success("ai_handoff")

    db.commit()
    return Result.success("ai_replied")
