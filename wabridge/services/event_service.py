"""One entry point per transport event kind.

Every handler is order-independent: live and history batches may interleave and
repeat. A failure on one item is logged and never aborts the rest of the batch.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from wabridge.config import settings
from wabridge.errors import ConflictRetryable, InvalidAddress, StoreUnavailable
from wabridge.logging_config import session_logger
from wabridge.models import Chat
from wabridge.schemas.transport import (
    ChatSnapshot,
    ConnectionUpdate,
    ContactSnapshot,
    HistorySet,
    TransportMessage,
)
from wabridge.services.ai_service import AIResponder
from wabridge.services.chat_resolver import resolve_chat
from wabridge.services.identity import (
    address_digits,
    coerce_target_address,
    is_group_address,
    is_local_id_address,
    is_phone_address,
    should_ignore_address,
)
from wabridge.services.ingest_service import StreamKind, ingest_message, stream_for_upsert_type
from wabridge.services.mapping_service import backfill_mappings, record_mapping
from wabridge.services.mode_service import handle_inbound_text
from wabridge.services.session_service import purge_session_data, update_session_state
from wabridge.services.transport_client import TransportClient

CONNECTION_OPEN = "open"
CONNECTION_LOGGED_OUT = "logged_out"
CONNECTION_CLOSED = "closed"
CONNECTION_PENDING = "pending"


def handle_connection_update(db: Session, session_id: UUID, update: ConnectionUpdate) -> str:
    log = session_logger("events.connection", session_id)

    if update.qr:
        update_session_state(db, session_id, qr=update.qr, is_ready=False)
        log.info(f"Pairing code received (len {len(update.qr)})")

    if update.connection == "open":
        update_session_state(db, session_id, is_ready=True, qr="")
        repaired = backfill_mappings(db, session_id)
        db.commit()
        log.info("Session connected", context={"backfilled_chats": repaired})
        return CONNECTION_OPEN

    if update.connection == "close":
        if update.loggedOut:
            purge_session_data(db, session_id)
            update_session_state(db, session_id, is_ready=False, qr="", should_disconnect=False)
            db.commit()
            log.info("Session logged out, data purged")
            return CONNECTION_LOGGED_OUT
        update_session_state(db, session_id, is_ready=False)
        db.commit()
        log.info("Connection closed, transport will reconnect")
        return CONNECTION_CLOSED

    db.commit()
    return CONNECTION_PENDING


def _chat_display_name(snapshot: ChatSnapshot, address: str) -> str:
    return snapshot.name or snapshot.subject or address_digits(address)


def _snapshot_time(snapshot: ChatSnapshot) -> Optional[datetime]:
    if not snapshot.conversationTimestamp:
        return None
    return datetime.fromtimestamp(int(snapshot.conversationTimestamp), tz=timezone.utc)


def handle_chats(db: Session, session_id: UUID, chats: Iterable[ChatSnapshot]) -> int:
    log = session_logger("events.chats", session_id)
    saved = 0

    for snapshot in chats:
        address = snapshot.id
        if should_ignore_address(address):
            continue
        try:
            group = is_group_address(address)
            chat, is_new = resolve_chat(
                db,
                session_id,
                address,
                address if is_phone_address(address) else None,
                name=_chat_display_name(snapshot, address),
                chat_type="group" if group else "individual",
                last_message=snapshot.lastMessageText,
                last_message_at=_snapshot_time(snapshot),
            )
            if not is_new and (snapshot.name or snapshot.subject):
                chat.name = _chat_display_name(snapshot, address)
            db.commit()
            saved += 1
        except (ConflictRetryable, OperationalError) as e:
            db.rollback()
            log.warning(f"Chat snapshot dropped: {address}: {e}")
        except Exception as e:
            db.rollback()
            log.error(f"Error saving chat {address}: {e}")

    log.info(f"Synced {saved} chats")
    return saved


def handle_contacts(db: Session, session_id: UUID, contacts: Iterable[ContactSnapshot]) -> int:
    """Rename chats from contact names and learn local-id/phone pairs from contact records."""
    log = session_logger("events.contacts", session_id)
    updated = 0

    for contact in contacts:
        address = contact.id
        if should_ignore_address(address):
            continue
        try:
            phone = None
            if contact.phoneNumber:
                phone = coerce_target_address(contact.phoneNumber)
            elif is_phone_address(address):
                phone = address
            local_id = contact.lid if is_local_id_address(contact.lid) else None
            if local_id is None and is_local_id_address(address):
                local_id = address
            if local_id and phone:
                record_mapping(db, session_id, local_id, phone)

            name = contact.display_name
            if name:
                candidates = {a for a in (address, local_id, phone) if a}
                updated += (
                    db.query(Chat)
                    .filter(Chat.session_id == session_id, Chat.remote_address.in_(candidates))
                    .update({"name": name}, synchronize_session=False)
                )
            db.commit()
        except InvalidAddress as e:
            db.rollback()
            log.warning(f"Contact {address} has an invalid phone number: {e}")
        except Exception as e:
            db.rollback()
            log.error(f"Error updating contact {address}: {e}")

    return updated


async def handle_messages(
    db: Session,
    session_id: UUID,
    messages: Iterable[TransportMessage],
    stream_kind: StreamKind,
    transport: TransportClient,
    responder: AIResponder,
) -> dict:
    log = session_logger("events.messages", session_id)
    counts = {"created": 0, "duplicate": 0, "reconciled": 0, "skipped": 0, "failed": 0}

    for transport_message in messages:
        provider_id = transport_message.key.id
        try:
            result = ingest_message(db, session_id, transport_message, stream_kind)
            db.commit()
        except InvalidAddress as e:
            db.rollback()
            counts["failed"] += 1
            log.warning(f"Rejected message provider={provider_id}: {e}")
            continue
        except (StoreUnavailable, ConflictRetryable) as e:
            db.rollback()
            counts["failed"] += 1
            log.warning(f"Dropped message provider={provider_id} from batch: {e}")
            continue
        except Exception as e:
            db.rollback()
            counts["failed"] += 1
            log.error(f"Error processing message provider={provider_id}: {e}")
            continue

        counts[result.outcome] += 1
        if not result.created or result.message.is_outgoing:
            continue

        try:
            outcome = await handle_inbound_text(db, result.chat, result.message, stream_kind, transport, responder)
            if not outcome.ok:
                log.warning(f"Inbound routing failed for provider={provider_id}: {outcome.error}")
        except Exception as e:
            db.rollback()
            log.error(f"Error routing inbound message provider={provider_id}: {e}")

    log.info(f"Processed {stream_kind.value} batch", context=counts)
    return counts


async def handle_history_set(
    db: Session,
    session_id: UUID,
    history: HistorySet,
    transport: TransportClient,
    responder: AIResponder,
) -> dict:
    handle_chats(db, session_id, history.chats)
    handle_contacts(db, session_id, history.contacts)
    return await handle_messages(db, session_id, history.messages, StreamKind.HISTORY, transport, responder)


async def sync_on_open(db: Session, session_id: UUID, transport: TransportClient) -> dict:
    """Pull group metadata and ask the bridge for a fresh history backfill after connecting."""
    log = session_logger("events.connection", session_id)
    groups = await transport.fetch_groups()
    saved_groups = handle_chats(db, session_id, [group for group in groups if is_group_address(group.id)])
    requested = await transport.request_history(settings.history_chat_limit, settings.history_message_limit)
    if not requested:
        log.warning("History backfill request was not accepted")
    log.info("Post-connect sync", context={"groups": saved_groups, "history_requested": requested})
    return {"groups": saved_groups, "history_requested": requested}


async def handle_event(
    db: Session,
    session_id: UUID,
    event,
    transport: TransportClient,
    responder: AIResponder,
):
    """Dispatch a validated transport event to its handler."""
    kind = event.event
    if kind == "connection.update":
        outcome = handle_connection_update(db, session_id, event.data)
        if outcome == CONNECTION_OPEN:
            try:
                await sync_on_open(db, session_id, transport)
            except Exception as e:
                db.rollback()
                session_logger("events.connection", session_id).error(f"Post-connect sync failed: {e}")
        return outcome
    if kind in ("chats.set", "chats.upsert"):
        return handle_chats(db, session_id, event.data)
    if kind in ("contacts.set", "contacts.upsert"):
        return handle_contacts(db, session_id, event.data)
    if kind == "messages.upsert":
        stream_kind = stream_for_upsert_type(event.data.type)
        return await handle_messages(db, session_id, event.data.messages, stream_kind, transport, responder)
    if kind == "messaging-history.set":
        return await handle_history_set(db, session_id, event.data, transport, responder)
    raise ValueError(f"Unsupported transport event: {kind}")
