"""Owns one transport handle per active tenant session.

Each transport event runs as its own asyncio task with its own DB session; the
session id is passed explicitly to every pipeline call.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wabridge.config import settings
from wabridge.database import SessionLocal
from wabridge.logging_config import get_logger, session_logger
from wabridge.models import WhatsAppSession
from wabridge.services.ai_service import AIResponder
from wabridge.services.event_service import CONNECTION_LOGGED_OUT, handle_event
from wabridge.services.outbound_service import (
    claim_pending_messages,
    dispatch_pending_message,
    release_stale_sending,
)
from wabridge.services.session_service import list_sessions, purge_session_data
from wabridge.services.transport_client import BridgeTransport, TransportClient

logger = get_logger("session_supervisor")


@dataclass
class SessionHandle:
    session_id: UUID
    transport: TransportClient
    tasks: set = field(default_factory=set)


class SessionSupervisor:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        transport_factory: Callable[[UUID], TransportClient] = BridgeTransport,
        responder: Optional[AIResponder] = None,
    ):
        self.session_factory = session_factory
        self.transport_factory = transport_factory
        self.responder = responder or AIResponder.from_settings()
        self._handles: dict[UUID, SessionHandle] = {}
        self._sending: set[UUID] = set()

    def is_active(self, session_id: UUID) -> bool:
        return session_id in self._handles

    def get_transport(self, session_id: UUID) -> Optional[TransportClient]:
        handle = self._handles.get(session_id)
        return handle.transport if handle else None

    @property
    def active_sessions(self) -> list[UUID]:
        return list(self._handles)

    async def start(self, session_id: UUID) -> bool:
        if session_id in self._handles:
            logger.info(f"Session already running, skipping: {session_id}")
            return False

        transport = self.transport_factory(session_id)
        self._handles[session_id] = SessionHandle(session_id=session_id, transport=transport)
        try:
            await transport.start()
        except Exception as e:
            logger.error(f"Error starting session {session_id}: {e}")
            self._handles.pop(session_id, None)
            await transport.close()
            return False

        logger.info(f"Started session {session_id}")
        return True

    async def stop(self, session_id: UUID, *, logout: bool = False, purge: bool = False) -> bool:
        """Tear a session down; in-flight event tasks are cancelled, late writes are harmless."""
        handle = self._handles.pop(session_id, None)
        if handle is None:
            return False

        current = asyncio.current_task()
        for task in list(handle.tasks):
            if task is not current:
                task.cancel()

        if logout:
            await handle.transport.logout()
        await handle.transport.close()

        if purge:
            db = self.session_factory()
            try:
                purge_session_data(db, session_id)
                db.commit()
            finally:
                db.close()

        logger.info(f"Stopped session {session_id} (logout={logout}, purge={purge})")
        return True

    def dispatch(self, session_id: UUID, event) -> Optional[asyncio.Task]:
        """Schedule one event for processing. Events for unknown sessions are dropped."""
        handle = self._handles.get(session_id)
        if handle is None:
            logger.warning(f"Event {event.event} for inactive session {session_id} dropped")
            return None

        task = asyncio.create_task(self._run_event(handle, event))
        handle.tasks.add(task)
        task.add_done_callback(handle.tasks.discard)
        return task

    async def _run_event(self, handle: SessionHandle, event):
        log = session_logger("session_supervisor", handle.session_id)
        db = self.session_factory()
        try:
            result = await handle_event(db, handle.session_id, event, handle.transport, self.responder)
        except asyncio.CancelledError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            log.error(f"Event {event.event} failed: {e}")
            return None
        finally:
            db.close()

        if result == CONNECTION_LOGGED_OUT:
            # Restart so the transport can present a fresh pairing code.
            await self.stop(handle.session_id)
            await self.start(handle.session_id)
        return result

    async def sync_sessions(self) -> None:
        """Start sessions present in the store, tear down the ones flagged should_disconnect."""
        db = self.session_factory()
        try:
            rows = [(row.id, row.should_disconnect) for row in list_sessions(db)]
        finally:
            db.close()

        for session_id, should_disconnect in rows:
            if should_disconnect:
                if self.is_active(session_id):
                    await self.stop(session_id, logout=True, purge=True)
                    self._delete_session_row(session_id)
            elif not self.is_active(session_id):
                await self.start(session_id)

    def _delete_session_row(self, session_id: UUID) -> None:
        db = self.session_factory()
        try:
            db.query(WhatsAppSession).filter(WhatsAppSession.id == session_id).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    async def dispatch_outbound(self, limit: int = 10) -> dict:
        """Send queued rows for sessions with a live transport."""
        results: dict[str, int] = {}
        db = self.session_factory()
        try:
            release_stale_sending(db, stale_seconds=settings.outbound_stale_sending_seconds)
            rows = claim_pending_messages(db, limit=limit)
            for message in rows:
                transport = self.get_transport(message.session_id)
                if transport is None or message.id in self._sending:
                    continue
                self._sending.add(message.id)
                try:
                    outcome = await dispatch_pending_message(db, message, transport)
                except Exception as e:
                    db.rollback()
                    logger.error(f"Outbound dispatch error for {message.id}: {e}")
                    outcome = "error"
                finally:
                    self._sending.discard(message.id)
                results[outcome] = results.get(outcome, 0) + 1
        finally:
            db.close()
        return results

    async def shutdown(self) -> None:
        for session_id in list(self._handles):
            await self.stop(session_id)


_supervisor: Optional[SessionSupervisor] = None


def get_supervisor() -> SessionSupervisor:
    """Process-wide supervisor, created on first use."""
    global _supervisor
    if _supervisor is None:
        _supervisor = SessionSupervisor()
    return _supervisor
