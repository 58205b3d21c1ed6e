import asyncio
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

from conftest import PHONE_1
from pydantic import TypeAdapter

from wabridge.models import Message, WhatsAppSession
from wabridge.schemas.transport import TransportEvent
from wabridge.services.outbound_service import queue_outbound_message
from wabridge.services.session_supervisor import SessionSupervisor
from wabridge.services.transport_client import SendReceipt

event_adapter = TypeAdapter(TransportEvent)


def _transport():
    transport = Mock()
    transport.start = AsyncMock()
    transport.logout = AsyncMock()
    transport.close = AsyncMock()
    transport.send_text = AsyncMock(return_value=SendReceipt(provider_message_id="p1", remote_address=PHONE_1))
    transport.fetch_groups = AsyncMock(return_value=[])
    transport.request_history = AsyncMock(return_value=True)
    return transport


def _supervisor(session_factory, responder, transports=None):
    transports = transports if transports is not None else []

    def factory(session_id):
        transport = _transport()
        transports.append(transport)
        return transport

    return SessionSupervisor(session_factory=session_factory, transport_factory=factory, responder=responder)


class TestStartStop:
    def test_start_and_stop(self, session_factory, responder):
        transports = []
        supervisor = _supervisor(session_factory, responder, transports)
        session_id = uuid4()

        async def scenario():
            assert await supervisor.start(session_id) is True
            assert await supervisor.start(session_id) is False
            assert supervisor.is_active(session_id)
            assert await supervisor.stop(session_id, logout=True) is True

        asyncio.run(scenario())

        assert len(transports) == 1
        transports[0].start.assert_awaited_once()
        transports[0].logout.assert_awaited_once()
        transports[0].close.assert_awaited_once()
        assert not supervisor.is_active(session_id)

    def test_failed_start_is_not_active(self, session_factory, responder):
        transports = []
        supervisor = _supervisor(session_factory, responder, transports)
        session_id = uuid4()

        def failing_factory(sid):
            transport = _transport()
            transport.start.side_effect = RuntimeError("bridge unreachable")
            transports.append(transport)
            return transport

        supervisor.transport_factory = failing_factory
        assert asyncio.run(supervisor.start(session_id)) is False
        assert not supervisor.is_active(session_id)
        transports[0].close.assert_awaited_once()

    def test_stop_cancels_in_flight_tasks(self, session_factory, responder):
        supervisor = _supervisor(session_factory, responder)
        session_id = uuid4()

        async def scenario():
            await supervisor.start(session_id)
            handle = supervisor._handles[session_id]
            task = asyncio.create_task(asyncio.sleep(10))
            handle.tasks.add(task)
            await supervisor.stop(session_id)
            await asyncio.sleep(0)
            return task

        task = asyncio.run(scenario())
        assert task.cancelled()

    def test_stop_unknown_session(self, session_factory, responder):
        supervisor = _supervisor(session_factory, responder)
        assert asyncio.run(supervisor.stop(uuid4())) is False


class TestDispatch:
    def test_event_for_inactive_session_dropped(self, session_factory, responder):
        supervisor = _supervisor(session_factory, responder)
        event = event_adapter.validate_python({"event": "connection.update", "data": {"connection": "open"}})

        async def scenario():
            return supervisor.dispatch(uuid4(), event)

        assert asyncio.run(scenario()) is None

    def test_event_processed_in_own_session(self, db, session_id, session_factory, responder):
        db.close()
        supervisor = _supervisor(session_factory, responder)
        event = event_adapter.validate_python({"event": "connection.update", "data": {"connection": "open"}})

        async def scenario():
            await supervisor.start(session_id)
            task = supervisor.dispatch(session_id, event)
            return await task

        assert asyncio.run(scenario()) == "open"
        check = session_factory()
        try:
            assert check.query(WhatsAppSession).filter(WhatsAppSession.id == session_id).one().is_ready is True
        finally:
            check.close()

    def test_logged_out_event_restarts_session(self, db, session_id, session_factory, responder):
        db.close()
        transports = []
        supervisor = _supervisor(session_factory, responder, transports)
        event = event_adapter.validate_python(
            {"event": "connection.update", "data": {"connection": "close", "loggedOut": True}}
        )

        async def scenario():
            await supervisor.start(session_id)
            await supervisor.dispatch(session_id, event)

        asyncio.run(scenario())

        assert len(transports) == 2
        transports[0].close.assert_awaited_once()
        assert supervisor.is_active(session_id)


class TestSyncSessions:
    def test_starts_new_and_tears_down_flagged(self, db, session_factory, responder):
        keep = WhatsAppSession(id=uuid4(), is_ready=True, should_disconnect=False)
        drop = WhatsAppSession(id=uuid4(), is_ready=True, should_disconnect=False)
        db.add_all([keep, drop])
        db.commit()
        keep_id, drop_id = keep.id, drop.id
        db.close()
        supervisor = _supervisor(session_factory, responder)

        asyncio.run(supervisor.sync_sessions())
        assert supervisor.is_active(keep_id) and supervisor.is_active(drop_id)

        flag = session_factory()
        flag.query(WhatsAppSession).filter(WhatsAppSession.id == drop_id).update({"should_disconnect": True})
        flag.commit()
        flag.close()

        asyncio.run(supervisor.sync_sessions())

        assert supervisor.is_active(keep_id)
        assert not supervisor.is_active(drop_id)
        check = session_factory()
        try:
            assert check.query(WhatsAppSession).filter(WhatsAppSession.id == drop_id).count() == 0
        finally:
            check.close()


class TestDispatchOutbound:
    def test_sends_pending_rows_of_active_sessions(self, db, session_id, session_factory, responder):
        message, _, _ = queue_outbound_message(db, session_id, "201234567890", "hello", "req-1")
        message_id = message.id
        db.commit()
        db.close()
        transports = []
        supervisor = _supervisor(session_factory, responder, transports)

        async def scenario():
            await supervisor.start(session_id)
            return await supervisor.dispatch_outbound(limit=10)

        assert asyncio.run(scenario()) == {"sent": 1}
        transports[0].send_text.assert_awaited_once_with(PHONE_1, "hello")
        check = session_factory()
        try:
            assert check.query(Message).filter(Message.id == message_id).one().status == "sent"
        finally:
            check.close()

    def test_skips_sessions_without_transport(self, db, session_id, session_factory, responder):
        queue_outbound_message(db, session_id, "201234567890", "hello", "req-1")
        db.commit()
        db.close()
        supervisor = _supervisor(session_factory, responder)

        assert asyncio.run(supervisor.dispatch_outbound(limit=10)) == {}
