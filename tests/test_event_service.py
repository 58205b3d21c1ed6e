import asyncio
from datetime import datetime, timezone

from conftest import GROUP_1, LID_1, PHONE_1, PHONE_2
from pydantic import TypeAdapter

from wabridge.models import Chat, JidMapping, Message, WhatsAppSession
from wabridge.schemas.transport import ChatSnapshot, ConnectionUpdate, ContactSnapshot, TransportEvent
from wabridge.services.chat_resolver import resolve_chat
from wabridge.services.event_service import (
    CONNECTION_CLOSED,
    CONNECTION_LOGGED_OUT,
    CONNECTION_OPEN,
    handle_chats,
    handle_connection_update,
    handle_contacts,
    handle_event,
    handle_messages,
    sync_on_open,
)
from wabridge.services.ingest_service import StreamKind

event_adapter = TypeAdapter(TransportEvent)


def _session(db, session_id):
    db.expire_all()
    return db.query(WhatsAppSession).filter(WhatsAppSession.id == session_id).one()


class TestConnectionUpdate:
    def test_pairing_code_stored(self, db, session_id):
        handle_connection_update(db, session_id, ConnectionUpdate(connection="connecting", qr="2@abc"))

        session = _session(db, session_id)
        assert session.qr == "2@abc"
        assert session.is_ready is False

    def test_open_marks_ready_and_backfills(self, db, session_id):
        chat, _ = resolve_chat(db, session_id, LID_1)
        db.add(JidMapping(session_id=session_id, local_id_address=LID_1, phone_address=PHONE_1))
        db.commit()

        outcome = handle_connection_update(db, session_id, ConnectionUpdate(connection="open"))

        assert outcome == CONNECTION_OPEN
        assert _session(db, session_id).is_ready is True
        assert db.query(Chat).filter(Chat.id == chat.id).one().stable_phone_address == PHONE_1

    def test_close_without_logout_keeps_data(self, db, session_id):
        resolve_chat(db, session_id, PHONE_1)
        db.commit()

        outcome = handle_connection_update(db, session_id, ConnectionUpdate(connection="close"))

        assert outcome == CONNECTION_CLOSED
        assert db.query(Chat).count() == 1
        assert _session(db, session_id).is_ready is False

    def test_logged_out_purges_session_data(self, db, session_id, make_message, transport, responder):
        asyncio.run(
            handle_messages(db, session_id, [make_message(PHONE_1, "hi")], StreamKind.HISTORY, transport, responder)
        )
        db.add(JidMapping(session_id=session_id, local_id_address=LID_1, phone_address=PHONE_1))
        db.commit()

        outcome = handle_connection_update(db, session_id, ConnectionUpdate(connection="close", loggedOut=True))

        assert outcome == CONNECTION_LOGGED_OUT
        assert db.query(Message).count() == 0
        assert db.query(Chat).count() == 0
        assert db.query(JidMapping).count() == 0
        assert _session(db, session_id).is_ready is False


class TestChatsAndContacts:
    def test_chat_snapshots_create_chats(self, db, session_id):
        saved = handle_chats(
            db,
            session_id,
            [
                ChatSnapshot(id=PHONE_1, name="Omar"),
                ChatSnapshot(id="status@broadcast"),
                ChatSnapshot(id="120363041234567890@g.us", subject="Team"),
            ],
        )

        assert saved == 2
        names = {chat.remote_address: chat.name for chat in db.query(Chat).all()}
        assert names == {PHONE_1: "Omar", "120363041234567890@g.us": "Team"}

    def test_chat_snapshot_renames_existing_chat(self, db, session_id):
        handle_chats(db, session_id, [ChatSnapshot(id=PHONE_1)])
        handle_chats(db, session_id, [ChatSnapshot(id=PHONE_1, name="Omar")])

        assert db.query(Chat).one().name == "Omar"

    def test_snapshot_preview_kept_against_older_history(self, db, session_id, make_message, transport, responder):
        handle_chats(
            db,
            session_id,
            [ChatSnapshot(id=PHONE_1, lastMessageText="latest", conversationTimestamp=1700000500)],
        )

        asyncio.run(
            handle_messages(
                db,
                session_id,
                [make_message(PHONE_1, "earlier", timestamp=1700000000)],
                StreamKind.HISTORY,
                transport,
                responder,
            )
        )

        chat = db.query(Chat).one()
        assert chat.last_message == "latest"
        assert chat.last_message_at.replace(tzinfo=timezone.utc) == datetime.fromtimestamp(1700000500, tz=timezone.utc)

    def test_contact_with_lid_and_phone_learns_mapping(self, db, session_id):
        resolve_chat(db, session_id, PHONE_1)
        db.commit()

        handle_contacts(db, session_id, [ContactSnapshot(id=LID_1, phoneNumber="201234567890", notify="Omar")])

        chat = db.query(Chat).one()
        assert chat.remote_address == LID_1
        assert chat.name == "Omar"
        assert db.query(JidMapping).one().phone_address == PHONE_1

    def test_contact_name_only(self, db, session_id):
        resolve_chat(db, session_id, PHONE_2)
        db.commit()

        updated = handle_contacts(db, session_id, [ContactSnapshot(id=PHONE_2, name="Sara")])

        assert updated == 1
        assert db.query(Chat).one().name == "Sara"


class TestHandleMessages:
    def test_bad_message_does_not_abort_batch(self, db, session_id, make_message, transport, responder):
        batch = [
            make_message(PHONE_1, "one", message_id="1"),
            make_message("someone@example.com", "bad", message_id="2"),
            make_message(PHONE_2, "three", message_id="3"),
        ]

        counts = asyncio.run(handle_messages(db, session_id, batch, StreamKind.HISTORY, transport, responder))

        assert counts["created"] == 2
        assert counts["failed"] == 1
        assert db.query(Message).count() == 2

    def test_history_replay_twice_gives_same_counts_and_no_sends(
        self, db, session_id, make_message, transport, responder
    ):
        batch = [make_message(PHONE_1, f"msg {i}", message_id=f"h{i}", timestamp=1700000000 + i) for i in range(3)]

        asyncio.run(handle_messages(db, session_id, batch, StreamKind.HISTORY, transport, responder))
        first = (db.query(Message).count(), db.query(Chat).count())
        counts = asyncio.run(handle_messages(db, session_id, batch, StreamKind.HISTORY, transport, responder))

        assert (db.query(Message).count(), db.query(Chat).count()) == first == (3, 1)
        assert counts["duplicate"] == 3
        transport.send_text.assert_not_awaited()
        responder.respond.assert_not_called()

    def test_live_message_routed_to_ai(self, db, session_id, make_message, transport, responder):
        asyncio.run(
            handle_messages(db, session_id, [make_message(PHONE_1, "hello")], StreamKind.LIVE, transport, responder)
        )

        transport.send_text.assert_awaited_once_with(PHONE_1, "How can I help?")

    def test_duplicate_live_message_not_routed_twice(self, db, session_id, make_message, transport, responder):
        message = make_message(PHONE_1, "hello", message_id="same")

        asyncio.run(handle_messages(db, session_id, [message, message], StreamKind.LIVE, transport, responder))

        assert transport.send_text.await_count == 1


class TestHandleEvent:
    def test_messages_upsert_notify_is_live(self, db, session_id, transport, responder):
        event = event_adapter.validate_python(
            {
                "event": "messages.upsert",
                "data": {
                    "type": "notify",
                    "messages": [
                        {
                            "key": {"remoteJid": PHONE_1, "id": "ev-1", "fromMe": False},
                            "message": {"conversation": "hello"},
                            "messageTimestamp": 1700000000,
                        }
                    ],
                },
            }
        )

        counts = asyncio.run(handle_event(db, session_id, event, transport, responder))

        assert counts["created"] == 1
        responder.respond.assert_called_once()

    def test_append_batch_is_not_routed(self, db, session_id, transport, responder):
        event = event_adapter.validate_python(
            {
                "event": "messages.upsert",
                "data": {
                    "type": "append",
                    "messages": [
                        {
                            "key": {"remoteJid": PHONE_1, "id": "ev-2", "fromMe": False},
                            "message": {"conversation": "hello"},
                        }
                    ],
                },
            }
        )

        asyncio.run(handle_event(db, session_id, event, transport, responder))

        responder.respond.assert_not_called()

    def test_history_set(self, db, session_id, transport, responder):
        event = event_adapter.validate_python(
            {
                "event": "messaging-history.set",
                "data": {
                    "chats": [{"id": PHONE_1, "name": "Omar"}],
                    "contacts": [{"id": LID_1, "phoneNumber": PHONE_1}],
                    "messages": [
                        {
                            "key": {"remoteJid": LID_1, "id": "old-1", "fromMe": False},
                            "message": {"conversation": "from history"},
                            "messageTimestamp": 1700000000,
                        }
                    ],
                },
            }
        )

        asyncio.run(handle_event(db, session_id, event, transport, responder))

        chat = db.query(Chat).one()
        assert chat.remote_address == LID_1
        assert chat.stable_phone_address == PHONE_1
        assert db.query(Message).one().chat_id == chat.id
        transport.send_text.assert_not_awaited()

    def test_connection_event(self, db, session_id, transport, responder):
        event = event_adapter.validate_python({"event": "connection.update", "data": {"connection": "open"}})

        assert asyncio.run(handle_event(db, session_id, event, transport, responder)) == CONNECTION_OPEN

    def test_connection_open_syncs_groups_and_requests_history(self, db, session_id, transport, responder):
        transport.fetch_groups.return_value = [ChatSnapshot(id=GROUP_1, subject="Family")]
        event = event_adapter.validate_python({"event": "connection.update", "data": {"connection": "open"}})

        asyncio.run(handle_event(db, session_id, event, transport, responder))

        group = db.query(Chat).filter(Chat.remote_address == GROUP_1).one()
        assert group.chat_type == "group"
        assert group.name == "Family"
        transport.request_history.assert_awaited_once_with(200, 50)

    def test_failed_sync_keeps_connection_open(self, db, session_id, transport, responder):
        transport.fetch_groups.side_effect = RuntimeError("bridge restarting")
        event = event_adapter.validate_python({"event": "connection.update", "data": {"connection": "open"}})

        assert asyncio.run(handle_event(db, session_id, event, transport, responder)) == CONNECTION_OPEN
        assert _session(db, session_id).is_ready is True
        transport.request_history.assert_not_awaited()

    def test_connection_close_does_not_sync(self, db, session_id, transport, responder):
        event = event_adapter.validate_python({"event": "connection.update", "data": {"connection": "close"}})

        asyncio.run(handle_event(db, session_id, event, transport, responder))

        transport.fetch_groups.assert_not_awaited()
        transport.request_history.assert_not_awaited()


class TestSyncOnOpen:
    def test_non_group_snapshots_skipped(self, db, session_id, transport):
        transport.fetch_groups.return_value = [
            ChatSnapshot(id=GROUP_1, subject="Team"),
            ChatSnapshot(id=PHONE_1, name="Not a group"),
        ]

        outcome = asyncio.run(sync_on_open(db, session_id, transport))

        assert outcome == {"groups": 1, "history_requested": True}
        assert db.query(Chat).count() == 1

    def test_rejected_history_request_is_reported(self, db, session_id, transport):
        transport.request_history.return_value = False

        outcome = asyncio.run(sync_on_open(db, session_id, transport))

        assert outcome == {"groups": 0, "history_requested": False}
