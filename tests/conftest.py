import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("OPENAI_API_KEY", "")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import wabridge.models  # noqa: F401
from wabridge.database import Base, enable_sqlite_savepoints
from wabridge.models import WhatsAppSession
from wabridge.schemas.transport import TransportMessage
from wabridge.services.ai_service import AIReply
from wabridge.services.transport_client import SendReceipt

PHONE_1 = "201234567890@s.whatsapp.net"
PHONE_2 = "201098765432@s.whatsapp.net"
LID_1 = "123456789012345@lid"
LID_2 = "987654321098765@lid"
GROUP_1 = "120363041234567890@g.us"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """Real SQLite session; savepoints behave as on PostgreSQL."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def session_id(db):
    """A connected tenant session."""
    row = WhatsAppSession(id=uuid4(), is_ready=True, should_disconnect=False)
    db.add(row)
    db.commit()
    return row.id


@pytest.fixture
def transport():
    mock = Mock()
    mock.start = AsyncMock()
    mock.logout = AsyncMock()
    mock.close = AsyncMock()
    mock.send_text = AsyncMock(return_value=SendReceipt(provider_message_id="sent-1", remote_address=None))
    mock.fetch_groups = AsyncMock(return_value=[])
    mock.request_history = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def responder():
    mock = Mock()
    mock.respond.return_value = AIReply(reply="How can I help?", handoff=False)
    return mock


@pytest.fixture
def make_message():
    """Build a transport message the way the bridge posts it."""

    def _make(
        remote_jid,
        text="hello",
        message_id="m-1",
        from_me=False,
        timestamp=None,
        alt=None,
        push_name=None,
        content=None,
    ):
        if timestamp is None:
            timestamp = int(datetime.now(timezone.utc).timestamp())
        key = {"remoteJid": remote_jid, "id": message_id, "fromMe": from_me}
        if alt:
            key["remoteJidAlt"] = alt
        if content is None:
            content = {"conversation": text} if text is not None else None
        return TransportMessage.model_validate(
            {
                "key": key,
                "message": content,
                "messageTimestamp": timestamp,
                "pushName": push_name,
            }
        )

    return _make



@pytest.fixture
def file_session_factory(tmp_path):
    """Separate connections on one SQLite file, for tests where two sessions write concurrently.

    The driver runs in autocommit mode and only SAVEPOINT opens a transaction, so a session
    that has read but not yet written holds no lock that would block the other one.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _autocommit(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def run_before_first_flush():
    """Run a callback once, right before the given session's first flush."""

    def _register(session, callback):
        state = {"done": False}

        @event.listens_for(session, "before_flush")
        def _once(flushing_session, flush_context, instances):
            if not state["done"]:
                state["done"] = True
                callback()

    return _register
