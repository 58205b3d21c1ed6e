import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from wabridge.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("session_id", "provider_message_id", name="uq_messages_session_provider_id"),
        UniqueConstraint("session_id", "client_request_id", name="uq_messages_session_client_request_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    chat_id = Column(Uuid(as_uuid=True), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    remote_address = Column(Text, nullable=False)
    sender = Column(Text, nullable=False)  # agent, user
    body = Column(Text)
    media_kind = Column(Text)  # image, video, audio, sticker, document
    media_url = Column(Text)
    is_outgoing = Column(Boolean, nullable=False, default=False)
    status = Column(Text, nullable=False)  # pending, sending, sent, delivered, read, failed
    client_request_id = Column(Text)
    provider_message_id = Column(Text)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    claimed_at = Column(DateTime(timezone=True))  # set when a worker takes a pending row
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    chat = relationship("Chat", back_populates="messages")
