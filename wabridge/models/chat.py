import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from wabridge.database import Base


class Chat(Base):
    __tablename__ = "chats"
    __table_args__ = (
        UniqueConstraint("session_id", "remote_address", name="uq_chats_session_remote_address"),
        UniqueConstraint("session_id", "stable_phone_address", name="uq_chats_session_stable_phone"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    remote_address = Column(Text, nullable=False)  # canonical address, may be rewritten
    stable_phone_address = Column(Text)  # set once a phone-form address is known
    name = Column(Text)
    chat_type = Column(Text, nullable=False, default="individual")  # individual, group
    status = Column(Text, nullable=False, default="inbox")  # inbox, done, archived
    mode = Column(Text, nullable=False, default="ai")  # ai, human
    needs_human = Column(Boolean, nullable=False, default=False)
    is_muted = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    assigned_to = Column(Text)
    last_message = Column(Text)
    last_message_at = Column(DateTime(timezone=True))
    unread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    messages = relationship("Message", back_populates="chat", passive_deletes=True)
