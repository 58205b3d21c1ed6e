import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid

from wabridge.database import Base


class WhatsAppSession(Base):
    __tablename__ = "whatsapp_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(Text)
    qr = Column(Text)  # latest pairing code, cleared once connected
    is_ready = Column(Boolean, nullable=False, default=False)
    should_disconnect = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
