from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Text, Uuid

from wabridge.database import Base


class JidMapping(Base):
    __tablename__ = "jid_mappings"

    session_id = Column(Uuid(as_uuid=True), primary_key=True)
    local_id_address = Column(Text, primary_key=True)
    phone_address = Column(Text, nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
