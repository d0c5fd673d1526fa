from sqlalchemy import BigInteger, Column, DateTime, String, Uuid, func

from app.database import Base


class OutboxCursor(Base):
    __tablename__ = "event_outbox_cursor"

    processor_name = Column(String, primary_key=True)
    organization_id = Column(Uuid, primary_key=True)

    # 0 means nothing has been delivered for this (processor, tenant) yet.
    last_processed_event_id = Column(BigInteger, nullable=False, default=0, server_default="0")
    last_processed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    events_processed_count = Column(BigInteger, nullable=False, default=0, server_default="0")
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
