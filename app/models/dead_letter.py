from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text, Uuid, func
from sqlalchemy.schema import Index, UniqueConstraint

from app.database import Base
from app.models.event_outbox import EventIdType, PayloadType


class DeadLetterEvent(Base):
    __tablename__ = "event_outbox_dead_letter"

    id = Column(EventIdType, primary_key=True, autoincrement=True)

    original_event_id = Column(BigInteger, nullable=False)
    organization_id = Column(Uuid, nullable=False, index=True)

    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    payload = Column(PayloadType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False)
    delivery_attempts = Column(Integer, nullable=False)
    failure_reason = Column(Text, nullable=False)
    moved_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("original_event_id", name="uq_event_outbox_dead_letter_original"),
        Index("ix_event_outbox_dead_letter_moved_at", "moved_at"),
        {"sqlite_autoincrement": True},
    )
