from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.schema import Index

from app.database import Base

EVENT_TYPES = ("created", "updated", "deleted")

# Autoincrement needs a plain INTEGER PRIMARY KEY on SQLite.
EventIdType = BigInteger().with_variant(Integer(), "sqlite")
PayloadType = JSON().with_variant(JSONB(), "postgresql")


class OutboxEvent(Base):
    __tablename__ = "event_outbox"

    event_id = Column(EventIdType, primary_key=True, autoincrement=True)

    organization_id = Column(Uuid, nullable=False)

    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)

    payload = Column(PayloadType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    delivery_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_event_outbox_org_event", "organization_id", "event_id"),
        Index("ix_event_outbox_delivered_at", "delivered_at"),
        Index("ix_event_outbox_attempts", "delivery_attempts"),
        # Without AUTOINCREMENT SQLite hands out max(rowid)+1 again after the top
        # rows are pruned or dead-lettered; ids must never be reused.
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return (
            f"OutboxEvent(event_id={self.event_id!r}, organization_id={self.organization_id!r}, "
            f"event_type={self.event_type!r}, entity_type={self.entity_type!r})"
        )
