import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Uuid

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CatalogingJob(Base):
    __tablename__ = "cataloging_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)

    status = Column(String, nullable=False, default="pending")
    source_type = Column(String, nullable=True)

    completed_at = Column(DateTime(timezone=True), nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    # Bulk fields that must never end up in an outbox payload.
    notes = Column(String, nullable=True)
