import uuid

from sqlalchemy import Column, DateTime, String, Uuid

from app.database import Base


class Flag(Base):
    __tablename__ = "flags"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)

    status = Column(String, nullable=False, default="open")
    flag_type = Column(String, nullable=False)
    description = Column(String, nullable=True)

    resolved_at = Column(DateTime(timezone=True), nullable=True)
