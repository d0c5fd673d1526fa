from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.models.outbox_cursor import OutboxCursor

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _insert_for(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported dialect for cursor store: {name}")


def get_or_create_cursor(
    db: Session,
    processor_name: str,
    organization_id: uuid.UUID,
    *,
    now: Optional[datetime] = None,
) -> OutboxCursor:
    """
    Insert-if-absent, then read. Two processors racing to create the same
    cursor both end up reading the single surviving row.
    """
    if now is None:
        now = _utcnow()

    insert = _insert_for(db)
    stmt = (
        insert(OutboxCursor.__table__)
        .values(
            processor_name=processor_name,
            organization_id=organization_id,
            last_processed_event_id=0,
            last_processed_at=now,
            events_processed_count=0,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["processor_name", "organization_id"])
    )
    db.execute(stmt)

    cursor = (
        db.query(OutboxCursor)
        .filter(
            OutboxCursor.processor_name == processor_name,
            OutboxCursor.organization_id == organization_id,
        )
        .one()
    )
    return cursor


def lock_cursor(
    db: Session,
    processor_name: str,
    organization_id: uuid.UUID,
) -> Optional[OutboxCursor]:
    """
    Row lock on the cursor with SKIP LOCKED. ``None`` means another session
    holds it (or the cursor does not exist yet): the caller does no work.
    The lock lasts until the caller's transaction ends.
    """
    return (
        db.query(OutboxCursor)
        .filter(
            OutboxCursor.processor_name == processor_name,
            OutboxCursor.organization_id == organization_id,
        )
        .populate_existing()
        .with_for_update(skip_locked=True)
        .one_or_none()
    )


def advance_cursor(
    db: Session,
    processor_name: str,
    organization_id: uuid.UUID,
    event_id: int,
    *,
    processed_count: int = 0,
    now: Optional[datetime] = None,
) -> bool:
    """
    Forward-only. Returns False if the cursor is missing or already at/after
    ``event_id``; the row is left untouched in that case.
    """
    if now is None:
        now = _utcnow()

    result = db.execute(
        update(OutboxCursor)
        .where(
            OutboxCursor.processor_name == processor_name,
            OutboxCursor.organization_id == organization_id,
            OutboxCursor.last_processed_event_id < int(event_id),
        )
        .values(
            last_processed_event_id=int(event_id),
            last_processed_at=now,
            events_processed_count=OutboxCursor.events_processed_count + int(processed_count),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    moved = result.rowcount == 1
    if not moved:
        logger.warning(
            "Cursor not advanced",
            extra={
                "processor_name": processor_name,
                "organization_id": str(organization_id),
                "event_id": int(event_id),
            },
        )
    return moved


def list_cursors(db: Session, organization_id: Optional[uuid.UUID] = None) -> List[OutboxCursor]:
    q = db.query(OutboxCursor)
    if organization_id is not None:
        q = q.filter(OutboxCursor.organization_id == organization_id)
    return q.order_by(OutboxCursor.processor_name.asc(), OutboxCursor.organization_id.asc()).all()
