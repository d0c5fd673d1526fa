import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.models.dead_letter import DeadLetterEvent
from app.models.event_outbox import OutboxEvent

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_REASON = "Max delivery attempts exceeded"


@dataclass(frozen=True)
class DeadLetterResult:
    moved_count: int
    organization_ids: List[uuid.UUID] = field(default_factory=list)


@dataclass(frozen=True)
class DeadLetterPruneResult:
    deleted_count: int
    execution_time_ms: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def migrate_to_dead_letter(
    *,
    max_attempts: int = 3,
    grace_seconds: int = 0,
    batch_size: int = 1000,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> DeadLetterResult:
    """
    Moves poison events out of the live outbox.

    Candidates: delivered_at IS NULL AND delivery_attempts >= max_attempts,
    created before ``now - grace_seconds``. Each is copied into the dead-letter
    table and deleted from the outbox in the same transaction. Rows locked by
    another migrator are skipped; re-running finds nothing already moved.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    if now is None:
        now = _utcnow()

    try:
        q = (
            db.query(OutboxEvent)
            .filter(OutboxEvent.delivered_at.is_(None))
            .filter(OutboxEvent.delivery_attempts >= int(max_attempts))
        )
        if grace_seconds and int(grace_seconds) > 0:
            q = q.filter(OutboxEvent.created_at < now - timedelta(seconds=int(grace_seconds)))

        rows = (
            q.order_by(OutboxEvent.event_id.asc())
            .with_for_update(skip_locked=True)
            .limit(int(batch_size))
            .all()
        )

        if not rows:
            if owns_db:
                db.commit()
            return DeadLetterResult(moved_count=0, organization_ids=[])

        already = {
            r[0]
            for r in db.query(DeadLetterEvent.original_event_id)
            .filter(DeadLetterEvent.original_event_id.in_([int(r.event_id) for r in rows]))
            .all()
        }

        orgs: List[uuid.UUID] = []
        for row in rows:
            if int(row.event_id) not in already:
                db.add(
                    DeadLetterEvent(
                        original_event_id=int(row.event_id),
                        organization_id=row.organization_id,
                        event_type=row.event_type,
                        entity_type=row.entity_type,
                        entity_id=row.entity_id,
                        payload=dict(row.payload or {}),
                        created_at=row.created_at,
                        delivery_attempts=int(row.delivery_attempts),
                        failure_reason=row.last_error or DEFAULT_FAILURE_REASON,
                        moved_at=now,
                    )
                )
            if row.organization_id not in orgs:
                orgs.append(row.organization_id)

        db.flush()
        db.execute(
            delete(OutboxEvent)
            .where(OutboxEvent.event_id.in_([int(r.event_id) for r in rows]))
            .execution_options(synchronize_session=False)
        )
        for row in rows:
            db.expunge(row)

        if owns_db:
            db.commit()

        logger.warning(
            "Outbox events moved to dead letter",
            extra={
                "moved_count": len(rows),
                "organization_ids": [str(o) for o in orgs],
                "max_attempts": int(max_attempts),
            },
        )
        return DeadLetterResult(moved_count=len(rows), organization_ids=orgs)

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def list_dead_letters(
    db: Session,
    *,
    organization_id: Optional[uuid.UUID] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[DeadLetterEvent]:
    q = db.query(DeadLetterEvent)
    if organization_id is not None:
        q = q.filter(DeadLetterEvent.organization_id == organization_id)
    return (
        q.order_by(DeadLetterEvent.moved_at.desc(), DeadLetterEvent.id.desc())
        .offset(int(offset))
        .limit(int(limit))
        .all()
    )


def prune_dead_letters(
    *,
    retention_hours: int = 168,
    max_batch: int = 5000,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> DeadLetterPruneResult:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    if now is None:
        now = _utcnow()

    started = time.monotonic()
    cutoff = now - timedelta(hours=int(retention_hours))

    try:
        ids = [
            r[0]
            for r in db.query(DeadLetterEvent.id)
            .filter(DeadLetterEvent.moved_at < cutoff)
            .order_by(DeadLetterEvent.moved_at.asc())
            .with_for_update(skip_locked=True)
            .limit(int(max_batch))
            .all()
        ]

        deleted = 0
        if ids:
            result = db.execute(
                delete(DeadLetterEvent)
                .where(DeadLetterEvent.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            deleted = int(result.rowcount or 0)

        if owns_db:
            db.commit()

        return DeadLetterPruneResult(
            deleted_count=deleted,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
