import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.models.event_outbox import OutboxEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PruneResult:
    deleted_count: int
    execution_time_ms: int
    oldest_delivered_age_hours: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def prune_delivered(
    *,
    retention_hours: int = 72,
    max_batch: int = 5000,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> PruneResult:
    """
    Deletes delivered events older than the retention window, at most
    ``max_batch`` rows per call.

    The filter requires delivered_at IS NOT NULL, so an undelivered event is
    never a candidate regardless of its age.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    if now is None:
        now = _utcnow()
    now = _to_utc_aware(now)

    started = time.monotonic()
    cutoff = now - timedelta(hours=int(retention_hours))

    try:
        ids = [
            r[0]
            for r in db.query(OutboxEvent.event_id)
            .filter(OutboxEvent.delivered_at.isnot(None))
            .filter(OutboxEvent.delivered_at < cutoff)
            .order_by(OutboxEvent.delivered_at.asc())
            .with_for_update(skip_locked=True)
            .limit(int(max_batch))
            .all()
        ]

        deleted = 0
        if ids:
            res = db.execute(
                delete(OutboxEvent)
                .where(OutboxEvent.event_id.in_(ids))
                .where(OutboxEvent.delivered_at.isnot(None))
                .execution_options(synchronize_session=False)
            )
            deleted = int(res.rowcount or 0)

        oldest = (
            db.query(func.min(OutboxEvent.delivered_at))
            .filter(OutboxEvent.delivered_at.isnot(None))
            .scalar()
        )
        oldest_age_hours = 0.0
        if oldest is not None:
            oldest_age_hours = max(0.0, (now - _to_utc_aware(oldest)).total_seconds() / 3600.0)

        if owns_db:
            db.commit()

        result = PruneResult(
            deleted_count=deleted,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            oldest_delivered_age_hours=round(oldest_age_hours, 3),
        )
        logger.info(
            "Delivered outbox events pruned",
            extra={
                "deleted_count": result.deleted_count,
                "execution_time_ms": result.execution_time_ms,
                "retention_hours": int(retention_hours),
            },
        )
        return result

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
