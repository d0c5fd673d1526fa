from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import case, extract, func, select
from sqlalchemy.orm import Session

from app.models.dead_letter import DeadLetterEvent
from app.models.event_outbox import OutboxEvent
from app.models.outbox_cursor import OutboxCursor

# Rate and latency aggregates only look at recent rows; owed-event counts do not.
STATS_WINDOW = timedelta(days=7)
TENANT_WINDOW = timedelta(hours=24)
RECENT_INTERVAL = timedelta(hours=1)


@dataclass(frozen=True)
class HealthMetrics:
    undelivered_events: int
    oldest_undelivered_age_seconds: int
    avg_delivery_seconds: float
    events_last_hour: int
    retry_events: int
    dead_letters_last_hour: int
    dead_letters_total: int


@dataclass(frozen=True)
class TenantMetrics:
    organization_id: uuid.UUID
    total_events: int
    undelivered_events: int
    retry_events: int
    oldest_undelivered_age_seconds: int
    avg_delivery_seconds: float
    dead_letters_last_hour: int


@dataclass(frozen=True)
class CursorHealth:
    processor_name: str
    organization_id: uuid.UUID
    last_processed_event_id: int
    last_processed_at: datetime
    events_processed_count: int
    cursor_lag_seconds: int
    events_behind_cursor: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _delivery_seconds(db: Session):
    """SQL expression for delivered_at - created_at in seconds."""
    if db.get_bind().dialect.name == "sqlite":
        return (func.julianday(OutboxEvent.delivered_at) - func.julianday(OutboxEvent.created_at)) * 86400.0
    return extract("epoch", OutboxEvent.delivered_at - OutboxEvent.created_at)


def _age_seconds(oldest: Optional[datetime], now: datetime) -> int:
    if oldest is None:
        return 0
    return max(0, int((now - _to_utc_aware(oldest)).total_seconds()))


def _count_if(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def health_metrics(db: Session, *, now: Optional[datetime] = None) -> HealthMetrics:
    now = _to_utc_aware(now or _utcnow())
    window_start = now - STATS_WINDOW
    hour_ago = now - RECENT_INTERVAL

    owed_count, oldest_owed = (
        db.query(func.count(OutboxEvent.event_id), func.min(OutboxEvent.created_at))
        .filter(OutboxEvent.delivered_at.is_(None))
        .one()
    )

    events_last_hour, retry_events, avg_delivery = (
        db.query(
            _count_if(OutboxEvent.created_at > hour_ago),
            _count_if(OutboxEvent.delivery_attempts > 0),
            func.avg(case((OutboxEvent.delivered_at.isnot(None), _delivery_seconds(db)))),
        )
        .filter(OutboxEvent.created_at > window_start)
        .one()
    )

    dlq_last_hour, dlq_total = (
        db.query(
            _count_if(DeadLetterEvent.moved_at > hour_ago),
            func.count(DeadLetterEvent.id),
        )
        .filter(DeadLetterEvent.moved_at > window_start)
        .one()
    )

    return HealthMetrics(
        undelivered_events=int(owed_count or 0),
        oldest_undelivered_age_seconds=_age_seconds(oldest_owed, now),
        avg_delivery_seconds=round(float(avg_delivery or 0.0), 3),
        events_last_hour=int(events_last_hour or 0),
        retry_events=int(retry_events or 0),
        dead_letters_last_hour=int(dlq_last_hour or 0),
        dead_letters_total=int(dlq_total or 0),
    )


def tenant_metrics(
    db: Session,
    organization_id: uuid.UUID,
    *,
    now: Optional[datetime] = None,
) -> TenantMetrics:
    now = _to_utc_aware(now or _utcnow())
    window_start = now - TENANT_WINDOW
    hour_ago = now - RECENT_INTERVAL

    owed_count, oldest_owed = (
        db.query(func.count(OutboxEvent.event_id), func.min(OutboxEvent.created_at))
        .filter(OutboxEvent.organization_id == organization_id)
        .filter(OutboxEvent.delivered_at.is_(None))
        .one()
    )

    total, retry_events, avg_delivery = (
        db.query(
            func.count(OutboxEvent.event_id),
            _count_if(OutboxEvent.delivery_attempts > 0),
            func.avg(case((OutboxEvent.delivered_at.isnot(None), _delivery_seconds(db)))),
        )
        .filter(OutboxEvent.organization_id == organization_id)
        .filter(OutboxEvent.created_at > window_start)
        .one()
    )

    dlq_last_hour = (
        db.query(func.count(DeadLetterEvent.id))
        .filter(DeadLetterEvent.organization_id == organization_id)
        .filter(DeadLetterEvent.moved_at > hour_ago)
        .scalar()
    )

    return TenantMetrics(
        organization_id=organization_id,
        total_events=int(total or 0),
        undelivered_events=int(owed_count or 0),
        retry_events=int(retry_events or 0),
        oldest_undelivered_age_seconds=_age_seconds(oldest_owed, now),
        avg_delivery_seconds=round(float(avg_delivery or 0.0), 3),
        dead_letters_last_hour=int(dlq_last_hour or 0),
    )


def cursor_health(db: Session, *, now: Optional[datetime] = None) -> List[CursorHealth]:
    now = _to_utc_aware(now or _utcnow())

    # One round trip no matter how many tenants have cursors.
    behind_subquery = (
        select(func.count(OutboxEvent.event_id))
        .where(OutboxEvent.organization_id == OutboxCursor.organization_id)
        .where(OutboxEvent.event_id > OutboxCursor.last_processed_event_id)
        .where(OutboxEvent.delivered_at.is_(None))
        .correlate(OutboxCursor)
        .scalar_subquery()
    )
    rows = (
        db.query(OutboxCursor, behind_subquery)
        .order_by(OutboxCursor.last_processed_at.asc())
        .all()
    )

    out: List[CursorHealth] = []
    for cursor, behind in rows:
        out.append(
            CursorHealth(
                processor_name=cursor.processor_name,
                organization_id=cursor.organization_id,
                last_processed_event_id=int(cursor.last_processed_event_id),
                last_processed_at=_to_utc_aware(cursor.last_processed_at),
                events_processed_count=int(cursor.events_processed_count or 0),
                cursor_lag_seconds=_age_seconds(cursor.last_processed_at, now),
                events_behind_cursor=int(behind or 0),
            )
        )

    out.sort(key=lambda c: c.cursor_lag_seconds, reverse=True)
    return out
