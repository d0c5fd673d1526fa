import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.models.event_outbox import OutboxEvent
from app.services.broadcast import BroadcastError, Broadcaster
from app.services.cursor_store import advance_cursor, get_or_create_cursor, lock_cursor

logger = logging.getLogger(__name__)

DEFAULT_PROCESSOR_NAME = "notification-processor"
MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class ProcessRunResult:
    processed: int
    failed: int
    batches: int
    completed: bool
    skipped: bool
    duration_ms: int


@dataclass(frozen=True)
class _BatchOutcome:
    polled: int
    delivered: int
    failed: int
    stop: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def poll_events(
    db: Session,
    organization_id: uuid.UUID,
    after_event_id: int,
    *,
    limit: int,
    max_attempts: int,
) -> List[OutboxEvent]:
    """
    Undelivered events for one tenant strictly past the cursor, oldest first.

    Events already at the attempt ceiling are left for the dead-letter
    migration so they cannot block the events behind them.
    """
    return (
        db.query(OutboxEvent)
        .filter(OutboxEvent.organization_id == organization_id)
        .filter(OutboxEvent.event_id > int(after_event_id))
        .filter(OutboxEvent.delivered_at.is_(None))
        .filter(OutboxEvent.delivery_attempts < int(max_attempts))
        .order_by(OutboxEvent.event_id.asc())
        .limit(int(limit))
        .all()
    )


def poll_stragglers(
    db: Session,
    organization_id: uuid.UUID,
    at_or_before_event_id: int,
    *,
    limit: int,
    max_attempts: int,
) -> List[OutboxEvent]:
    """
    Undelivered events at or behind the cursor.

    Ids are allocated at insert time but become visible at commit time, so a
    long writer transaction can commit a lower id after the cursor already
    moved past it. Those rows are still owed to subscribers.
    """
    if int(at_or_before_event_id) <= 0:
        return []
    return (
        db.query(OutboxEvent)
        .filter(OutboxEvent.organization_id == organization_id)
        .filter(OutboxEvent.event_id <= int(at_or_before_event_id))
        .filter(OutboxEvent.delivered_at.is_(None))
        .filter(OutboxEvent.delivery_attempts < int(max_attempts))
        .order_by(OutboxEvent.event_id.asc())
        .limit(int(limit))
        .all()
    )


def mark_delivered(
    db: Session,
    organization_id: uuid.UUID,
    event_ids: Sequence[int],
    now: datetime,
) -> int:
    if not event_ids:
        return 0
    result = db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.event_id.in_([int(i) for i in event_ids]))
        .where(OutboxEvent.organization_id == organization_id)
        .where(OutboxEvent.delivered_at.is_(None))
        .values(delivered_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def mark_delivered_and_advance(
    db: Session,
    processor_name: str,
    organization_id: uuid.UUID,
    events: Sequence[OutboxEvent],
    now: datetime,
) -> int:
    """
    Confirms a published batch. Runs in the caller's transaction, so the
    delivered_at stamps and the cursor move commit (or roll back) together.
    """
    if not events:
        return 0
    ids = [int(e.event_id) for e in events]
    confirmed = mark_delivered(db, organization_id, ids, now)
    advance_cursor(
        db,
        processor_name,
        organization_id,
        max(ids),
        processed_count=len(ids),
        now=now,
    )
    return confirmed


def record_delivery_failure(db: Session, events: Sequence[OutboxEvent], error: str) -> None:
    if not events:
        return
    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.event_id.in_([int(e.event_id) for e in events]))
        .where(OutboxEvent.delivered_at.is_(None))
        .values(
            delivery_attempts=OutboxEvent.delivery_attempts + 1,
            last_error=(error or "Unknown error")[:MAX_ERROR_LENGTH],
        )
        .execution_options(synchronize_session=False)
    )


def list_pending_organizations(db: Session, *, max_attempts: int) -> List[uuid.UUID]:
    rows = (
        db.query(OutboxEvent.organization_id)
        .filter(OutboxEvent.delivered_at.is_(None))
        .filter(OutboxEvent.delivery_attempts < int(max_attempts))
        .distinct()
        .all()
    )
    return [r[0] for r in rows]


def _published_prefix(events: Sequence[OutboxEvent], published_ids: Sequence[int]) -> List[OutboxEvent]:
    # Only a gap-free prefix is confirmed; the cursor may not jump an unsent event.
    sent = {int(i) for i in published_ids}
    prefix: List[OutboxEvent] = []
    for ev in events:
        if int(ev.event_id) not in sent:
            break
        prefix.append(ev)
    return prefix


def _run_batch(
    *,
    session_factory: Callable[[], Session],
    broadcaster: Broadcaster,
    processor_name: str,
    organization_id: uuid.UUID,
    batch_size: int,
    max_attempts: int,
    sweep_stragglers: bool,
    now: Optional[datetime],
) -> Optional[_BatchOutcome]:
    db = session_factory()
    try:
        cursor = lock_cursor(db, processor_name, organization_id)
        if cursor is None:
            db.rollback()
            return None

        straggling = False
        events: List[OutboxEvent] = []
        if sweep_stragglers:
            events = poll_stragglers(
                db,
                organization_id,
                cursor.last_processed_event_id,
                limit=batch_size,
                max_attempts=max_attempts,
            )
            straggling = bool(events)
        if not events:
            events = poll_events(
                db,
                organization_id,
                cursor.last_processed_event_id,
                limit=batch_size,
                max_attempts=max_attempts,
            )

        if not events:
            db.commit()
            return _BatchOutcome(polled=0, delivered=0, failed=0, stop=True)

        error: Optional[Exception] = None
        try:
            broadcaster.publish(organization_id, events)
            published_ids = [int(e.event_id) for e in events]
        except BroadcastError as exc:
            error = exc
            published_ids = exc.published_event_ids
        except Exception as exc:
            error = exc
            published_ids = []

        when = now if now is not None else _utcnow()
        delivered = _published_prefix(events, published_ids)

        if delivered:
            if straggling:
                mark_delivered(db, organization_id, [e.event_id for e in delivered], when)
            else:
                mark_delivered_and_advance(db, processor_name, organization_id, delivered, when)

        charged: List[OutboxEvent] = []
        if error is not None:
            delivered_ids = {int(e.event_id) for e in delivered}
            failed_id = getattr(error, "failed_event_id", None)
            if failed_id is not None:
                charged = [e for e in events if int(e.event_id) == int(failed_id)]
            if not charged:
                charged = [e for e in events if int(e.event_id) not in delivered_ids]
            record_delivery_failure(db, charged, str(error) or type(error).__name__)
            logger.warning(
                "Outbox batch publish failed",
                extra={
                    "processor_name": processor_name,
                    "organization_id": str(organization_id),
                    "delivered": len(delivered),
                    "charged_event_ids": [int(e.event_id) for e in charged],
                    "error": str(error),
                },
            )

        db.commit()

        if delivered:
            logger.info(
                "Outbox batch delivered",
                extra={
                    "processor_name": processor_name,
                    "organization_id": str(organization_id),
                    "delivered": len(delivered),
                    "last_event_id": int(delivered[-1].event_id),
                    "stragglers": straggling,
                },
            )

        return _BatchOutcome(
            polled=len(events),
            delivered=len(delivered),
            failed=len(charged),
            stop=error is not None,
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def process_tenant(
    organization_id: uuid.UUID,
    *,
    broadcaster: Broadcaster,
    processor_name: str = DEFAULT_PROCESSOR_NAME,
    batch_size: int = 100,
    max_attempts: int = 3,
    max_batches: Optional[int] = None,
    run_budget_seconds: Optional[float] = None,
    sweep_stragglers: bool = True,
    now: Optional[datetime] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> ProcessRunResult:
    """
    Delivers owed events for one (processor, tenant) pair.

    One transaction per batch:
      lock cursor (skip if held) -> poll -> publish -> mark delivered +
      advance cursor -> commit
    A crash anywhere before the commit leaves the batch undelivered and the
    cursor where it was, so the next run publishes the same range again.
    On publish failure the failing event is charged an attempt and the run
    stops for this tenant.
    """
    if session_factory is None:
        session_factory = SessionLocal
    organization_id = uuid.UUID(str(organization_id))

    started = time.monotonic()

    db = session_factory()
    try:
        get_or_create_cursor(db, processor_name, organization_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    processed = 0
    failed = 0
    batches = 0
    completed = False
    skipped = False

    while True:
        if max_batches is not None and batches >= int(max_batches):
            break
        if run_budget_seconds is not None and time.monotonic() - started >= float(run_budget_seconds):
            logger.info(
                "Outbox run budget exhausted",
                extra={"processor_name": processor_name, "organization_id": str(organization_id)},
            )
            break

        outcome = _run_batch(
            session_factory=session_factory,
            broadcaster=broadcaster,
            processor_name=processor_name,
            organization_id=organization_id,
            batch_size=int(batch_size),
            max_attempts=int(max_attempts),
            sweep_stragglers=sweep_stragglers,
            now=now,
        )

        if outcome is None:
            # Another instance holds this tenant's cursor; not an error.
            skipped = batches == 0
            logger.info(
                "Outbox cursor busy; skipping tenant",
                extra={"processor_name": processor_name, "organization_id": str(organization_id)},
            )
            break

        if outcome.polled == 0:
            completed = True
            break

        batches += 1
        processed += outcome.delivered
        failed += outcome.failed

        if outcome.stop:
            break

    return ProcessRunResult(
        processed=processed,
        failed=failed,
        batches=batches,
        completed=completed,
        skipped=skipped,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
