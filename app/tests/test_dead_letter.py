import uuid
from datetime import datetime, timedelta, timezone

from app.database import SessionLocal
from app.models import DeadLetterEvent, OutboxEvent
from app.services.dead_letter import (
    DEFAULT_FAILURE_REASON,
    list_dead_letters,
    migrate_to_dead_letter,
    prune_dead_letters,
)


def _counts():
    db = SessionLocal()
    try:
        return db.query(OutboxEvent).count(), db.query(DeadLetterEvent).count()
    finally:
        db.close()


def test_exhausted_events_move_with_their_last_error(org_id, seed_events):
    [poison] = seed_events(org_id, 1, delivery_attempts=3, last_error="broker unavailable")
    seed_events(org_id, 2, delivery_attempts=1)

    result = migrate_to_dead_letter(max_attempts=3)

    assert result.moved_count == 1
    assert result.organization_ids == [org_id]
    assert _counts() == (2, 1)

    db = SessionLocal()
    try:
        row = db.query(DeadLetterEvent).one()
        assert row.original_event_id == poison
        assert row.organization_id == org_id
        assert row.entity_type == "cataloging_job"
        assert row.delivery_attempts == 3
        assert row.failure_reason == "broker unavailable"
        assert row.payload["status"] == "completed"
        assert db.query(OutboxEvent).filter(OutboxEvent.event_id == poison).count() == 0
    finally:
        db.close()


def test_missing_last_error_gets_default_reason(org_id, seed_events):
    seed_events(org_id, 1, delivery_attempts=5)

    migrate_to_dead_letter(max_attempts=3)

    db = SessionLocal()
    try:
        assert db.query(DeadLetterEvent).one().failure_reason == DEFAULT_FAILURE_REASON
    finally:
        db.close()


def test_migration_is_idempotent(org_id, seed_events):
    seed_events(org_id, 2, delivery_attempts=3)

    first = migrate_to_dead_letter(max_attempts=3)
    second = migrate_to_dead_letter(max_attempts=3)

    assert first.moved_count == 2
    assert second.moved_count == 0
    assert _counts() == (0, 2)


def test_already_copied_event_is_not_duplicated(org_id, seed_events):
    [event_id] = seed_events(org_id, 1, delivery_attempts=3)

    # A copy left behind by an earlier migrator that never deleted the source.
    db = SessionLocal()
    try:
        db.add(
            DeadLetterEvent(
                original_event_id=event_id,
                organization_id=org_id,
                event_type="updated",
                entity_type="cataloging_job",
                entity_id="job-1",
                payload={},
                created_at=datetime.now(timezone.utc),
                delivery_attempts=3,
                failure_reason="earlier copy",
                moved_at=datetime.now(timezone.utc),
            )
        )
        db.commit()
    finally:
        db.close()

    result = migrate_to_dead_letter(max_attempts=3)

    assert result.moved_count == 1
    assert _counts() == (0, 1)


def test_delivered_events_are_never_dead_lettered(org_id, seed_events):
    seed_events(org_id, 1, delivery_attempts=3, delivered_at=datetime.now(timezone.utc))

    result = migrate_to_dead_letter(max_attempts=3)

    assert result.moved_count == 0
    assert _counts() == (1, 0)


def test_grace_period_defers_fresh_events(org_id, seed_events):
    seed_events(org_id, 1, delivery_attempts=3)

    early = migrate_to_dead_letter(max_attempts=3, grace_seconds=300)
    assert early.moved_count == 0

    later = migrate_to_dead_letter(
        max_attempts=3,
        grace_seconds=300,
        now=datetime.now(timezone.utc) + timedelta(minutes=10),
    )
    assert later.moved_count == 1


def test_list_dead_letters_filters_by_organization(seed_events):
    org_a = uuid.uuid4()
    org_b = uuid.uuid4()
    seed_events(org_a, 2, delivery_attempts=3)
    seed_events(org_b, 1, delivery_attempts=3)
    migrate_to_dead_letter(max_attempts=3)

    db = SessionLocal()
    try:
        assert len(list_dead_letters(db)) == 3
        assert len(list_dead_letters(db, organization_id=org_a)) == 2
        assert len(list_dead_letters(db, organization_id=org_b, limit=1)) == 1
        assert list_dead_letters(db, organization_id=org_a, offset=2) == []
    finally:
        db.close()


def test_prune_dead_letters_removes_only_expired_rows(org_id, seed_events):
    now = datetime.now(timezone.utc)
    seed_events(org_id, 3, delivery_attempts=3)
    migrate_to_dead_letter(max_attempts=3, now=now - timedelta(days=10))
    seed_events(org_id, 1, delivery_attempts=3)
    migrate_to_dead_letter(max_attempts=3, now=now)

    result = prune_dead_letters(retention_hours=168, max_batch=2, now=now)
    assert result.deleted_count == 2

    result = prune_dead_letters(retention_hours=168, max_batch=10, now=now)
    assert result.deleted_count == 1

    assert _counts() == (0, 1)


def test_event_ids_are_not_reused_after_dead_lettering_the_newest_row(org_id, seed_events):
    [first] = seed_events(org_id, 1, delivery_attempts=3, last_error="first failure")
    migrate_to_dead_letter(max_attempts=3)

    [second] = seed_events(org_id, 1, delivery_attempts=3, last_error="second failure")
    assert second > first

    result = migrate_to_dead_letter(max_attempts=3)

    assert result.moved_count == 1
    assert _counts() == (0, 2)

    db = SessionLocal()
    try:
        reasons = {
            row.original_event_id: row.failure_reason for row in db.query(DeadLetterEvent).all()
        }
        assert reasons == {first: "first failure", second: "second failure"}
    finally:
        db.close()
