import uuid

from fastapi.testclient import TestClient

from app.main import app
from app.routers.outbox import get_broadcaster
from app.services.broadcast import InMemoryBroadcaster
from app.services.dead_letter import migrate_to_dead_letter

client = TestClient(app)


def test_root_and_health():
    assert client.get("/").status_code == 200
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_metrics_endpoint(org_id, seed_events):
    seed_events(org_id, 2)

    r = client.get("/outbox/metrics")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["undelivered_events"] == 2
    assert body["dead_letters_total"] == 0


def test_tenant_metrics_endpoint(org_id, seed_events):
    seed_events(org_id, 4)
    seed_events(uuid.uuid4(), 1)

    r = client.get(f"/outbox/metrics/{org_id}")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["organization_id"] == str(org_id)
    assert body["total_events"] == 4
    assert body["undelivered_events"] == 4


def test_tenant_metrics_rejects_bad_uuid():
    r = client.get("/outbox/metrics/not-a-uuid")
    assert r.status_code == 422


def test_dead_letters_endpoint(org_id, seed_events):
    seed_events(org_id, 2, delivery_attempts=3, last_error="timeout")
    migrate_to_dead_letter(max_attempts=3)

    r = client.get("/outbox/dead_letters", params={"organization_id": str(org_id), "limit": 1})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["limit"] == 1
    assert len(body["rows"]) == 1
    assert body["rows"][0]["failure_reason"] == "timeout"


def test_process_requires_configured_secret(org_id, monkeypatch):
    monkeypatch.delenv("NOTIFICATION_PROCESSOR_SECRET", raising=False)

    r = client.post(f"/outbox/process/{org_id}", headers={"X-Processor-Secret": "anything"})
    assert r.status_code == 503


def test_process_rejects_wrong_secret(org_id, monkeypatch):
    monkeypatch.setenv("NOTIFICATION_PROCESSOR_SECRET", "s3cret")

    r = client.post(f"/outbox/process/{org_id}", headers={"X-Processor-Secret": "nope"})
    assert r.status_code == 403

    r = client.post(f"/outbox/process/{org_id}")
    assert r.status_code == 403


def test_process_delivers_and_reports(org_id, seed_events, monkeypatch):
    monkeypatch.setenv("NOTIFICATION_PROCESSOR_SECRET", "s3cret")
    ids = seed_events(org_id, 3)
    broadcaster = InMemoryBroadcaster()
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster

    try:
        r = client.post(f"/outbox/process/{org_id}", headers={"X-Processor-Secret": "s3cret"})
    finally:
        app.dependency_overrides.pop(get_broadcaster, None)

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["organization_id"] == str(org_id)
    assert body["processed"] == 3
    assert body["completed"] is True
    assert broadcaster.published_ids(org_id) == ids

    r = client.get("/outbox/cursors")
    assert r.status_code == 200
    [cursor] = r.json()
    assert cursor["last_processed_event_id"] == ids[-1]
    assert cursor["events_behind_cursor"] == 0
