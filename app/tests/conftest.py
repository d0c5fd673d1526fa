import os
import subprocess
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

PROJECT_ROOT = Path(__file__).resolve().parents[2]

_default_test_db = f"sqlite:///{PROJECT_ROOT / 'outbox_test.db'}"
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", _default_test_db)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["BROADCAST_BACKEND"] = "memory"
os.environ["OUTBOX_WORKER_ENABLED"] = "0"

from app import database  # noqa: E402
from app.database import Base  # noqa: E402
from app.models import OutboxEvent  # noqa: E402
from app.services.broadcast import InMemoryBroadcaster  # noqa: E402


def is_postgres() -> bool:
    return make_url(TEST_DATABASE_URL).drivername.startswith("postgresql")


def _ensure_database_exists(database_url: str) -> None:
    url = make_url(database_url)

    if url.drivername.startswith("sqlite"):
        if url.database and os.path.exists(url.database):
            os.remove(url.database)
        return

    if not url.drivername.startswith("postgresql"):
        return

    db_name = url.database
    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")

    try:
        with admin_engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": db_name},
            ).scalar()
            if not exists:
                safe_db_name = db_name.replace('"', '""')
                conn.execute(text(f'CREATE DATABASE "{safe_db_name}"'))
    finally:
        admin_engine.dispose()


def _empty_all_tables() -> None:
    with database.engine.begin() as conn:
        if is_postgres():
            quoted = ", ".join(f'"public"."{t.name}"' for t in Base.metadata.sorted_tables)
            conn.execute(text(f"TRUNCATE TABLE {quoted} RESTART IDENTITY CASCADE"))
            return
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database() -> None:
    _ensure_database_exists(TEST_DATABASE_URL)

    env = os.environ.copy()
    env["DATABASE_URL"] = TEST_DATABASE_URL

    subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        check=True,
        cwd=PROJECT_ROOT,
        env=env,
    )

    database.configure_database()


@pytest.fixture(scope="function", autouse=True)
def _truncate_tables_between_tests(_prepare_test_database):
    _empty_all_tables()
    yield
    _empty_all_tables()


@pytest.fixture
def org_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def broadcaster() -> InMemoryBroadcaster:
    return InMemoryBroadcaster()


def insert_events(
    organization_id: uuid.UUID,
    count: int,
    *,
    created_at: datetime = None,
    delivered_at: datetime = None,
    delivery_attempts: int = 0,
    last_error: str = None,
    entity_type: str = "cataloging_job",
) -> list[int]:
    """Seeds outbox rows directly and returns their event ids in order."""
    if created_at is None:
        created_at = datetime.now(timezone.utc)

    db = database.SessionLocal()
    try:
        rows = []
        for _ in range(count):
            entity_id = uuid.uuid4()
            row = OutboxEvent(
                organization_id=organization_id,
                event_type="updated",
                entity_type=entity_type,
                entity_id=str(entity_id),
                payload={"job_id": str(entity_id), "status": "completed"},
                created_at=created_at,
                delivered_at=delivered_at,
                delivery_attempts=delivery_attempts,
                last_error=last_error,
            )
            db.add(row)
            rows.append(row)
        db.commit()
        return [int(r.event_id) for r in rows]
    finally:
        db.close()


@pytest.fixture
def seed_events():
    return insert_events
