import hmac
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel

from app.core.config import get_outbox_settings
from app.database import SessionLocal
from app.services.broadcast import Broadcaster, build_broadcaster
from app.services.dead_letter import list_dead_letters
from app.services.outbox_metrics import cursor_health, health_metrics, tenant_metrics
from app.services.outbox_processor import process_tenant

router = APIRouter(prefix="/outbox", tags=["Outbox"])


class HealthMetricsResponse(BaseModel):
    undelivered_events: int
    oldest_undelivered_age_seconds: int
    avg_delivery_seconds: float
    events_last_hour: int
    retry_events: int
    dead_letters_last_hour: int
    dead_letters_total: int


class TenantMetricsResponse(BaseModel):
    organization_id: uuid.UUID
    total_events: int
    undelivered_events: int
    retry_events: int
    oldest_undelivered_age_seconds: int
    avg_delivery_seconds: float
    dead_letters_last_hour: int


class CursorHealthRow(BaseModel):
    processor_name: str
    organization_id: uuid.UUID
    last_processed_event_id: int
    last_processed_at: datetime
    events_processed_count: int
    cursor_lag_seconds: int
    events_behind_cursor: int


class DeadLetterRow(BaseModel):
    id: int
    original_event_id: int
    organization_id: uuid.UUID
    event_type: str
    entity_type: str
    entity_id: str
    delivery_attempts: int
    failure_reason: str
    moved_at: datetime


class DeadLetterListResponse(BaseModel):
    limit: int
    offset: int
    rows: list[DeadLetterRow]


class ProcessRunResponse(BaseModel):
    organization_id: uuid.UUID
    processed: int
    failed: int
    batches: int
    completed: bool
    skipped: bool
    duration_ms: int


def get_broadcaster(request: Request) -> Broadcaster:
    broadcaster = getattr(request.app.state, "broadcaster", None)
    if broadcaster is None:
        broadcaster = build_broadcaster(get_outbox_settings())
        request.app.state.broadcaster = broadcaster
    return broadcaster


def require_processor_secret(
    x_processor_secret: Optional[str] = Header(default=None, alias="X-Processor-Secret"),
) -> None:
    expected = get_outbox_settings().processor_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Processor trigger is not configured")
    if not x_processor_secret or not hmac.compare_digest(x_processor_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid processor secret")


@router.get("/metrics", response_model=HealthMetricsResponse)
def get_health_metrics():
    db = SessionLocal()
    try:
        return asdict(health_metrics(db))
    finally:
        db.close()


@router.get("/metrics/{organization_id}", response_model=TenantMetricsResponse)
def get_tenant_metrics(organization_id: uuid.UUID):
    db = SessionLocal()
    try:
        return asdict(tenant_metrics(db, organization_id))
    finally:
        db.close()


@router.get("/cursors", response_model=list[CursorHealthRow])
def list_cursor_health():
    db = SessionLocal()
    try:
        return [asdict(c) for c in cursor_health(db)]
    finally:
        db.close()


@router.get("/dead_letters", response_model=DeadLetterListResponse)
def get_dead_letters(
    organization_id: Optional[uuid.UUID] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
):
    db = SessionLocal()
    try:
        rows = list_dead_letters(db, organization_id=organization_id, limit=limit, offset=offset)
        return {
            "limit": int(limit),
            "offset": int(offset),
            "rows": [
                {
                    "id": r.id,
                    "original_event_id": r.original_event_id,
                    "organization_id": r.organization_id,
                    "event_type": r.event_type,
                    "entity_type": r.entity_type,
                    "entity_id": r.entity_id,
                    "delivery_attempts": r.delivery_attempts,
                    "failure_reason": r.failure_reason,
                    "moved_at": r.moved_at,
                }
                for r in rows
            ],
        }
    finally:
        db.close()


@router.post("/process/{organization_id}", response_model=ProcessRunResponse)
def trigger_processing(
    organization_id: uuid.UUID,
    _secret=Depends(require_processor_secret),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    settings = get_outbox_settings()
    result = process_tenant(
        organization_id,
        broadcaster=broadcaster,
        processor_name=settings.processor_name,
        batch_size=settings.batch_size,
        max_attempts=settings.max_attempts,
        run_budget_seconds=settings.run_budget_seconds,
        sweep_stragglers=settings.sweep_stragglers,
    )
    return {"organization_id": organization_id, **asdict(result)}
