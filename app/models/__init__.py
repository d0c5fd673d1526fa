from app.models.cataloging_job import CatalogingJob
from app.models.dead_letter import DeadLetterEvent
from app.models.event_outbox import OutboxEvent
from app.models.flag import Flag
from app.models.outbox_cursor import OutboxCursor
from app.services.outbox_writer import watch

watch(
    CatalogingJob,
    entity_type="cataloging_job",
    payload_fields=(
        ("job_id", "id"),
        ("status", "status"),
        ("source_type", "source_type"),
        ("completed_at", "completed_at"),
        ("finalized_at", "finalized_at"),
    ),
    change_fields=("status", "completed_at", "finalized_at"),
)

watch(
    Flag,
    entity_type="flag",
    payload_fields=(
        ("flag_id", "id"),
        ("status", "status"),
        ("type", "flag_type"),
        ("resolved_at", "resolved_at"),
    ),
    change_fields=("status", "resolved_at"),
)

__all__ = [
    "CatalogingJob",
    "DeadLetterEvent",
    "Flag",
    "OutboxCursor",
    "OutboxEvent",
]
