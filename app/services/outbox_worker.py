import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.exc import DBAPIError, OperationalError

from app import database
from app.core.config import OutboxSettings, get_outbox_settings
from app.services.broadcast import Broadcaster, build_broadcaster
from app.services.dead_letter import (
    DeadLetterPruneResult,
    DeadLetterResult,
    migrate_to_dead_letter,
    prune_dead_letters,
)
from app.services.outbox_processor import (
    ProcessRunResult,
    list_pending_organizations,
    process_tenant,
)
from app.services.retention_pruner import PruneResult, prune_delivered

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    dead_letter: Optional[DeadLetterResult] = None
    pruned: Optional[PruneResult] = None
    dead_letters_pruned: Optional[DeadLetterPruneResult] = None


def _dispose_engine() -> None:
    # Next tick gets fresh connections after Postgres restarts.
    engine = database.engine
    if engine is not None:
        engine.dispose()


def run_delivery_tick(
    settings: OutboxSettings,
    broadcaster: Broadcaster,
) -> Dict[uuid.UUID, ProcessRunResult]:
    """
    One pass over every tenant with owed events. A failing tenant is logged
    and left for the next tick; it never stops the others.
    """
    db = database.SessionLocal()
    try:
        organizations = list_pending_organizations(db, max_attempts=settings.max_attempts)
    finally:
        db.close()

    results: Dict[uuid.UUID, ProcessRunResult] = {}
    for organization_id in organizations:
        try:
            results[organization_id] = process_tenant(
                organization_id,
                broadcaster=broadcaster,
                processor_name=settings.processor_name,
                batch_size=settings.batch_size,
                max_attempts=settings.max_attempts,
                run_budget_seconds=settings.run_budget_seconds,
                sweep_stragglers=settings.sweep_stragglers,
            )
        except (OperationalError, DBAPIError):
            raise
        except Exception:
            logger.exception(
                "Outbox tenant run failed",
                extra={
                    "component": "outbox_worker",
                    "organization_id": str(organization_id),
                    "processor_name": settings.processor_name,
                },
            )
    return results


def run_maintenance(settings: OutboxSettings) -> MaintenanceReport:
    """Dead-letter migration and pruning; each step fails independently."""
    report = MaintenanceReport()

    try:
        report.dead_letter = migrate_to_dead_letter(
            max_attempts=settings.max_attempts,
            grace_seconds=settings.dead_letter_grace_seconds,
        )
    except Exception:
        logger.exception("Dead-letter migration failed", extra={"component": "outbox_worker"})

    try:
        report.pruned = prune_delivered(
            retention_hours=settings.retention_hours,
            max_batch=settings.prune_batch_size,
        )
    except Exception:
        logger.exception("Outbox pruning failed", extra={"component": "outbox_worker"})

    try:
        report.dead_letters_pruned = prune_dead_letters(
            retention_hours=settings.dead_letter_retention_hours,
            max_batch=settings.prune_batch_size,
        )
    except Exception:
        logger.exception("Dead-letter pruning failed", extra={"component": "outbox_worker"})

    return report


async def outbox_worker_loop(
    *,
    settings: Optional[OutboxSettings] = None,
    broadcaster: Optional[Broadcaster] = None,
) -> None:
    """
    Stateless loop: every bit of progress lives in the cursor table, so any
    number of these may run side by side and any of them may be killed.

    A broker outage costs attempts, not the loop. A dropped database
    connection disposes the pool and the next tick reconnects.

    Ticks are blocking database and broker work, so they run on a worker
    thread and the event loop keeps serving requests meanwhile.
    """
    if settings is None:
        settings = get_outbox_settings()
    if broadcaster is None:
        broadcaster = build_broadcaster(settings)

    logger.info(
        "Outbox worker started",
        extra={
            "processor_name": settings.processor_name,
            "poll_seconds": float(settings.poll_seconds),
            "batch_size": int(settings.batch_size),
        },
    )

    last_maintenance = 0.0

    while True:
        try:
            await asyncio.to_thread(run_delivery_tick, settings, broadcaster)

            if time.monotonic() - last_maintenance >= settings.maintenance_seconds:
                await asyncio.to_thread(run_maintenance, settings)
                last_maintenance = time.monotonic()

        except asyncio.CancelledError:
            logger.info("Outbox worker cancelled; shutting down")
            raise

        except (OperationalError, DBAPIError):
            logger.exception(
                "Outbox worker tick failed",
                extra={"component": "outbox_worker", "reason": "dbapi_error"},
            )
            _dispose_engine()

        except Exception:
            logger.exception(
                "Outbox worker tick failed",
                extra={"component": "outbox_worker", "reason": "unexpected"},
            )

        await asyncio.sleep(settings.poll_seconds)


def start_outbox_worker_task(
    settings: Optional[OutboxSettings] = None,
    broadcaster: Optional[Broadcaster] = None,
) -> Optional[asyncio.Task]:
    if settings is None:
        settings = get_outbox_settings()

    if not settings.worker_enabled:
        logger.info("Outbox worker disabled")
        return None

    return asyncio.create_task(outbox_worker_loop(settings=settings, broadcaster=broadcaster))


async def main() -> None:
    from app.core.logging import configure_logging

    configure_logging()
    await outbox_worker_loop()


if __name__ == "__main__":
    asyncio.run(main())
