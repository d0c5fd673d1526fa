"""
Outbox writer.

Every mutation of a watched entity writes exactly one ``event_outbox`` row on
the same connection, inside the same transaction, as the mutation itself. If
the outbox insert fails the flush fails, and the caller's transaction rolls
back with it: there is no committed mutation without its event.

Two entry points:
  - ``record_event`` for service code that wants to emit an event explicitly.
  - ``watch`` for ORM models; it installs mapper hooks so inserts, updates and
    deletes flushed through a Session emit events automatically.

Bulk ``Query.update()`` / ``Query.delete()`` bypass mapper hooks and therefore
emit no events; use ``record_event`` next to them.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from sqlalchemy import event, insert
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

if TYPE_CHECKING:
    from app.models.event_outbox import OutboxEvent

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1024


class OutboxWriteError(ValueError):
    pass


@dataclass(frozen=True)
class WatchSpec:
    entity_type: str
    payload_fields: Sequence[tuple[str, str]]
    change_fields: Sequence[str]
    organization_attr: str = "organization_id"
    id_attr: str = "id"


_watched: Dict[type, WatchSpec] = {}


def _outbox_model():
    # app.models registers its watches through this module on import.
    from app.models import event_outbox

    return event_outbox


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _validate(
    *,
    organization_id: Any,
    event_type: str,
    entity_type: str,
    entity_id: Any,
    payload: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    if organization_id is None:
        raise OutboxWriteError("Outbox event requires an organization_id")
    if event_type not in _outbox_model().EVENT_TYPES:
        raise OutboxWriteError(f"Unknown outbox event_type: {event_type}")
    if not entity_type:
        raise OutboxWriteError("Outbox event requires an entity_type")
    if entity_id is None:
        raise OutboxWriteError("Outbox event requires an entity_id")

    clean = {str(k): _json_value(v) for k, v in (payload or {}).items()}
    size = len(json.dumps(clean, separators=(",", ":"), default=str).encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        raise OutboxWriteError(
            f"Outbox payload is {size} bytes; limit is {MAX_PAYLOAD_BYTES}"
        )
    return clean


def record_event(
    db: Session,
    *,
    organization_id: uuid.UUID,
    event_type: str,
    entity_type: str,
    entity_id: Any,
    payload: Optional[Dict[str, Any]] = None,
) -> OutboxEvent:
    """
    Adds the event to the caller's session. Does NOT commit: the caller owns
    the transaction that also carries the mutation.
    """
    clean = _validate(
        organization_id=organization_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
    )
    row = _outbox_model().OutboxEvent(
        organization_id=organization_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload=clean,
        created_at=_utcnow(),
        delivery_attempts=0,
    )
    db.add(row)
    return row


def record_event_on_connection(
    connection: Connection,
    *,
    organization_id: uuid.UUID,
    event_type: str,
    entity_type: str,
    entity_id: Any,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    clean = _validate(
        organization_id=organization_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
    )
    connection.execute(
        insert(_outbox_model().OutboxEvent.__table__).values(
            organization_id=organization_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            payload=clean,
            created_at=_utcnow(),
            delivery_attempts=0,
        )
    )


def build_payload(target: Any, spec: WatchSpec) -> Dict[str, Any]:
    return {key: _json_value(getattr(target, attr, None)) for key, attr in spec.payload_fields}


def _has_meaningful_change(target: Any, spec: WatchSpec) -> bool:
    for attr in spec.change_fields:
        if get_history(target, attr).has_changes():
            return True
    return False


def _emit(connection: Connection, target: Any, spec: WatchSpec, event_type: str) -> None:
    record_event_on_connection(
        connection,
        organization_id=getattr(target, spec.organization_attr),
        event_type=event_type,
        entity_type=spec.entity_type,
        entity_id=getattr(target, spec.id_attr),
        payload=build_payload(target, spec),
    )
    logger.debug(
        "Outbox event recorded",
        extra={"entity_type": spec.entity_type, "event_type": event_type},
    )


def watch(
    model: type,
    *,
    entity_type: str,
    payload_fields: Sequence[tuple[str, str]],
    change_fields: Sequence[str] = (),
    organization_attr: str = "organization_id",
    id_attr: str = "id",
) -> WatchSpec:
    """
    Register mapper hooks on ``model``.

    payload_fields: (payload key, attribute name) pairs copied into the event.
    change_fields: an UPDATE that changes none of these emits nothing. Empty
      means every flushed update emits.
    """
    if model in _watched:
        return _watched[model]

    spec = WatchSpec(
        entity_type=entity_type,
        payload_fields=tuple(payload_fields),
        change_fields=tuple(change_fields),
        organization_attr=organization_attr,
        id_attr=id_attr,
    )

    def _after_insert(_mapper, connection, target):
        _emit(connection, target, spec, "created")

    def _after_update(_mapper, connection, target):
        if spec.change_fields and not _has_meaningful_change(target, spec):
            return
        _emit(connection, target, spec, "updated")

    def _after_delete(_mapper, connection, target):
        _emit(connection, target, spec, "deleted")

    event.listen(model, "after_insert", _after_insert)
    event.listen(model, "after_update", _after_update)
    event.listen(model, "after_delete", _after_delete)

    _watched[model] = spec
    return spec


def watched_models() -> Dict[type, WatchSpec]:
    return dict(_watched)
