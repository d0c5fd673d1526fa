"""
Per-tenant broadcast fan-out.

One channel per organization, named from the organization id alone. Messages
carry identifiers only; subscribers re-fetch authoritative state by id and
dedupe redeliveries on ``event_id``.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

import redis
from redis.exceptions import RedisError

from app.core.config import OutboxSettings
from app.models.event_outbox import OutboxEvent

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_PREFIX = "notifications:"


class BroadcastError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        published_event_ids: Sequence[int] = (),
        failed_event_id: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.published_event_ids = list(published_event_ids)
        self.failed_event_id = failed_event_id


def channel_for(organization_id: uuid.UUID, prefix: str = DEFAULT_CHANNEL_PREFIX) -> str:
    return f"{prefix}{uuid.UUID(str(organization_id))}"


def build_message(event: OutboxEvent) -> Dict[str, Any]:
    return {
        "event_id": int(event.event_id),
        "event_type": event.event_type,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
    }


class Broadcaster(ABC):
    """
    Sends events in order, one message each. On the first failure raises
    BroadcastError carrying the ids already sent, so the caller can confirm
    the prefix and charge only the event that failed.
    """

    channel_prefix: str = DEFAULT_CHANNEL_PREFIX

    @abstractmethod
    def send(self, channel: str, message: Dict[str, Any]) -> None:
        ...

    def close(self) -> None:
        pass

    def publish(self, organization_id: uuid.UUID, events: Sequence[OutboxEvent]) -> None:
        tenant = uuid.UUID(str(organization_id))
        channel = channel_for(tenant, self.channel_prefix)
        published: List[int] = []

        for ev in events:
            if uuid.UUID(str(ev.organization_id)) != tenant:
                # Routing is by tenant; a foreign row here is a caller bug.
                raise BroadcastError(
                    f"Event {ev.event_id} belongs to another organization",
                    published_event_ids=published,
                    failed_event_id=int(ev.event_id),
                )
            try:
                self.send(channel, build_message(ev))
            except BroadcastError as exc:
                raise BroadcastError(
                    str(exc),
                    published_event_ids=published,
                    failed_event_id=int(ev.event_id),
                ) from exc
            except (RedisError, OSError, TimeoutError) as exc:
                raise BroadcastError(
                    f"Failed to broadcast event {ev.event_id}: {exc}",
                    published_event_ids=published,
                    failed_event_id=int(ev.event_id),
                ) from exc
            published.append(int(ev.event_id))


class InMemoryBroadcaster(Broadcaster):
    def __init__(self, channel_prefix: str = DEFAULT_CHANNEL_PREFIX) -> None:
        self.channel_prefix = channel_prefix
        self.messages: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def send(self, channel: str, message: Dict[str, Any]) -> None:
        self.messages[channel].append(dict(message))

    def messages_for(self, organization_id: uuid.UUID) -> List[Dict[str, Any]]:
        return list(self.messages.get(channel_for(organization_id, self.channel_prefix), []))

    def published_ids(self, organization_id: uuid.UUID) -> List[int]:
        return [m["event_id"] for m in self.messages_for(organization_id)]


class RedisBroadcaster(Broadcaster):
    def __init__(self, client: "redis.Redis", channel_prefix: str = DEFAULT_CHANNEL_PREFIX) -> None:
        self._client = client
        self.channel_prefix = channel_prefix

    def send(self, channel: str, message: Dict[str, Any]) -> None:
        self._client.publish(channel, json.dumps(message, separators=(",", ":")))

    def close(self) -> None:
        self._client.close()


def build_broadcaster(settings: OutboxSettings) -> Broadcaster:
    if settings.broadcast_backend == "memory":
        logger.info("Using in-memory broadcaster")
        return InMemoryBroadcaster(channel_prefix=settings.channel_prefix)

    if settings.broadcast_backend != "redis":
        raise ValueError(f"Unknown broadcast backend: {settings.broadcast_backend}")

    client = redis.Redis.from_url(
        settings.redis_url,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )
    logger.info("Using Redis broadcaster", extra={"channel_prefix": settings.channel_prefix})
    return RedisBroadcaster(client, channel_prefix=settings.channel_prefix)
