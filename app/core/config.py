import os
from dataclasses import dataclass


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip() not in {"0", "false", "False", "no", "NO", "off"}


@dataclass(frozen=True)
class OutboxSettings:
    processor_name: str = "notification-processor"

    batch_size: int = 100
    max_attempts: int = 3
    poll_seconds: float = 1.0
    run_budget_seconds: float = 25.0
    sweep_stragglers: bool = True

    maintenance_seconds: float = 60.0
    retention_hours: int = 72
    prune_batch_size: int = 5000
    dead_letter_retention_hours: int = 168
    dead_letter_grace_seconds: int = 0

    worker_enabled: bool = True

    broadcast_backend: str = "redis"
    redis_url: str = "redis://localhost:6379/0"
    channel_prefix: str = "notifications:"

    processor_secret: str = ""


def get_outbox_settings() -> OutboxSettings:
    # Worker stays off under pytest so tests drive processing explicitly.
    worker_enabled = _env_bool("OUTBOX_WORKER_ENABLED", True)
    if os.getenv("PYTEST_CURRENT_TEST"):
        worker_enabled = False

    return OutboxSettings(
        processor_name=_env_str("OUTBOX_PROCESSOR_NAME", "notification-processor"),
        batch_size=max(1, _env_int("OUTBOX_BATCH_SIZE", 100)),
        max_attempts=max(1, _env_int("OUTBOX_MAX_ATTEMPTS", 3)),
        poll_seconds=_env_float("OUTBOX_POLL_SECONDS", 1.0),
        run_budget_seconds=_env_float("OUTBOX_RUN_BUDGET_SECONDS", 25.0),
        sweep_stragglers=_env_bool("OUTBOX_SWEEP_STRAGGLERS", True),
        maintenance_seconds=_env_float("OUTBOX_MAINTENANCE_SECONDS", 60.0),
        retention_hours=_env_int("OUTBOX_RETENTION_HOURS", 72),
        prune_batch_size=max(1, _env_int("OUTBOX_PRUNE_BATCH_SIZE", 5000)),
        dead_letter_retention_hours=_env_int("OUTBOX_DLQ_RETENTION_HOURS", 168),
        dead_letter_grace_seconds=_env_int("OUTBOX_DLQ_GRACE_SECONDS", 0),
        worker_enabled=worker_enabled,
        broadcast_backend=_env_str("BROADCAST_BACKEND", "redis").lower(),
        redis_url=_env_str("REDIS_URL", "redis://localhost:6379/0"),
        channel_prefix=_env_str("BROADCAST_CHANNEL_PREFIX", "notifications:"),
        processor_secret=os.getenv("NOTIFICATION_PROCESSOR_SECRET", ""),
    )
