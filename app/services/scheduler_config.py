import logging
import os
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def get_celery_config() -> dict:
    broker = settings.celery_broker_url or _env_value("REDIS_URL") or "redis://localhost:6379/0"
    backend = (
        settings.celery_result_backend
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": settings.celery_timezone or "UTC",
        "task_acks_late": False,
        "task_time_limit": settings.device_command_timeout * 4,
    }
    logger.debug("Celery broker %s", broker)
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    interval_seconds = settings.outbox_drain_interval_seconds
    # 0 turns the periodic drain off.
    if interval_seconds > 0:
        schedule["device_outbox_drain"] = {
            "task": "app.tasks.device_sync.drain_device_outbox",
            "schedule": timedelta(seconds=max(interval_seconds, 30)),
        }
    event_retry_interval = settings.event_retry_interval_seconds
    if event_retry_interval > 0:
        schedule["event_retry_runner"] = {
            "task": "app.tasks.events.retry_failed_events",
            "schedule": timedelta(seconds=max(event_retry_interval, 60)),
        }
    return schedule
