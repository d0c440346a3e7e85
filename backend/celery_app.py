"""
Celery application configuration for scheduled tasks.
"""
import os
from celery import Celery
from celery.schedules import crontab

# Redis URL for broker and backend
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Create Celery app
celery_app = Celery(
    "subradar_tasks",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["tasks.detection_tasks"],
)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _build_beat_schedule() -> dict:
    schedule = {}

    if _env_bool("SUBSCRIPTION_DETECTION_SCHEDULE_ENABLED", default=False):
        try:
            detection_hour_utc = int(os.getenv("SUBSCRIPTION_DETECTION_HOUR_UTC", "3"))
        except ValueError:
            detection_hour_utc = 3

        # Keep the hour in a safe UTC range.
        detection_hour_utc = max(0, min(23, detection_hour_utc))
        schedule["subscription-detection-nightly"] = {
            "task": "tasks.detection_tasks.detect_subscriptions_for_all_users",
            "schedule": crontab(minute=0, hour=detection_hour_utc),
        }

    return schedule

# Celery configuration
celery_app.conf.update(
    # Task result settings
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_time_limit=1800,  # 30 minutes max per user run
    task_soft_time_limit=1650,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Beat schedule for periodic tasks
    beat_schedule=_build_beat_schedule(),
)

# Optional: Auto-discover tasks in app
celery_app.autodiscover_tasks(["tasks"])


if __name__ == "__main__":
    celery_app.start()
