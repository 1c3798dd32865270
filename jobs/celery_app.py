from datetime import timedelta

from celery import Celery
from kombu import Queue

from core.env import env_int, env_str

CELERY_TIMEZONE = env_str("CELERY_TIMEZONE", "UTC") or "UTC"
CELERY_DEFAULT_QUEUE = env_str("CELERY_DEFAULT_QUEUE", "billing") or "billing"
BILLING_SWEEP_INTERVAL_SECONDS = env_int("BILLING_SWEEP_INTERVAL_SECONDS", 900, minimum=30)

app = Celery(
    "billing",
    broker=env_str("CELERY_BROKER_URL", "redis://redis:6379/0"),
    backend=env_str("CELERY_RESULT_BACKEND", "redis://redis:6379/1"),
    include=["jobs.tasks"],
)

app.conf.update(
    task_track_started=True,
    timezone=CELERY_TIMEZONE,
    task_default_queue=CELERY_DEFAULT_QUEUE,
    task_queues=(Queue(CELERY_DEFAULT_QUEUE),),
    beat_schedule={
        "billing-sweep": {
            "task": "billing.sweep",
            "schedule": timedelta(seconds=BILLING_SWEEP_INTERVAL_SECONDS),
        },
    },
)
app.conf.enable_utc = str(CELERY_TIMEZONE).upper() == "UTC"
