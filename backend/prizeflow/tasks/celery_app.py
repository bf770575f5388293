"""Celery application configuration.

Alternative driver for deployments that already run Celery workers:
beat enqueues one settlement tick per minute on the settlement queue.

Features:
- Redis as broker and result backend
- Task routing by queue
- Scheduled ticks via Celery Beat
"""

import os

from celery import Celery

from prizeflow.tasks.schedules import CELERY_BEAT_SCHEDULE, CELERY_TASK_ROUTES

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery(
    "prizeflow_tasks",
    broker=f"{REDIS_URL.rsplit('/', 1)[0]}/1",  # DB 1 for broker
    backend=f"{REDIS_URL.rsplit('/', 1)[0]}/2",  # DB 2 for results
    include=[
        "prizeflow.tasks.settlement",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    timezone="UTC",
    enable_utc=True,

    task_routes=CELERY_TASK_ROUTES,

    # Prizes and refunds are unique per user and tournament, so redelivery is safe
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    result_expires=3600,

    beat_schedule=CELERY_BEAT_SCHEDULE,
)


if os.getenv("APP_ENV") == "development":
    celery_app.conf.update(
        task_always_eager=False,  # Set to True to run tasks synchronously
        task_eager_propagates=True,
    )
