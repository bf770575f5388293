"""Celery Beat schedule configuration."""

from celery.schedules import crontab


CELERY_BEAT_SCHEDULE = {
    # Finalize prize pools and settle due tournaments
    "settlement-tick-every-minute": {
        "task": "prizeflow.tasks.settlement.run_settlement_tick_task",
        "schedule": crontab(),  # Every minute
        # A tick still queued when the next one is due is dropped
        "options": {"queue": "settlement", "expires": 55},
    },
}


CELERY_TASK_ROUTES = {
    "prizeflow.tasks.settlement.*": {"queue": "settlement"},
}
