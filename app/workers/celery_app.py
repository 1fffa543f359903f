from celery import Celery
from celery.schedules import crontab

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "agent_pipeline",
    broker=settings.get_celery_broker_url(),
    backend=settings.get_celery_result_backend(),
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.celery_task_always_eager,
    # One worker process drains the queue; upstream agents are shared and rate limited.
    worker_concurrency=1,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_routes={
        "app.workers.tasks.run_fleet_job": {"queue": "fleet"},
        "app.workers.tasks.process_ranking_batch_job": {"queue": "interactive"},
        "app.workers.tasks.run_pms_monthly_agents_job": {"queue": "interactive"},
    },
)

celery_app.conf.beat_schedule = {
    "agent-fleet-daily": {
        "task": "app.workers.tasks.run_fleet_job",
        "schedule": crontab(hour=settings.fleet_schedule_hour, minute=settings.fleet_schedule_minute),
    }
}
