import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import after_setup_logger

from app.core.config import settings

# Initialize Celery
celery_app = Celery(
    "tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "app.tasks.subscription_tasks",
    ]
)

celery_app.conf.update(
    task_track_started=True,
    beat_schedule={
        'expire-due-subscriptions-hourly': {
            'task': 'tasks.expire_due_subscriptions',
            'schedule': crontab(minute=5),  # Runs every hour at :05
        },
    },
)


@after_setup_logger.connect
def configure_worker_logging(logger, **kwargs):
    logger.setLevel(settings.LOG_LEVEL)
    logging.getLogger("app").setLevel(settings.LOG_LEVEL)
