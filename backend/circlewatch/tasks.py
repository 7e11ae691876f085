import os

from celery import Celery
from celery.schedules import crontab
from celery.utils.log import get_task_logger
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .services.escalation import run_tick

logger = get_task_logger(__name__)

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("circlewatch", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

celery_app.conf.beat_schedule = {
    "escalation-tick": {
        "task": "circlewatch.tasks.run_escalation_tick",
        "schedule": crontab(minute=f"*/{config.TICK_INTERVAL_MINUTES}"),
    },
}


@celery_app.task(name="circlewatch.tasks.run_escalation_tick")
def run_escalation_tick() -> dict:
    """Beat entry point for one detection, escalation and recovery pass."""

    try:
        report = run_tick()
    except SQLAlchemyError:
        logger.exception("Escalation tick aborted on a store failure")
        raise
    return {
        "created": report.created,
        "escalated": report.escalated,
        "recovered": report.recovered,
        "race_losses": report.race_losses,
        "delivered": report.delivered,
        "failed": report.failed,
    }
