from celery import Celery
from celery.signals import setup_logging

from app.services.scheduler_config import build_beat_schedule, get_celery_config

celery_app = Celery("outline_metering")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks.metering"])


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    from app.logging import configure_logging

    configure_logging()
