from celery import Celery

from app.core.config import settings
from app.core.database import load_models
from app.core.logging import configure_logging

load_models()

celery_app = Celery(
    "commission_engine",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.commission_tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    worker_hijack_root_logger=False,
)


@celery_app.on_after_configure.connect
def setup_logging(sender, **kwargs):
    configure_logging()
