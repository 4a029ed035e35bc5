from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "crm_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.crm.tasks"],
)
# Outbound mail goes to the mailer's own queue through send_task; only ingestion runs here.
celery_app.conf.task_routes = {"crm.*": {"queue": "crm"}}
