from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "settings_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.settings.tasks"],
)
celery_app.conf.task_default_queue = "settings-side-effects"
