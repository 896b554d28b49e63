from celery import Celery

from app.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "task_serializer": "json",
        "result_serializer": "json",
        "accept_content": ["json"],
        "timezone": "UTC",
        "enable_utc": True,
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }


celery_app = Celery("subscription_billing")
celery_app.conf.update(get_celery_config())
celery_app.autodiscover_tasks(["app.tasks"])
