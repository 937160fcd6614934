from __future__ import annotations

from celery import Celery

from sharegate.config import settings

celery = Celery("sharegate", broker=settings.redis_dsn, backend=settings.redis_dsn)
celery.conf.task_serializer = "json"
celery.conf.result_serializer = "json"
celery.conf.accept_content = ["json"]
celery.conf.imports = ("sharegate.tasks.sweep",)
